"""
The profiling control loop.

One iteration is gate -> (backoff wait | backoff reset) -> create -> sample ->
upload. Every failure inside an iteration is converted into a `CycleFailure`,
logged, reported to the optional failure hook and retried after a randomized
backoff; nothing propagates to the host. The loop only ends when its stop
event is set.
"""

from __future__ import annotations

import threading
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Sequence

import structlog

from common.backoff import Backoff
from common.cloud_profiler import DEFAULT_PROFILE_TYPES, Deployment, Profile
from common.metadata import AuthError
from common.pprof import compress_profile, serialize_report
from common.sampler import Report, SamplingHandle

from .config import DEFAULT_IDLE_INTERVAL_S, ProfilerConfiguration


logger = structlog.get_logger(__name__)


class FailureKind(str, Enum):
    AUTH = "auth"
    SESSION_CREATE = "session_create"
    MALFORMED_SESSION = "malformed_session"
    CONFIGURATION = "configuration"
    SAMPLING_START = "sampling_start"
    REPORT_BUILD = "report_build"
    SERIALIZATION = "serialization"
    COMPRESSION = "compression"
    MISSING_SESSION_IDENTITY = "missing_session_identity"
    UPLOAD = "upload"
    INTERNAL = "internal"


class CycleFailure(RuntimeError):
    """A profiling cycle failed at `kind`; the underlying error is `__cause__`."""

    def __init__(self, kind: FailureKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


FailureHook = Callable[[FailureKind, BaseException], None]


class SessionClient(Protocol):
    def create_profile(self, deployment: Deployment, profile_types: Sequence[str] = ...) -> Profile: ...

    def update_profile(self, profile: Profile) -> Profile: ...


class Sampler(Protocol):
    def start(self, sampling_rate: int) -> SamplingHandle: ...

    def finalize(self, handle: SamplingHandle) -> Report: ...


def _default_backoff() -> Backoff:
    return Backoff()


class ProfilingLoop:
    """
    Runs gate -> create -> sample -> upload forever on the calling thread.

    Collaborators are injected: the remote session client, the local sampler,
    the gate predicate and the configuration accessor. `stop()` is consulted at
    every wait (idle gate, backoff, sampling), so a stopped loop exits within
    one wait.
    """

    def __init__(
        self,
        *,
        client: SessionClient,
        sampler: Sampler,
        deployment: Deployment,
        should_run: Callable[[], bool],
        get_configuration: Callable[[], ProfilerConfiguration],
        profile_types: Sequence[str] = DEFAULT_PROFILE_TYPES,
        backoff_factory: Callable[[], Backoff] = _default_backoff,
        idle_interval_s: float = DEFAULT_IDLE_INTERVAL_S,
        serialize: Callable[[Report], bytes] = serialize_report,
        compress: Callable[[bytes], bytes] = compress_profile,
        on_failure: Optional[FailureHook] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ) -> None:
        self._client = client
        self._sampler = sampler
        self._deployment = deployment
        self._should_run = should_run
        self._get_configuration = get_configuration
        self._profile_types = tuple(profile_types)
        self._backoff = backoff_factory()
        self._idle_interval_s = idle_interval_s
        self._serialize = serialize
        self._compress = compress
        self._on_failure = on_failure
        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait
        self._log = logger.bind(target=deployment.target, project=deployment.project_id)

    @property
    def backoff(self) -> Backoff:
        return self._backoff

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    # --------------- Loop ---------------
    def run(self) -> None:
        self._log.debug("profiling loop started")
        retry_backoff: Optional[float] = None
        while not self.stopped:
            if not self._gate_open():
                self._sleep(self._idle_interval_s)
                continue

            if retry_backoff is not None:
                self._log.info("retrying profiling cycle", delay_s=round(retry_backoff, 3))
                self._sleep(retry_backoff)
                if self.stopped:
                    break
            else:
                self._backoff.reset()

            try:
                self.run_cycle()
            except CycleFailure as failure:
                retry_backoff = self._backoff.next_backoff()
                self._report_failure(failure, failure.__cause__ or failure, retry_backoff)
            except Exception as exc:
                retry_backoff = self._backoff.next_backoff()
                self._log.exception("unexpected error in profiling cycle", retry_in_s=round(retry_backoff, 3))
                self._notify(FailureKind.INTERNAL, exc)
            else:
                retry_backoff = None
        self._log.debug("profiling loop stopped")

    def run_cycle(self) -> Optional[Profile]:
        """Run one create -> sample -> upload pass.

        Returns the uploaded profile, or None when the loop was stopped during
        sampling. Raises CycleFailure on any stage failure.
        """
        profile = self._create_session()
        duration_s = self._session_duration(profile)
        configuration = self._current_configuration()
        report = self._capture(duration_s, configuration)
        if self.stopped:
            self._log.debug("stopped during capture; discarding report")
            return None
        uploaded = self._upload(profile, report)
        self._log.debug(
            "profile uploaded",
            name=profile.name,
            samples=report.sample_count,
            duration_s=duration_s,
        )
        return uploaded

    # --------------- Stages ---------------
    def _gate_open(self) -> bool:
        try:
            return bool(self._should_run())
        except Exception as exc:
            self._log.warning("gate predicate raised; treating as closed", error=repr(exc))
            return False

    def _create_session(self) -> Profile:
        try:
            return self._client.create_profile(self._deployment, self._profile_types)
        except AuthError as exc:
            raise CycleFailure(FailureKind.AUTH, f"Failed to get auth token: {exc}") from exc
        except Exception as exc:
            raise CycleFailure(FailureKind.SESSION_CREATE, f"Error creating profile: {exc}") from exc

    def _session_duration(self, profile: Profile) -> float:
        try:
            duration_s = profile.duration_seconds()
        except ValueError as exc:
            raise CycleFailure(FailureKind.MALFORMED_SESSION, f"Profile has invalid duration: {exc}") from exc
        if duration_s is None:
            raise CycleFailure(FailureKind.MALFORMED_SESSION, "Profile missing duration")
        return duration_s

    def _current_configuration(self) -> ProfilerConfiguration:
        try:
            configuration = self._get_configuration()
            sampling_rate = configuration.sampling_rate
        except Exception as exc:
            raise CycleFailure(FailureKind.CONFIGURATION, f"Error reading configuration: {exc}") from exc
        if not isinstance(sampling_rate, int) or sampling_rate <= 0:
            raise CycleFailure(
                FailureKind.CONFIGURATION, f"Invalid sampling rate: {sampling_rate!r}"
            )
        return configuration

    def _capture(self, duration_s: float, configuration: ProfilerConfiguration) -> Report:
        try:
            handle = self._sampler.start(configuration.sampling_rate)
        except Exception as exc:
            raise CycleFailure(FailureKind.SAMPLING_START, f"Error profiling: {exc}") from exc
        try:
            if duration_s > 0:
                self._sleep(duration_s)
        except BaseException:
            # the sampler thread must not outlive the cycle; the wait's error wins
            try:
                self._sampler.finalize(handle)
            except Exception as exc:
                self._log.warning("failed to finalize interrupted capture", error=repr(exc))
            raise
        try:
            return self._sampler.finalize(handle)
        except Exception as exc:
            raise CycleFailure(FailureKind.REPORT_BUILD, f"Failed to build report: {exc}") from exc

    def _upload(self, profile: Profile, report: Report) -> Profile:
        try:
            payload = self._serialize(report)
        except Exception as exc:
            raise CycleFailure(FailureKind.SERIALIZATION, f"Failed to serialize profile: {exc}") from exc
        try:
            blob = self._compress(payload)
        except Exception as exc:
            raise CycleFailure(FailureKind.COMPRESSION, f"Failed to compress profile: {exc}") from exc

        session = profile.with_profile_bytes(blob)
        if not session.name:
            raise CycleFailure(FailureKind.MISSING_SESSION_IDENTITY, "Profile did not contain a name")

        try:
            return self._client.update_profile(session)
        except AuthError as exc:
            raise CycleFailure(FailureKind.AUTH, f"Failed to get auth token: {exc}") from exc
        except Exception as exc:
            raise CycleFailure(FailureKind.UPLOAD, f"Error updating profile: {exc}") from exc

    # --------------- Failure reporting ---------------
    def _report_failure(self, failure: CycleFailure, cause: BaseException, retry_in_s: float) -> None:
        self._log.warning(
            "profiling cycle failed",
            stage=failure.kind.value,
            error=str(failure),
            retry_in_s=round(retry_in_s, 3),
        )
        self._notify(failure.kind, cause)

    def _notify(self, kind: FailureKind, cause: BaseException) -> None:
        if self._on_failure is None:
            return
        try:
            self._on_failure(kind, cause)
        except Exception:
            self._log.exception("failure hook raised", stage=kind.value)


__all__ = [
    "CycleFailure",
    "FailureHook",
    "FailureKind",
    "ProfilingLoop",
    "Sampler",
    "SessionClient",
]
