from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Mapping, Optional

import structlog
from pydantic import ValidationError

from common.backoff import Backoff
from common.cloud_profiler import CloudProfilerClient, Deployment
from common.metadata import MetadataClient, MetadataError, MetadataTokenSource
from common.sampler import WallClockSampler

from .config import AgentSettings, ProfilerConfiguration
from .loop import FailureHook, ProfilingLoop, Sampler, SessionClient


logger = structlog.get_logger(__name__)

THREAD_NAME = "cloud-profiler"
DEFAULT_STOP_TIMEOUT_S = 1.0


class ProfilerHandle:
    """Returned by `maybe_start_profiling`; keeping it is optional."""

    def __init__(self, loop: ProfilingLoop, thread: threading.Thread) -> None:
        self.loop = loop
        self.thread = thread

    @property
    def running(self) -> bool:
        return self.thread.is_alive()

    def stop(self, timeout: Optional[float] = DEFAULT_STOP_TIMEOUT_S) -> None:
        """
        Ask the loop to exit at its next wait and join the thread for at most
        `timeout` seconds (None waits indefinitely).

        A remote call in flight is not interrupted, so the daemon thread may
        finish after this returns; check `running`.
        """
        self.loop.stop()
        if self.thread is not threading.current_thread():
            self.thread.join(timeout)


def build_deployment(settings: AgentSettings, *, zone: Optional[str] = None) -> Deployment:
    labels: Dict[str, str] = {}
    if settings.version:
        labels["version"] = settings.version
    if zone:
        labels["zone"] = zone
    labels.update(settings.labels)
    labels["language"] = "python"
    return Deployment(
        project_id=settings.project_id or "",
        target=settings.service,
        labels=labels,
    )


def maybe_start_profiling(
    project_id: Optional[str],
    service: str,
    version: str,
    should_start: Optional[Callable[[], bool]] = None,
    get_configuration: Optional[Callable[[], ProfilerConfiguration]] = None,
    *,
    labels: Optional[Mapping[str, str]] = None,
    settings: Optional[AgentSettings] = None,
    eligibility_check: Optional[Callable[[], bool]] = None,
    metadata: Optional[MetadataClient] = None,
    client: Optional[SessionClient] = None,
    sampler: Optional[Sampler] = None,
    on_failure: Optional[FailureHook] = None,
) -> Optional[ProfilerHandle]:
    """
    Start the profiling loop on a daemon thread and return immediately.

    - Returns None, without spawning anything, when the host is not eligible
      (by default: not running on GCE) or the project id cannot be resolved.
    - `should_start` gates each iteration; `get_configuration` is read before
      every capture, so the sampling rate can change at runtime.
    - `settings` carries loop tuning; the identity arguments override it.

    Example:
        handle = maybe_start_profiling("my-project", "my-service", "v1", lambda: True)
    """
    owns_metadata = metadata is None
    metadata = metadata or MetadataClient()
    check = eligibility_check or metadata.on_gce
    if not check():
        logger.debug("host not eligible for profiling; agent not started")
        if owns_metadata:
            metadata.close()
        return None

    base: Dict[str, Any] = settings.model_dump() if settings is not None else {}
    merged = {
        **base,
        "project_id": project_id or base.get("project_id"),
        "service": service,
        "version": version,
        "labels": {**base.get("labels", {}), **dict(labels or {})},
    }
    try:
        resolved = AgentSettings.model_validate(merged)
    except ValidationError:
        if owns_metadata:
            metadata.close()
        raise

    zone: Optional[str] = None
    # Only the default check proves a metadata server is reachable
    if eligibility_check is None:
        try:
            zone = metadata.zone()
        except MetadataError as exc:
            logger.debug("zone not available", error=str(exc))
    if not resolved.project_id:
        try:
            resolved = resolved.model_copy(update={"project_id": metadata.project_id()})
        except MetadataError as exc:
            logger.warning("could not resolve project id; agent not started", error=str(exc))
            if owns_metadata:
                metadata.close()
            return None

    if client is None:
        client = CloudProfilerClient(
            MetadataTokenSource(metadata),
            api_base=resolved.api_base,
            create_timeout=resolved.create_timeout_s,
            upload_timeout=resolved.upload_timeout_s,
        )

    loop = ProfilingLoop(
        client=client,
        sampler=sampler or WallClockSampler(),
        deployment=build_deployment(resolved, zone=zone),
        should_run=should_start or (lambda: True),
        get_configuration=get_configuration or resolved.initial_configuration,
        profile_types=resolved.profile_types,
        backoff_factory=lambda: Backoff(
            resolved.backoff_min_s, resolved.backoff_max_s, resolved.backoff_multiplier
        ),
        idle_interval_s=resolved.idle_interval_s,
        on_failure=on_failure,
    )
    thread = threading.Thread(target=loop.run, name=THREAD_NAME, daemon=True)
    thread.start()
    logger.debug(
        "profiling agent started",
        project=resolved.project_id,
        service=resolved.service,
        version=resolved.version,
    )
    return ProfilerHandle(loop, thread)


def start_from_env(
    should_start: Optional[Callable[[], bool]] = None,
    get_configuration: Optional[Callable[[], ProfilerConfiguration]] = None,
    **kwargs: Any,
) -> Optional[ProfilerHandle]:
    """`maybe_start_profiling` with identity and tuning read from PROFILER_* env vars."""
    settings = AgentSettings.from_env()
    return maybe_start_profiling(
        settings.project_id,
        settings.service,
        settings.version,
        should_start,
        get_configuration,
        settings=settings,
        **kwargs,
    )


__all__ = [
    "ProfilerHandle",
    "DEFAULT_STOP_TIMEOUT_S",
    "THREAD_NAME",
    "build_deployment",
    "maybe_start_profiling",
    "start_from_env",
]
