from __future__ import annotations

import sys
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from types import FrameType
from typing import Callable, Counter as CounterT, Dict, FrozenSet, Optional, Tuple


MAX_SAMPLING_RATE = 1000
DEFAULT_MAX_DEPTH = 128


class SamplerError(RuntimeError):
    """Sampling could not be started."""


class ReportBuildError(SamplerError):
    """A capture could not be turned into a report."""


@dataclass(frozen=True)
class Frame:
    name: str
    filename: str
    line: int
    start_line: int


Stack = Tuple[Frame, ...]


@dataclass
class Report:
    """
    Aggregated wall-clock samples of one capture.

    - `stacks` maps a leaf-first stack to the number of times it was observed.
    - `period_ns` is the nominal wall time represented by one sample.
    """

    start_time_ns: int
    duration_ns: int
    period_ns: int
    sampling_rate: int
    stacks: Dict[Stack, int] = field(default_factory=dict)

    @property
    def sample_count(self) -> int:
        return sum(self.stacks.values())


class SamplingHandle:
    """State of one running capture; produced by `WallClockSampler.start`."""

    def __init__(self, sampling_rate: int, ignored_threads: FrozenSet[int]) -> None:
        self.sampling_rate = sampling_rate
        self.interval_s = 1.0 / sampling_rate
        self.start_time_ns = time.time_ns()
        self.start_perf_ns = time.perf_counter_ns()
        self.counts: CounterT[Stack] = Counter()
        self.error: Optional[BaseException] = None
        self.finalized = False
        self._ignored = set(ignored_threads)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


def _walk(frame: Optional[FrameType], max_depth: int) -> Stack:
    stack = []
    while frame is not None and len(stack) < max_depth:
        code = frame.f_code
        stack.append(
            Frame(
                name=getattr(code, "co_qualname", code.co_name),
                filename=code.co_filename,
                line=frame.f_lineno or 0,
                start_line=code.co_firstlineno,
            )
        )
        frame = frame.f_back
    return tuple(stack)


class WallClockSampler:
    """
    Samples the stacks of every Python thread at a fixed rate.

    A daemon thread polls `sys._current_frames()` every `1 / sampling_rate`
    seconds and counts identical stacks. Threads that belong to the capture
    itself (the sampler thread and the thread that called `start`) are skipped.
    """

    def __init__(
        self,
        *,
        max_depth: int = DEFAULT_MAX_DEPTH,
        current_frames: Callable[[], Dict[int, FrameType]] = sys._current_frames,
        join_timeout_s: float = 5.0,
    ) -> None:
        if max_depth <= 0:
            raise ValueError("max_depth must be > 0")
        self._max_depth = max_depth
        self._current_frames = current_frames
        self._join_timeout_s = join_timeout_s

    def start(self, sampling_rate: int) -> SamplingHandle:
        if not isinstance(sampling_rate, int) or isinstance(sampling_rate, bool):
            raise SamplerError(f"sampling_rate must be an int, got {sampling_rate!r}")
        if not 0 < sampling_rate <= MAX_SAMPLING_RATE:
            raise SamplerError(
                f"sampling_rate must be in 1..{MAX_SAMPLING_RATE}, got {sampling_rate}"
            )

        handle = SamplingHandle(sampling_rate, frozenset({threading.get_ident()}))
        thread = threading.Thread(
            target=self._run, args=(handle,), name="cloud-profiler-sampler", daemon=True
        )
        try:
            thread.start()
        except RuntimeError as exc:
            raise SamplerError("Failed to start sampling thread") from exc
        handle._thread = thread
        return handle

    def finalize(self, handle: SamplingHandle) -> Report:
        if handle.finalized:
            raise ReportBuildError("Capture already finalized")
        handle.finalized = True
        handle._stop.set()
        thread = handle._thread
        if thread is not None:
            thread.join(timeout=self._join_timeout_s)
            if thread.is_alive():
                raise ReportBuildError("Sampling thread did not stop in time")
        if handle.error is not None:
            raise ReportBuildError(f"Sampling failed: {handle.error}") from handle.error

        duration_ns = time.perf_counter_ns() - handle.start_perf_ns
        return Report(
            start_time_ns=handle.start_time_ns,
            duration_ns=duration_ns,
            period_ns=int(1e9 / handle.sampling_rate),
            sampling_rate=handle.sampling_rate,
            stacks=dict(handle.counts),
        )

    # --------------- Internal ---------------
    def _run(self, handle: SamplingHandle) -> None:
        handle._ignored.add(threading.get_ident())
        try:
            while not handle._stop.wait(handle.interval_s):
                self._sample(handle)
        except Exception as exc:
            # Surfaced by finalize()
            handle.error = exc

    def _sample(self, handle: SamplingHandle) -> None:
        frames = self._current_frames()
        for tid, frame in frames.items():
            if tid in handle._ignored:
                continue
            stack = _walk(frame, self._max_depth)
            if stack:
                handle.counts[stack] += 1


__all__ = [
    "Frame",
    "Report",
    "ReportBuildError",
    "SamplerError",
    "SamplingHandle",
    "Stack",
    "WallClockSampler",
]
