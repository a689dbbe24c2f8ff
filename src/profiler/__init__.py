"""
Background Cloud Profiler agent.

Start it once at process startup:

    from profiler import maybe_start_profiling
    maybe_start_profiling("my-project", "my-service", "v1", should_start=lambda: True)
"""

from .agent import ProfilerHandle, maybe_start_profiling, start_from_env
from .config import AgentSettings, ProfilerConfiguration
from .loop import CycleFailure, FailureKind, ProfilingLoop

__all__ = [
    "AgentSettings",
    "CycleFailure",
    "FailureKind",
    "ProfilerConfiguration",
    "ProfilerHandle",
    "ProfilingLoop",
    "maybe_start_profiling",
    "start_from_env",
]
