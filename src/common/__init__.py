"""
Common building blocks for the profiling agent.

Modules:
- backoff: randomized, capped exponential backoff
- cloud_profiler: Cloud Profiler v2 REST client and models
- metadata: GCE metadata server client and token source
- sampler: wall-clock stack sampler
- pprof: pprof encoding and gzip framing of sampler reports
- observability: structlog configuration
"""

__all__ = [
    "backoff",
    "cloud_profiler",
    "metadata",
    "observability",
    "pprof",
    "sampler",
]
