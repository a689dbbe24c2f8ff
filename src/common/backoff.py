from __future__ import annotations

import random
from typing import Optional


DEFAULT_MIN_ENVELOPE_S = 60.0
DEFAULT_MAX_ENVELOPE_S = 3600.0
DEFAULT_MULTIPLIER = 1.3


class Backoff:
    """
    Randomized exponential backoff with a capped envelope.

    - `next_backoff()` draws a delay uniformly from `[0, envelope)` and then
      grows the envelope by `multiplier`, never past `max_envelope_s`.
    - `reset()` brings the envelope back to `min_envelope_s`.

    Not thread-safe; owned by a single loop.
    """

    def __init__(
        self,
        min_envelope_s: float = DEFAULT_MIN_ENVELOPE_S,
        max_envelope_s: float = DEFAULT_MAX_ENVELOPE_S,
        multiplier: float = DEFAULT_MULTIPLIER,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        if min_envelope_s < 0:
            raise ValueError("min_envelope_s must be >= 0")
        if max_envelope_s < min_envelope_s:
            raise ValueError("max_envelope_s must be >= min_envelope_s")
        if multiplier <= 1:
            raise ValueError("multiplier must be > 1")
        self._min = float(min_envelope_s)
        self._max = float(max_envelope_s)
        self._multiplier = float(multiplier)
        self._envelope = self._min
        self._rng = rng or random.Random()

    @property
    def current_envelope(self) -> float:
        return self._envelope

    @property
    def min_envelope(self) -> float:
        return self._min

    @property
    def max_envelope(self) -> float:
        return self._max

    def next_backoff(self) -> float:
        """Return the next delay in seconds and advance the envelope."""
        # random() is in [0, 1), so a zero envelope yields 0.0
        delay = self._envelope * self._rng.random()
        self._envelope = min(self._max, self._envelope * self._multiplier)
        return delay

    def reset(self) -> None:
        self._envelope = self._min

    def __repr__(self) -> str:
        return (
            f"Backoff(min={self._min}, max={self._max}, "
            f"multiplier={self._multiplier}, envelope={self._envelope})"
        )


__all__ = [
    "Backoff",
    "DEFAULT_MIN_ENVELOPE_S",
    "DEFAULT_MAX_ENVELOPE_S",
    "DEFAULT_MULTIPLIER",
]
