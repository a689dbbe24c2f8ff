from __future__ import annotations

import random

import pytest

from common.backoff import Backoff


class FixedRandom(random.Random):
    """random() returns a fixed fraction."""

    def __init__(self, value: float) -> None:
        super().__init__(0)
        self.value = value

    def random(self) -> float:  # acts like random.Random.random
        return self.value


def test_envelope_grows_geometrically_until_capped():
    b = Backoff(60.0, 3600.0, 1.3, rng=random.Random(1))
    envelopes = []
    for _ in range(30):
        envelopes.append(b.current_envelope)
        b.next_backoff()

    assert envelopes[0] == 60.0
    assert envelopes[1] == pytest.approx(78.0)
    assert envelopes[2] == pytest.approx(101.4)
    assert all(a <= b_ for a, b_ in zip(envelopes, envelopes[1:]))
    assert envelopes[-1] == 3600.0
    assert b.current_envelope == 3600.0


def test_draws_stay_below_envelope_at_time_of_call():
    b = Backoff(1.0, 50.0, 2.0, rng=random.Random(42))
    for _ in range(200):
        envelope = b.current_envelope
        delay = b.next_backoff()
        assert 0.0 <= delay < envelope


def test_upper_edge_of_random_source_is_excluded():
    b = Backoff(10.0, 10.0, 1.5, rng=FixedRandom(0.999999))
    assert b.next_backoff() < 10.0


def test_zero_envelope_returns_zero():
    b = Backoff(0.0, 0.0, 2.0, rng=FixedRandom(0.7))
    assert b.next_backoff() == 0.0
    assert b.next_backoff() == 0.0
    assert b.current_envelope == 0.0


def test_reset_restores_floor():
    b = Backoff(5.0, 100.0, 3.0)
    for _ in range(5):
        b.next_backoff()
    assert b.current_envelope == 100.0

    b.reset()
    assert b.current_envelope == 5.0


@pytest.mark.parametrize(
    "args",
    [
        (-1.0, 10.0, 1.5),
        (10.0, 5.0, 1.5),
        (1.0, 10.0, 1.0),
        (1.0, 10.0, 0.5),
    ],
)
def test_invalid_parameters_rejected(args):
    with pytest.raises(ValueError):
        Backoff(*args)
