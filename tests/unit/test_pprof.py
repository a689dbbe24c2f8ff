from __future__ import annotations

import pytest

from common.pprof import (
    CompressionError,
    ProfileMessage,
    SerializationError,
    build_profile,
    compress_profile,
    serialize_report,
)
from common.sampler import Frame, Report


def _report() -> Report:
    handler = Frame(name="handle_request", filename="/app/server.py", line=42, start_line=40)
    query = Frame(name="run_query", filename="/app/db.py", line=7, start_line=5)
    query_other_line = Frame(name="run_query", filename="/app/db.py", line=9, start_line=5)
    return Report(
        start_time_ns=1_700_000_000_000_000_000,
        duration_ns=10_000_000_000,
        period_ns=10_000_000,
        sampling_rate=100,
        stacks={
            (query, handler): 3,
            (query_other_line, handler): 2,
            (handler,): 1,
        },
    )


def _decode(payload: bytes):
    msg = ProfileMessage()
    msg.ParseFromString(payload)
    return msg


def test_build_profile_header_fields():
    profile = build_profile(_report())
    strings = list(profile.string_table)

    assert strings[0] == ""
    assert [(strings[v.type], strings[v.unit]) for v in profile.sample_type] == [
        ("samples", "count"),
        ("wall", "nanoseconds"),
    ]
    assert (strings[profile.period_type.type], strings[profile.period_type.unit]) == ("wall", "nanoseconds")
    assert profile.period == 10_000_000
    assert profile.time_nanos == 1_700_000_000_000_000_000
    assert profile.duration_nanos == 10_000_000_000


def test_functions_and_locations_are_interned():
    profile = build_profile(_report())
    strings = list(profile.string_table)

    # two distinct functions, three distinct (function, line) locations
    assert sorted(strings[f.name] for f in profile.function) == ["handle_request", "run_query"]
    assert len(profile.location) == 3
    assert len(strings) == len(set(strings))

    functions = {f.id: f for f in profile.function}
    locations = {loc.id: loc for loc in profile.location}
    samples = {tuple(s.location_id): list(s.value) for s in profile.sample}
    assert sorted(v[0] for v in samples.values()) == [1, 2, 3]

    heaviest = max(samples, key=lambda ids: samples[ids][0])
    leaf = locations[heaviest[0]].line[0]
    assert strings[functions[leaf.function_id].name] == "run_query"
    assert leaf.line == 7
    assert samples[heaviest] == [3, 3 * 10_000_000]


def test_serialize_round_trips_through_parser():
    payload = serialize_report(_report())
    decoded = _decode(payload)
    assert len(decoded.sample) == 3
    assert decoded.period == 10_000_000


def test_empty_report_still_serializes():
    report = Report(start_time_ns=0, duration_ns=0, period_ns=10_000_000, sampling_rate=100)
    decoded = _decode(serialize_report(report))
    assert len(decoded.sample) == 0
    assert len(decoded.sample_type) == 2


def test_serialize_wraps_errors():
    bad = Report(
        start_time_ns=0,
        duration_ns=0,
        period_ns=10_000_000,
        sampling_rate=100,
        stacks={("not-a-frame",): 1},  # type: ignore[dict-item]
    )
    with pytest.raises(SerializationError):
        serialize_report(bad)


def test_compress_wraps_errors():
    with pytest.raises(CompressionError):
        compress_profile("not bytes")  # type: ignore[arg-type]
