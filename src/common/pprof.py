"""
pprof encoding for sampler reports.

The message classes for `perftools.profiles.Profile` are built at import time
from a descriptor assembled in code, so no generated `_pb2` module is needed.
Only the fields the agent writes are declared; field numbers match
github.com/google/pprof/proto/profile.proto.
"""

from __future__ import annotations

import gzip
from typing import Dict, Tuple

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

from .sampler import Frame, Report


_PACKAGE = "perftools.profiles"

_F = descriptor_pb2.FieldDescriptorProto
_INT64 = _F.TYPE_INT64
_UINT64 = _F.TYPE_UINT64
_STRING = _F.TYPE_STRING
_BOOL = _F.TYPE_BOOL
_MESSAGE = _F.TYPE_MESSAGE


class ProfileEncodingError(RuntimeError):
    """Base error for pprof encoding."""


class SerializationError(ProfileEncodingError):
    """Report could not be serialized to pprof."""


class CompressionError(ProfileEncodingError):
    """Serialized profile could not be compressed."""


def _add_message(fdp: descriptor_pb2.FileDescriptorProto, name: str, fields) -> None:
    msg = fdp.message_type.add(name=name)
    for field_name, number, field_type, repeated, type_name in fields:
        f = msg.field.add(
            name=field_name,
            number=number,
            type=field_type,
            label=_F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL,
        )
        if type_name:
            f.type_name = f".{_PACKAGE}.{type_name}"


def _build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    fdp = descriptor_pb2.FileDescriptorProto(
        name="perftools/profiles/profile.proto",
        package=_PACKAGE,
        syntax="proto3",
    )
    _add_message(fdp, "ValueType", [
        ("type", 1, _INT64, False, None),
        ("unit", 2, _INT64, False, None),
    ])
    _add_message(fdp, "Sample", [
        ("location_id", 1, _UINT64, True, None),
        ("value", 2, _INT64, True, None),
    ])
    _add_message(fdp, "Line", [
        ("function_id", 1, _UINT64, False, None),
        ("line", 2, _INT64, False, None),
    ])
    _add_message(fdp, "Location", [
        ("id", 1, _UINT64, False, None),
        ("mapping_id", 2, _UINT64, False, None),
        ("address", 3, _UINT64, False, None),
        ("line", 4, _MESSAGE, True, "Line"),
        ("is_folded", 5, _BOOL, False, None),
    ])
    _add_message(fdp, "Function", [
        ("id", 1, _UINT64, False, None),
        ("name", 2, _INT64, False, None),
        ("system_name", 3, _INT64, False, None),
        ("filename", 4, _INT64, False, None),
        ("start_line", 5, _INT64, False, None),
    ])
    _add_message(fdp, "Profile", [
        ("sample_type", 1, _MESSAGE, True, "ValueType"),
        ("sample", 2, _MESSAGE, True, "Sample"),
        ("location", 4, _MESSAGE, True, "Location"),
        ("function", 5, _MESSAGE, True, "Function"),
        ("string_table", 6, _STRING, True, None),
        ("time_nanos", 9, _INT64, False, None),
        ("duration_nanos", 10, _INT64, False, None),
        ("period_type", 11, _MESSAGE, False, "ValueType"),
        ("period", 12, _INT64, False, None),
    ])
    return fdp


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_build_file_descriptor().SerializeToString())

ProfileMessage = message_factory.GetMessageClass(
    _pool.FindMessageTypeByName(f"{_PACKAGE}.Profile")
)


class _ProfileBuilder:
    """Interns strings, functions and locations while samples are added."""

    def __init__(self) -> None:
        self.profile = ProfileMessage()
        self._strings: Dict[str, int] = {}
        self._functions: Dict[Tuple[str, str, int], int] = {}
        self._locations: Dict[Tuple[int, int], int] = {}
        self.intern("")

    def intern(self, value: str) -> int:
        idx = self._strings.get(value)
        if idx is None:
            idx = len(self._strings)
            self._strings[value] = idx
            self.profile.string_table.append(value)
        return idx

    def value_type(self, target, type_: str, unit: str) -> None:
        target.type = self.intern(type_)
        target.unit = self.intern(unit)

    def location_id(self, frame: Frame) -> int:
        fkey = (frame.name, frame.filename, frame.start_line)
        function_id = self._functions.get(fkey)
        if function_id is None:
            function_id = len(self._functions) + 1
            self._functions[fkey] = function_id
            self.profile.function.add(
                id=function_id,
                name=self.intern(frame.name),
                system_name=self.intern(frame.name),
                filename=self.intern(frame.filename),
                start_line=frame.start_line,
            )

        lkey = (function_id, frame.line)
        location_id = self._locations.get(lkey)
        if location_id is None:
            location_id = len(self._locations) + 1
            self._locations[lkey] = location_id
            loc = self.profile.location.add(id=location_id)
            loc.line.add(function_id=function_id, line=frame.line)
        return location_id


def build_profile(report: Report):
    """Build a pprof `Profile` message (sample count + wall nanoseconds)."""
    b = _ProfileBuilder()
    b.value_type(b.profile.sample_type.add(), "samples", "count")
    b.value_type(b.profile.sample_type.add(), "wall", "nanoseconds")
    b.value_type(b.profile.period_type, "wall", "nanoseconds")
    b.profile.period = report.period_ns
    b.profile.time_nanos = report.start_time_ns
    b.profile.duration_nanos = report.duration_ns

    for stack, count in report.stacks.items():
        if count <= 0:
            continue
        b.profile.sample.add(
            location_id=[b.location_id(frame) for frame in stack],
            value=[count, count * report.period_ns],
        )
    return b.profile


def serialize_report(report: Report) -> bytes:
    try:
        return build_profile(report).SerializeToString()
    except Exception as exc:
        raise SerializationError(f"Failed to serialize report: {exc}") from exc


def compress_profile(payload: bytes, *, level: int = 6) -> bytes:
    try:
        return gzip.compress(payload, compresslevel=level)
    except (TypeError, ValueError, OSError) as exc:
        raise CompressionError(f"Failed to gzip profile: {exc}") from exc


__all__ = [
    "CompressionError",
    "ProfileEncodingError",
    "ProfileMessage",
    "SerializationError",
    "build_profile",
    "compress_profile",
    "serialize_report",
]
