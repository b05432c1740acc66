# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Decoder for BuildKit trace envelopes.

With the BuildKit builder the daemon sends ``{"id": "moby.buildkit.trace", "aux": "<base64>"}``
lines whose payload is a protobuf ``moby.buildkit.v1.StatusResponse``. Only the fields
needed to render progress are read; unknown fields are skipped.
"""

import base64
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Tuple

TRACE_ID = "moby.buildkit.trace"

WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_BYTES = 2
WIRE_FIXED32 = 5


@dataclass
class TraceVertex:
    digest: str = ""
    name: str = ""
    cached: bool = False
    started: bool = False
    completed: bool = False
    error: str = ""


@dataclass
class TraceStatus:
    id: str = ""
    vertex: str = ""
    name: str = ""
    current: int = 0
    total: int = 0


@dataclass
class TraceLog:
    vertex: str = ""
    stream: int = 0
    msg: bytes = b""


@dataclass
class TraceReport:
    vertexes: List[TraceVertex] = field(default_factory=list)
    statuses: List[TraceStatus] = field(default_factory=list)
    logs: List[TraceLog] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def summary(self) -> str:
        """Renders the report the way the classic builder prints its stream lines."""
        lines = []
        for vertex in self.vertexes:
            if vertex.error:
                lines.append(f"{vertex.name} ERROR: {vertex.error}")
            elif vertex.cached:
                lines.append(f"{vertex.name} CACHED")
            elif vertex.completed:
                lines.append(f"{vertex.name} DONE")
            elif vertex.started:
                lines.append(vertex.name)
        for status in self.statuses:
            label = status.name or status.id
            if status.total:
                lines.append(f"{label} {status.current}/{status.total}")
            elif status.current:
                lines.append(f"{label} {status.current}")
        for log in self.logs:
            text = log.msg.decode("utf-8", errors="replace").rstrip("\n")
            if text:
                lines.append(text)
        for warning in self.warnings:
            lines.append(f"WARNING: {warning}")
        if not lines:
            return ""
        return "\n".join(lines) + "\n"


def _read_varint(data: bytes, pos: int) -> Tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint in trace payload")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7


def iter_fields(data: bytes) -> Iterator[Tuple[int, int, object]]:
    """
    Walks the protobuf wire format, yielding ``(field_number, wire_type, value)``.
    Length-delimited values are returned as bytes, numeric ones as int.
    """
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        number, wire_type = key >> 3, key & 0x7
        if wire_type == WIRE_VARINT:
            value, pos = _read_varint(data, pos)
        elif wire_type == WIRE_FIXED64:
            value, pos = int.from_bytes(data[pos:pos + 8], "little"), pos + 8
        elif wire_type == WIRE_BYTES:
            length, pos = _read_varint(data, pos)
            value, pos = data[pos:pos + length], pos + length
        elif wire_type == WIRE_FIXED32:
            value, pos = int.from_bytes(data[pos:pos + 4], "little"), pos + 4
        else:
            raise ValueError(f"unsupported wire type {wire_type} in trace payload")
        yield number, wire_type, value


def _text(value) -> str:
    return value.decode("utf-8", errors="replace")


def _decode_vertex(data: bytes) -> TraceVertex:
    vertex = TraceVertex()
    for number, _, value in iter_fields(data):
        if number == 1:
            vertex.digest = _text(value)
        elif number == 3:
            vertex.name = _text(value)
        elif number == 4:
            vertex.cached = bool(value)
        elif number == 5:
            vertex.started = True
        elif number == 6:
            vertex.completed = True
        elif number == 7:
            vertex.error = _text(value)
    return vertex


def _decode_status(data: bytes) -> TraceStatus:
    status = TraceStatus()
    for number, _, value in iter_fields(data):
        if number == 1:
            status.id = _text(value)
        elif number == 2:
            status.vertex = _text(value)
        elif number == 3:
            status.name = _text(value)
        elif number == 4:
            status.current = value
        elif number == 5:
            status.total = value
    return status


def _decode_log(data: bytes) -> TraceLog:
    log = TraceLog()
    for number, _, value in iter_fields(data):
        if number == 1:
            log.vertex = _text(value)
        elif number == 3:
            log.stream = value
        elif number == 4:
            log.msg = value
    return log


def _decode_warning(data: bytes) -> str:
    for number, _, value in iter_fields(data):
        if number == 3:
            return _text(value)
    return ""


def decode_status_response(data: bytes) -> TraceReport:
    report = TraceReport()
    decoders: Dict[int, tuple] = {
        1: (_decode_vertex, report.vertexes),
        2: (_decode_status, report.statuses),
        3: (_decode_log, report.logs),
        4: (_decode_warning, report.warnings),
    }
    for number, wire_type, value in iter_fields(data):
        if wire_type != WIRE_BYTES or number not in decoders:
            continue
        decode, target = decoders[number]
        target.append(decode(value))
    return report


def decode_trace_aux(aux: str) -> TraceReport:
    """Decodes the base64 ``aux`` field of a trace envelope."""
    return decode_status_response(base64.b64decode(aux))
