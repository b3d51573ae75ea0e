"""Wire-level debug loggers and the formatters they use.

``logging.getLogger("telerpc.wire").setLevel(logging.DEBUG)`` shows every
message on both channels.  Call sites check ``isEnabledFor`` before
formatting, so the helpers below cost nothing when debugging is off.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

import pyarrow as pa

from telerpc.metadata import decode_metadata

if TYPE_CHECKING:
    from telerpc.rpc._types import ProcedureCall

wire_request_logger = logging.getLogger("telerpc.wire.request")
wire_response_logger = logging.getLogger("telerpc.wire.response")
wire_stream_logger = logging.getLogger("telerpc.wire.stream")
wire_transport_logger = logging.getLogger("telerpc.wire.transport")
"""Sockets, pipes and handshakes."""

_MAX_VALUE_LEN = 80


def fmt_batch(batch: pa.RecordBatch) -> str:
    """One-line summary, e.g. ``RecordBatch(rows=1, schema=(id: uint64, value: binary), bytes=128)``."""
    schema = ", ".join(f"{field.name}: {field.type}" for field in batch.schema) or "empty"
    return f"RecordBatch(rows={batch.num_rows}, schema=({schema}), bytes={batch.nbytes})"


def fmt_metadata(metadata: pa.KeyValueMetadata | None) -> str:
    """Render batch metadata as ``{key='value', ...}``, long values cut short."""
    if metadata is None:
        return "None"
    parts = []
    for key, value in decode_metadata(metadata).items():
        if len(value) > _MAX_VALUE_LEN:
            value = value[:_MAX_VALUE_LEN] + "..."
        parts.append(f"{key}={value!r}")
    return "{" + ", ".join(parts) + "}"


def fmt_calls(calls: Sequence[ProcedureCall]) -> str:
    """``KRPC.GetStatus(0 args), SpaceCenter.get_UT(0 args)``."""
    return ", ".join(f"{c.service}.{c.procedure}({len(c.arguments)} args)" for c in calls)
