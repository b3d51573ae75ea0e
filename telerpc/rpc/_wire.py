"""Wire protocol read/write helpers.

Every message on either channel is one complete Arrow IPC stream (schema,
one batch, EOS) whose batch metadata carries ``telerpc.message_type`` and
``telerpc.request_version``.  Successive messages are written back to back
on the same byte channel; each ``ipc.open_stream()`` consumes exactly one.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from io import IOBase
from typing import Any

import pyarrow as pa

from telerpc.metadata import (
    ERROR_DESCRIPTION_KEY,
    ERROR_NAME_KEY,
    ERROR_SERVICE_KEY,
    ERROR_STACK_TRACE_KEY,
    MESSAGE_TYPE_KEY,
    MSG_CONNECTION_REQUEST,
    MSG_CONNECTION_RESPONSE,
    MSG_REQUEST,
    MSG_RESPONSE,
    MSG_STREAM_UPDATE,
    REQUEST_VERSION,
    REQUEST_VERSION_KEY,
    merge_metadata,
)
from telerpc.rpc._common import VersionError
from telerpc.rpc._debug import (
    fmt_batch,
    fmt_calls,
    fmt_metadata,
    wire_request_logger,
    wire_response_logger,
    wire_stream_logger,
    wire_transport_logger,
)
from telerpc.rpc._types import (
    CONNECTION_REQUEST_SCHEMA,
    CONNECTION_RESPONSE_SCHEMA,
    REQUEST_SCHEMA,
    RESPONSE_SCHEMA,
    STREAM_UPDATE_SCHEMA,
    ConnectionStatus,
    ConnectionType,
    ProcedureCall,
    ProcedureResult,
    RemoteFault,
    Response,
    StreamResult,
)
from telerpc.utils import IPCError, empty_batch, read_single_record_batch, serialize_record_batch

# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------


def _write_message(
    writer_stream: IOBase,
    batch: pa.RecordBatch,
    message_type: bytes,
    extra_metadata: dict[bytes, bytes] | None = None,
) -> None:
    """Write *batch* as one complete IPC stream tagged with *message_type* and flush."""
    custom_metadata = merge_metadata(
        {MESSAGE_TYPE_KEY: message_type, REQUEST_VERSION_KEY: REQUEST_VERSION},
        extra_metadata,
    )
    serialize_record_batch(writer_stream, batch, custom_metadata)
    writer_stream.flush()


def _read_message(
    reader_stream: IOBase,
    message_type: bytes,
    schema: pa.Schema,
) -> tuple[pa.RecordBatch, pa.KeyValueMetadata | None]:
    """Read one IPC stream and validate its tag, version and schema.

    Raises:
        IPCError: If the stream ends, the framing is broken, or the message
            has the wrong type or schema.
        VersionError: If ``telerpc.request_version`` is missing or does not
            match ``REQUEST_VERSION``.

    """
    context = message_type.decode()
    batch, custom_metadata = read_single_record_batch(reader_stream, context)
    actual_type = custom_metadata.get(MESSAGE_TYPE_KEY) if custom_metadata else None
    if actual_type != message_type:
        raise IPCError(f"Expected {context} message, got {actual_type!r}")
    version_bytes = custom_metadata.get(REQUEST_VERSION_KEY) if custom_metadata else None
    if version_bytes is None:
        raise VersionError(
            f"Missing 'telerpc.request_version' in {context} metadata. "
            f"Set the 'telerpc.request_version' custom_metadata value to {REQUEST_VERSION!r}."
        )
    if version_bytes != REQUEST_VERSION:
        raise VersionError(f"Unsupported {context} version {version_bytes!r}, expected {REQUEST_VERSION!r}.")
    if not batch.schema.equals(schema):
        raise IPCError(f"Malformed {context} message: unexpected schema {batch.schema}")
    return batch, custom_metadata


def _single_row(batch: pa.RecordBatch, context: str) -> dict[str, Any]:
    if batch.num_rows != 1:
        raise IPCError(f"Expected 1 row in {context} message, got {batch.num_rows}")
    row: dict[str, Any] = batch.to_pylist()[0]
    return row


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------


def write_connection_request(
    writer_stream: IOBase,
    connection_type: ConnectionType,
    client_name: str = "",
    client_identifier: bytes = b"",
) -> None:
    """Write the opening message of a channel."""
    batch = pa.RecordBatch.from_pylist(
        [{"type": connection_type.value, "client_name": client_name, "client_identifier": client_identifier}],
        schema=CONNECTION_REQUEST_SCHEMA,
    )
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug(
            "Write connection request: type=%s, name=%r, identifier=%s",
            connection_type.value,
            client_name,
            client_identifier.hex(),
        )
    _write_message(writer_stream, batch, MSG_CONNECTION_REQUEST)


def read_connection_request(reader_stream: IOBase) -> tuple[ConnectionType, str, bytes]:
    """Read a connection request, returning (type, client name, client identifier).

    Raises:
        IPCError: If the message is malformed or names an unknown type.

    """
    batch, _ = _read_message(reader_stream, MSG_CONNECTION_REQUEST, CONNECTION_REQUEST_SCHEMA)
    row = _single_row(batch, "connection_request")
    try:
        connection_type = ConnectionType(row["type"])
    except ValueError:
        raise IPCError(f"Unknown connection type {row['type']!r}") from None
    return connection_type, row["client_name"], row["client_identifier"]


def write_connection_response(
    writer_stream: IOBase,
    status: ConnectionStatus,
    message: str = "",
    client_identifier: bytes = b"",
) -> None:
    """Answer a connection request."""
    batch = pa.RecordBatch.from_pylist(
        [{"status": status.value, "message": message, "client_identifier": client_identifier}],
        schema=CONNECTION_RESPONSE_SCHEMA,
    )
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug("Write connection response: status=%s, message=%r", status.value, message)
    _write_message(writer_stream, batch, MSG_CONNECTION_RESPONSE)


def read_connection_response(reader_stream: IOBase) -> tuple[ConnectionStatus, str, bytes]:
    """Read a connection response, returning (status, message, client identifier)."""
    batch, _ = _read_message(reader_stream, MSG_CONNECTION_RESPONSE, CONNECTION_RESPONSE_SCHEMA)
    row = _single_row(batch, "connection_response")
    try:
        status = ConnectionStatus(row["status"])
    except ValueError:
        raise IPCError(f"Unknown connection status {row['status']!r}") from None
    return status, row["message"], row["client_identifier"]


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


def write_request(writer_stream: IOBase, calls: Sequence[ProcedureCall]) -> None:
    """Write a request carrying one row per call."""
    batch = pa.RecordBatch.from_pydict(
        {
            "service": [c.service for c in calls],
            "procedure": [c.procedure for c in calls],
            "arguments": [list(c.arguments) for c in calls],
        },
        schema=REQUEST_SCHEMA,
    )
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug("Write request: %s", fmt_calls(calls))
    _write_message(writer_stream, batch, MSG_REQUEST)


def read_request(reader_stream: IOBase) -> list[ProcedureCall]:
    """Read a request message.

    Raises:
        IPCError: On framing errors or end of stream.
        VersionError: If the request version is missing or unsupported.

    """
    batch, custom_metadata = _read_message(reader_stream, MSG_REQUEST, REQUEST_SCHEMA)
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug(
            "Read request batch: %s, metadata=%s", fmt_batch(batch), fmt_metadata(custom_metadata)
        )
    return [
        ProcedureCall(row["service"], row["procedure"], tuple(row["arguments"] or ()))
        for row in batch.to_pylist()
    ]


# ---------------------------------------------------------------------------
# Results (responses and stream updates)
# ---------------------------------------------------------------------------


def _result_columns(results: Sequence[ProcedureResult]) -> dict[str, list[Any]]:
    columns: dict[str, list[Any]] = {
        "value": [],
        "error_service": [],
        "error_name": [],
        "error_description": [],
        "error_stack_trace": [],
    }
    for r in results:
        fault = r.fault
        columns["value"].append(r.value if fault is None else None)
        columns["error_service"].append(fault.service if fault else None)
        columns["error_name"].append(fault.name if fault else None)
        columns["error_description"].append(fault.description if fault else None)
        columns["error_stack_trace"].append(fault.stack_trace if fault else None)
    return columns


def _result_from_row(row: dict[str, Any]) -> ProcedureResult:
    if row["error_name"] is not None:
        return ProcedureResult(
            fault=RemoteFault(
                service=row["error_service"] or "",
                name=row["error_name"],
                description=row["error_description"] or "",
                stack_trace=row["error_stack_trace"] or "",
            )
        )
    return ProcedureResult(value=row["value"] or b"")


def write_response(writer_stream: IOBase, results: Sequence[ProcedureResult]) -> None:
    """Write a response carrying one row per call result, in request order."""
    batch = pa.RecordBatch.from_pydict(_result_columns(results), schema=RESPONSE_SCHEMA)
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug(
            "Write response: results=%d, faults=%d",
            len(results),
            sum(r.fault is not None for r in results),
        )
    _write_message(writer_stream, batch, MSG_RESPONSE)


def write_error_response(writer_stream: IOBase, fault: RemoteFault) -> None:
    """Write a request-level failure as a zero-row response with error metadata."""
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug("Write error response: %s.%s: %s", fault.service, fault.name, fault.description[:200])
    _write_message(
        writer_stream,
        empty_batch(RESPONSE_SCHEMA),
        MSG_RESPONSE,
        {
            ERROR_SERVICE_KEY: fault.service.encode(),
            ERROR_NAME_KEY: fault.name.encode(),
            ERROR_DESCRIPTION_KEY: fault.description.encode(),
            ERROR_STACK_TRACE_KEY: fault.stack_trace.encode(),
        },
    )


def read_response(reader_stream: IOBase) -> Response:
    """Read a response message."""
    batch, custom_metadata = _read_message(reader_stream, MSG_RESPONSE, RESPONSE_SCHEMA)
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug(
            "Read response: %s, metadata=%s", fmt_batch(batch), fmt_metadata(custom_metadata)
        )
    error_name = custom_metadata.get(ERROR_NAME_KEY) if custom_metadata else None
    if batch.num_rows == 0 and error_name is not None:
        assert custom_metadata is not None
        return Response(
            fault=RemoteFault(
                service=custom_metadata.get(ERROR_SERVICE_KEY, b"").decode(),
                name=error_name.decode(),
                description=custom_metadata.get(ERROR_DESCRIPTION_KEY, b"").decode(),
                stack_trace=custom_metadata.get(ERROR_STACK_TRACE_KEY, b"").decode(),
            )
        )
    return Response(results=tuple(_result_from_row(row) for row in batch.to_pylist()))


def write_stream_update(writer_stream: IOBase, updates: Sequence[StreamResult]) -> None:
    """Write a stream update carrying one row per changed stream."""
    columns = _result_columns([u.result for u in updates])
    batch = pa.RecordBatch.from_pydict({"id": [u.id for u in updates], **columns}, schema=STREAM_UPDATE_SCHEMA)
    if wire_stream_logger.isEnabledFor(logging.DEBUG):
        wire_stream_logger.debug("Write stream update: ids=%s", [u.id for u in updates])
    _write_message(writer_stream, batch, MSG_STREAM_UPDATE)


def read_stream_update(reader_stream: IOBase) -> list[StreamResult]:
    """Read a stream update message."""
    batch, _ = _read_message(reader_stream, MSG_STREAM_UPDATE, STREAM_UPDATE_SCHEMA)
    updates = [StreamResult(id=row["id"], result=_result_from_row(row)) for row in batch.to_pylist()]
    if wire_stream_logger.isEnabledFor(logging.DEBUG):
        wire_stream_logger.debug("Read stream update: ids=%s", [u.id for u in updates])
    return updates
