"""Arrow IPC stream helpers shared by the value codec, the wire layer and the server.

Every message telerpc sends, and every encoded value inside one, is a
complete IPC stream: schema, exactly one record batch, end-of-stream
marker.  The helpers here write and read that shape and turn pyarrow's
errors into :class:`IPCError`.

Set ``TELERPC_IPC_DEBUG=1`` to trace every stream written or read to
stderr through structlog.
"""

import os
import sys
from io import BytesIO, IOBase
from typing import Any

import pyarrow as pa
import structlog
from pyarrow import ipc

from telerpc.metadata import decode_metadata

__all__ = [
    "EOS_MARKER",
    "IPCError",
    "deserialize_record_batch",
    "empty_batch",
    "read_single_record_batch",
    "serialize_record_batch",
    "serialize_record_batch_bytes",
]

_IPC_DEBUG = os.environ.get("TELERPC_IPC_DEBUG", "").lower() in ("1", "true", "yes")
_ipc_log: structlog.stdlib.BoundLogger | None = None

EOS_MARKER = b"\xff\xff\xff\xff\x00\x00\x00\x00"
"""Arrow IPC end-of-stream marker (continuation token + zero length)."""


class IPCError(Exception):
    """A byte channel or buffer did not hold a well-formed single-batch IPC stream."""


def _trace(event: str, batch: pa.RecordBatch | None = None, **fields: Any) -> None:
    global _ipc_log
    if _ipc_log is None:
        # Private to this module; the application's structlog setup is left alone.
        _ipc_log = structlog.wrap_logger(
            structlog.PrintLogger(file=sys.stderr),
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(colors=False),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(0),
        ).bind(component="ipc")
    if batch is not None:
        fields["rows"] = batch.num_rows
        fields["schema"] = {field.name: str(field.type) for field in batch.schema}
    _ipc_log.debug(event, **fields)


def empty_batch(schema: pa.Schema) -> pa.RecordBatch:
    """Zero-row batch with *schema* (request-level error responses use one)."""
    return pa.RecordBatch.from_arrays([pa.array([], type=field.type) for field in schema], schema=schema)


def serialize_record_batch(
    destination: IOBase,
    batch: pa.RecordBatch,
    custom_metadata: pa.KeyValueMetadata | None = None,
) -> None:
    """Write *batch* to *destination* as one complete IPC stream.

    Args:
        destination: Binary writable (pipe, socket file or ``BytesIO``).
            Not flushed here; the wire layer flushes once per message.
        batch: The batch to write.
        custom_metadata: Batch-level metadata (message type, version, errors).

    """
    with ipc.new_stream(destination, batch.schema) as writer:
        writer.write_batch(batch, custom_metadata=custom_metadata)
    if _IPC_DEBUG:
        _trace("ipc_write", batch, metadata=decode_metadata(custom_metadata))


def serialize_record_batch_bytes(batch: pa.RecordBatch, custom_metadata: pa.KeyValueMetadata | None = None) -> bytes:
    """Return *batch* as the bytes of one complete IPC stream, EOS marker included."""
    sink = BytesIO()
    serialize_record_batch(sink, batch, custom_metadata)
    return sink.getvalue()


def _read_one(source: Any, context: str) -> tuple[pa.RecordBatch, pa.KeyValueMetadata | None]:
    """Read schema, one batch and the end of stream from *source*."""
    with ipc.open_stream(source) as reader:
        try:
            batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
        except StopIteration:
            raise IPCError(f"No record batch found in {context} stream") from None
        try:
            reader.read_next_batch()
        except StopIteration:
            return batch, custom_metadata
    raise IPCError(f"Expected single record batch in {context} stream, but found multiple batches")


def deserialize_record_batch(data: bytes, context: str = "batch") -> tuple[pa.RecordBatch, pa.KeyValueMetadata | None]:
    """Parse *data* as one complete IPC stream holding exactly one batch.

    Args:
        data: The stream bytes.
        context: Names the stream in error messages.

    Returns:
        ``(batch, custom_metadata)``; the metadata is ``None`` when none was attached.

    Raises:
        IPCError: If the data is truncated (no end-of-stream marker), holds
            no batch or more than one, or is not valid Arrow IPC.

    """
    if not data.endswith(EOS_MARKER):
        raise IPCError(f"Truncated {context} stream: missing end-of-stream marker ({len(data)} bytes)")
    try:
        batch, custom_metadata = _read_one(pa.BufferReader(data), context)
    except IPCError:
        raise
    except (pa.ArrowException, OSError, ValueError) as exc:
        raise IPCError(f"Error reading record batch from {context} stream: {exc}") from exc
    if _IPC_DEBUG:
        _trace("ipc_read", batch, context=context, metadata=decode_metadata(custom_metadata), nbytes=len(data))
    return batch, custom_metadata


def read_single_record_batch(stream: Any, context: str = "batch") -> tuple[pa.RecordBatch, pa.KeyValueMetadata | None]:
    """Read the next message from a byte channel.

    Consumes exactly one IPC stream, so the following call picks up the
    next message on the same channel.

    Raises:
        IPCError: If the channel ends or does not hold a single-batch stream.
        TimeoutError: If the underlying socket timed out; the caller decides
            what a timeout means for the connection.

    """
    try:
        batch, custom_metadata = _read_one(stream, context)
    except (IPCError, TimeoutError):
        if _IPC_DEBUG:
            _trace("ipc_read_failed", context=context)
        raise
    except (pa.ArrowException, OSError, ValueError) as exc:
        raise IPCError(f"Error reading record batch from {context} stream: {exc}") from exc
    if _IPC_DEBUG:
        _trace("ipc_read", batch, context=context, metadata=decode_metadata(custom_metadata))
    return batch, custom_metadata
