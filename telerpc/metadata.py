"""Batch metadata keys carried by every telerpc wire message, and helpers for them.

Each message is one IPC stream whose batch metadata names the message
type and the protocol version.  A zero-row response additionally carries
the error fields of a request-level failure.
"""

from __future__ import annotations

from collections.abc import Mapping

import pyarrow as pa

__all__ = [
    "ERROR_DESCRIPTION_KEY",
    "ERROR_NAME_KEY",
    "ERROR_SERVICE_KEY",
    "ERROR_STACK_TRACE_KEY",
    "MESSAGE_TYPE_KEY",
    "MSG_CONNECTION_REQUEST",
    "MSG_CONNECTION_RESPONSE",
    "MSG_REQUEST",
    "MSG_RESPONSE",
    "MSG_STREAM_UPDATE",
    "REQUEST_VERSION",
    "REQUEST_VERSION_KEY",
    "decode_metadata",
    "encode_metadata",
    "merge_metadata",
]

MESSAGE_TYPE_KEY = b"telerpc.message_type"
REQUEST_VERSION_KEY = b"telerpc.request_version"
REQUEST_VERSION = b"1"

ERROR_SERVICE_KEY = b"telerpc.error_service"
ERROR_NAME_KEY = b"telerpc.error_name"
ERROR_DESCRIPTION_KEY = b"telerpc.error_description"
ERROR_STACK_TRACE_KEY = b"telerpc.error_stack_trace"

# Values of MESSAGE_TYPE_KEY
MSG_CONNECTION_REQUEST = b"connection_request"
MSG_CONNECTION_RESPONSE = b"connection_response"
MSG_REQUEST = b"request"
MSG_RESPONSE = b"response"
MSG_STREAM_UPDATE = b"stream_update"

_MetadataLike = pa.KeyValueMetadata | Mapping[bytes, bytes] | Mapping[str, str]


def _as_bytes(text: str | bytes) -> bytes:
    return text if isinstance(text, bytes) else text.encode()


def _as_str(raw: str | bytes) -> str:
    return raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw


def encode_metadata(metadata: Mapping[str, str]) -> pa.KeyValueMetadata:
    """Build ``pa.KeyValueMetadata`` from text keys and values."""
    return pa.KeyValueMetadata({_as_bytes(k): _as_bytes(v) for k, v in metadata.items()})


def decode_metadata(metadata: pa.KeyValueMetadata | None) -> dict[str, str]:
    """Text view of *metadata*; invalid UTF-8 is replaced, ``None`` gives ``{}``."""
    if metadata is None:
        return {}
    return {_as_str(k): _as_str(v) for k, v in metadata.items()}


def merge_metadata(*sources: _MetadataLike | None) -> pa.KeyValueMetadata | None:
    """Combine metadata mappings left to right; later keys win.

    ``str`` and ``bytes`` keys name the same entry.  ``None`` sources are
    skipped, and the result is ``None`` when nothing is left.
    """
    merged: dict[bytes, bytes] = {}
    for source in sources:
        if source is None:
            continue
        merged.update((_as_bytes(k), _as_bytes(v)) for k, v in source.items())
    return pa.KeyValueMetadata(merged) if merged else None
