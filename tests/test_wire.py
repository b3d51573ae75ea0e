"""Tests for telerpc.rpc._wire and _types: message framing and descriptors."""

from __future__ import annotations

from io import BytesIO

import pyarrow as pa
import pytest

from telerpc.encoding import Int32, encode
from telerpc.metadata import MESSAGE_TYPE_KEY, MSG_REQUEST, REQUEST_VERSION_KEY
from telerpc.rpc import ConnectionStatus, ConnectionType, ProcedureCall, ProcedureResult, RemoteFault, StreamResult
from telerpc.rpc._common import VersionError
from telerpc.rpc._types import REQUEST_SCHEMA, StreamInfo
from telerpc.rpc._wire import (
    read_connection_request,
    read_connection_response,
    read_request,
    read_response,
    read_stream_update,
    write_connection_request,
    write_connection_response,
    write_error_response,
    write_request,
    write_response,
    write_stream_update,
)
from telerpc.utils import IPCError, serialize_record_batch

# ---------------------------------------------------------------------------
# ProcedureCall
# ---------------------------------------------------------------------------


class TestProcedureCall:
    """Tests for the ProcedureCall descriptor."""

    def test_identical_calls_share_key(self) -> None:
        """Identical service, procedure and argument bytes give equal calls and keys."""
        a = ProcedureCall("S", "P", (encode(1, Int32),))
        b = ProcedureCall("S", "P", [encode(1, Int32)])  # type: ignore[arg-type]
        assert a == b
        assert a.key == b.key
        assert hash(a) == hash(b)
        assert isinstance(b.arguments, tuple)

    def test_different_arguments_differ(self) -> None:
        """Argument bytes are part of the identity."""
        a = ProcedureCall("S", "P", (encode(1, Int32),))
        b = ProcedureCall("S", "P", (encode(2, Int32),))
        assert a != b
        assert a.key != b.key

    def test_arguments_must_be_bytes(self) -> None:
        """Unencoded arguments are rejected."""
        with pytest.raises(TypeError, match="argument 0 must be encoded bytes"):
            ProcedureCall("S", "P", (1,))  # type: ignore[arg-type]

    def test_key_deserializes_to_call(self) -> None:
        """The key is the call's own IPC serialization."""
        call = ProcedureCall("KRPC", "GetStatus")
        assert ProcedureCall.deserialize_from_bytes(call.key) == call

    def test_repr(self) -> None:
        """repr names the procedure and argument count."""
        assert repr(ProcedureCall("S", "P", (b"x",))) == "ProcedureCall(S.P, 1 args)"


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------


class TestHandshakeMessages:
    """Connection request and response framing."""

    def test_request(self) -> None:
        """A connection request carries type, name and identifier."""
        buf = BytesIO()
        write_connection_request(buf, ConnectionType.STREAM, "lander", b"\x01" * 16)
        buf.seek(0)
        assert read_connection_request(buf) == (ConnectionType.STREAM, "lander", b"\x01" * 16)

    def test_response(self) -> None:
        """A connection response carries status, message and identifier."""
        buf = BytesIO()
        write_connection_response(buf, ConnectionStatus.WRONG_TYPE, "nope")
        buf.seek(0)
        assert read_connection_response(buf) == (ConnectionStatus.WRONG_TYPE, "nope", b"")

    def test_request_is_not_a_response(self) -> None:
        """Reading the wrong message type raises IPCError."""
        buf = BytesIO()
        write_connection_request(buf, ConnectionType.RPC, "lander")
        buf.seek(0)
        with pytest.raises(IPCError, match="Expected connection_response"):
            read_connection_response(buf)


# ---------------------------------------------------------------------------
# Requests and responses
# ---------------------------------------------------------------------------


class TestRequestResponse:
    """Request, response and stream update framing."""

    def test_request_rows_in_order(self) -> None:
        """A request holds one row per call, in order."""
        calls = [ProcedureCall("S", "A", (b"1",)), ProcedureCall("S", "B")]
        buf = BytesIO()
        write_request(buf, calls)
        buf.seek(0)
        assert read_request(buf) == calls

    def test_response_values_and_faults(self) -> None:
        """A response mixes values and per-call faults."""
        fault = RemoteFault("S", "Boom", "went wrong", "tb")
        buf = BytesIO()
        write_response(buf, [ProcedureResult(value=b"abc"), ProcedureResult(fault=fault), ProcedureResult()])
        buf.seek(0)
        response = read_response(buf)
        assert response.fault is None
        assert response.results == (ProcedureResult(value=b"abc"), ProcedureResult(fault=fault), ProcedureResult())

    def test_error_response(self) -> None:
        """A request-level failure is a zero-row response with error metadata."""
        buf = BytesIO()
        write_error_response(buf, RemoteFault("KRPC", "InvalidOperationException", "bad", "tb"))
        buf.seek(0)
        response = read_response(buf)
        assert response.results == ()
        assert response.fault == RemoteFault("KRPC", "InvalidOperationException", "bad", "tb")

    def test_stream_update(self) -> None:
        """Stream updates carry ids with their results."""
        updates = [
            StreamResult(3, ProcedureResult(value=b"v")),
            StreamResult(9, ProcedureResult(fault=RemoteFault("S", "E", "d"))),
        ]
        buf = BytesIO()
        write_stream_update(buf, updates)
        buf.seek(0)
        assert read_stream_update(buf) == updates

    def test_back_to_back_messages(self) -> None:
        """Each read consumes exactly one message from a shared channel."""
        buf = BytesIO()
        write_request(buf, [ProcedureCall("S", "First")])
        write_request(buf, [ProcedureCall("S", "Second")])
        buf.seek(0)
        assert read_request(buf)[0].procedure == "First"
        assert read_request(buf)[0].procedure == "Second"

    def test_end_of_stream_raises(self) -> None:
        """Reading from an exhausted channel raises IPCError."""
        with pytest.raises(IPCError):
            read_request(BytesIO())


# ---------------------------------------------------------------------------
# Version checks
# ---------------------------------------------------------------------------


def _raw_request(metadata: dict[bytes, bytes]) -> BytesIO:
    batch = pa.RecordBatch.from_pydict({"service": ["S"], "procedure": ["P"], "arguments": [[]]}, schema=REQUEST_SCHEMA)
    buf = BytesIO()
    serialize_record_batch(buf, batch, pa.KeyValueMetadata(metadata))
    buf.seek(0)
    return buf


class TestVersion:
    """Protocol version metadata."""

    def test_missing_version_raises(self) -> None:
        """A request without a version is rejected."""
        with pytest.raises(VersionError, match="Missing"):
            read_request(_raw_request({MESSAGE_TYPE_KEY: MSG_REQUEST}))

    def test_wrong_version_raises(self) -> None:
        """A request with another version is rejected."""
        with pytest.raises(VersionError, match="Unsupported"):
            read_request(_raw_request({MESSAGE_TYPE_KEY: MSG_REQUEST, REQUEST_VERSION_KEY: b"99"}))

    def test_meta_messages(self) -> None:
        """Meta-service messages are ordinary message dataclasses."""
        assert StreamInfo.deserialize_from_bytes(StreamInfo(7).serialize_to_bytes()) == StreamInfo(7)
