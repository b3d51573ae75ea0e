"""Tests for telerpc.rpc._server: dispatch, handshakes and stream pushing."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from typing import Protocol

import pyarrow as pa
import pytest

from telerpc import Client, Int32, RpcServer, ServerConfig, ServiceProxy, encode, serve_pipe
from telerpc.metadata import MESSAGE_TYPE_KEY, MSG_REQUEST, REQUEST_VERSION_KEY
from telerpc.rpc import ConnectionStatus, ConnectionType, ObjectStore, PipeTransport, ProcedureCall, make_pipe_pair
from telerpc.rpc._types import REQUEST_SCHEMA
from telerpc.rpc._wire import (
    read_connection_response,
    read_response,
    write_connection_request,
    write_request,
)
from telerpc.services import krpc
from telerpc.utils import serialize_record_batch
from tests.fixture_service import FixtureService, FixtureServiceImpl, wait_until

# ---------------------------------------------------------------------------
# Configuration and registration
# ---------------------------------------------------------------------------


class Thermometer(Protocol):
    """Small service for registration tests."""

    def read(self) -> float: ...

    def calibrate(self, offset: float) -> None: ...


class IncompleteThermometer:
    """Implements only part of Thermometer."""

    def read(self) -> float:
        return 20.0

    def calibrate(self) -> None:
        pass


class TestServerConfig:
    """Validation of ServerConfig."""

    def test_tick_must_be_positive(self) -> None:
        """A zero tick interval is rejected."""
        with pytest.raises(ValueError, match="tick_interval"):
            ServerConfig(tick_interval=0)


class TestAddService:
    """Service registration."""

    def test_krpc_always_present(self) -> None:
        """Every server hosts the KRPC meta-service."""
        services = RpcServer().services
        assert "KRPC" in services
        assert "GetStatus" in services["KRPC"]
        assert "get_Clients" in services["KRPC"]

    def test_services_keyed_by_remote_name(self, server: RpcServer) -> None:
        """Hosted procedures are listed under their remote names."""
        assert "Echo" in server.services["Fixture"]

    def test_duplicate_name_rejected(self, server: RpcServer) -> None:
        """Two services cannot share a name."""
        with pytest.raises(ValueError, match="already registered"):
            server.add_service(FixtureService, FixtureServiceImpl())

    def test_incomplete_implementation_rejected(self) -> None:
        """Missing methods and parameters are reported together."""
        with pytest.raises(TypeError, match="missing parameter 'offset'"):
            RpcServer().add_service(Thermometer, IncompleteThermometer())

    def test_name_override(self) -> None:
        """The service name can be given explicitly."""
        server = RpcServer()
        server.add_service(FixtureService, FixtureServiceImpl(), name="Second")
        assert "Second" in server.services

    def test_registration_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """Registration is logged with the server id."""
        with caplog.at_level(logging.INFO, logger="telerpc.server"):
            server = RpcServer(server_id="abc")
            server.add_service(FixtureService, FixtureServiceImpl())
        record = next(r for r in caplog.records if r.__dict__.get("service") == "Fixture")
        assert record.__dict__["server_id"] == "abc"


# ---------------------------------------------------------------------------
# ObjectStore
# ---------------------------------------------------------------------------


class TestObjectStore:
    """Server-side object ids."""

    def test_ids_start_at_one_and_are_stable(self) -> None:
        """The same object keeps its id; new objects get new ids."""
        store = ObjectStore()
        a, b = object(), object()
        assert store.add(a) == 1
        assert store.add(b) == 2
        assert store.add(a) == 1
        assert len(store) == 2
        assert store.get(2) is b

    def test_none_is_zero(self) -> None:
        """None is encoded as id 0."""
        assert ObjectStore().object_id_of(None) == 0

    def test_unknown_id(self) -> None:
        """Unknown ids raise ArgumentException."""
        with pytest.raises(krpc.ArgumentException):
            ObjectStore().get(5)


# ---------------------------------------------------------------------------
# Raw channel behaviour
# ---------------------------------------------------------------------------


@pytest.fixture
def raw_channel(server: RpcServer) -> Iterator[PipeTransport]:
    """The client end of a pipe channel served by ``server``, handshake not yet sent."""
    client_side, server_side = make_pipe_pair()
    thread = threading.Thread(target=server.serve, args=(server_side,), daemon=True)
    thread.start()
    yield client_side
    client_side.close()
    thread.join(5)


def _handshake(channel: PipeTransport) -> bytes:
    write_connection_request(channel.writer, ConnectionType.RPC, "raw")
    status, _, identifier = read_connection_response(channel.reader)
    assert status is ConnectionStatus.OK
    return identifier


class TestRawChannel:
    """Behaviour observable only at the message level."""

    def test_garbage_handshake(self, raw_channel: PipeTransport) -> None:
        """A malformed connection request is answered with MALFORMED_MESSAGE."""
        raw_channel.writer.write(b"not arrow at all")
        raw_channel.close_writer()
        status, message, _ = read_connection_response(raw_channel.reader)
        assert status is ConnectionStatus.MALFORMED_MESSAGE
        assert message

    def test_stream_channel_with_unknown_identifier(self, raw_channel: PipeTransport) -> None:
        """A stream channel must name a connected client."""
        write_connection_request(raw_channel.writer, ConnectionType.STREAM, "", b"\x00" * 16)
        status, message, _ = read_connection_response(raw_channel.reader)
        assert status is ConnectionStatus.MALFORMED_MESSAGE
        assert "Unknown client identifier" in message

    def test_version_mismatch_keeps_channel(self, raw_channel: PipeTransport) -> None:
        """A request with the wrong version gets an error response; the channel stays usable."""
        _handshake(raw_channel)
        batch = pa.RecordBatch.from_pydict(
            {"service": ["KRPC"], "procedure": ["GetStatus"], "arguments": [[]]}, schema=REQUEST_SCHEMA
        )
        serialize_record_batch(
            raw_channel.writer,
            batch,
            pa.KeyValueMetadata({MESSAGE_TYPE_KEY: MSG_REQUEST, REQUEST_VERSION_KEY: b"0"}),
        )
        response = read_response(raw_channel.reader)
        assert response.fault is not None
        assert response.fault.name == "VersionError"
        write_request(raw_channel.writer, [ProcedureCall("Fixture", "Echo", (encode("ok", str),))])
        assert read_response(raw_channel.reader).results[0].value == encode("ok", str)

    def test_several_calls_in_one_request(self, raw_channel: PipeTransport) -> None:
        """Results come back one per call, in request order, with per-call faults."""
        _handshake(raw_channel)
        write_request(
            raw_channel.writer,
            [
                ProcedureCall("Fixture", "Add", (encode(1, Int32), encode(2, Int32))),
                ProcedureCall("Fixture", "Crash"),
                ProcedureCall("Fixture", "Echo", (encode("z", str),)),
            ],
        )
        results = read_response(raw_channel.reader).results
        assert results[0].value == encode(3, Int32)
        assert results[1].fault is not None
        assert results[1].fault.name == "RuntimeError"
        assert results[2].value == encode("z", str)

    def test_no_return_value_is_empty(self, raw_channel: PipeTransport) -> None:
        """Procedures that return nothing answer with empty bytes."""
        _handshake(raw_channel)
        write_request(raw_channel.writer, [ProcedureCall("Fixture", "Increment")])
        assert read_response(raw_channel.reader).results[0].value == b""


# ---------------------------------------------------------------------------
# Sessions and streams
# ---------------------------------------------------------------------------


class TestSessions:
    """Per-client session state."""

    def test_session_removed_on_disconnect(self, server: RpcServer) -> None:
        """Closing a client ends its session."""
        with serve_pipe(server, name="short-lived"):
            assert [s.name for s in server.sessions()] == ["short-lived"]
        assert wait_until(lambda: not server.sessions())

    def test_context_logger_fields(self, fixture: ServiceProxy, client: Client, caplog: pytest.LogCaptureFixture) -> None:
        """ctx.logger binds the server id, procedure and client id."""
        with caplog.at_level(logging.INFO, logger="telerpc.service.Fixture"):
            fixture.note("hello from service")
        record = next(r for r in caplog.records if r.getMessage() == "hello from service")
        assert record.name == "telerpc.service.Fixture"
        assert record.__dict__["server_id"] == "fixture"
        assert record.__dict__["procedure"] == "Note"
        assert record.__dict__["client_id"] == client.identifier.hex()
        assert record.__dict__["client_name"] == "tester"

    def test_only_changes_are_pushed(self, fixture: ServiceProxy, server: RpcServer) -> None:
        """A stream whose value does not change is sent once."""
        with fixture.echo_stream("steady"):
            assert wait_until(lambda: server.status().stream_updates_sent == 1)
            before = server.status().stream_updates_sent
            time.sleep(0.1)
            status = server.status()
        assert status.stream_updates_sent == before
        assert status.stream_rpcs_executed > 0

    def test_rate_limits_evaluations(self, fixture: ServiceProxy, server: RpcServer) -> None:
        """A low rate evaluates far less often than every tick."""
        with fixture.echo_stream("slow") as stream:
            stream.set_rate(2)
            start = server.status().stream_rpcs_executed
            time.sleep(0.3)
            evaluated = server.status().stream_rpcs_executed - start
        assert evaluated <= 2

    def test_removed_streams_stop(self, client: Client, fixture: ServiceProxy, server: RpcServer) -> None:
        """Removed streams are no longer evaluated."""
        fixture.echo_stream("gone").remove()
        assert server.status().stream_rpcs == 0
        time.sleep(0.02)
        start = server.status().stream_rpcs_executed
        time.sleep(0.05)
        assert server.status().stream_rpcs_executed == start
