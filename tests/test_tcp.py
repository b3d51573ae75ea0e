"""Tests for serve_tcp and connect over real sockets."""

from __future__ import annotations

import socket
from collections.abc import Iterator

import pytest

from telerpc import ConnectionFailedError, RpcServer, ServiceProxy, connect, serve_tcp
from telerpc.rpc import TcpServer
from tests.fixture_service import FixtureService, wait_until


@pytest.fixture
def tcp(server: RpcServer) -> Iterator[TcpServer]:
    """``server`` listening on OS-assigned loopback ports."""
    with serve_tcp(server, rpc_port=0, stream_port=0) as handle:
        yield handle


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


class TestTcp:
    """End-to-end calls and streams over TCP."""

    def test_ports_assigned(self, tcp: TcpServer) -> None:
        """Port 0 binds to distinct free ports."""
        assert tcp.address == "127.0.0.1"
        assert tcp.rpc_port > 0
        assert tcp.stream_port > 0
        assert tcp.rpc_port != tcp.stream_port

    def test_call(self, tcp: TcpServer) -> None:
        """Calls work over a socket connection."""
        with connect(rpc_port=tcp.rpc_port, stream_port=tcp.stream_port, name="tcp") as client:
            assert ServiceProxy(client, FixtureService).echo("over tcp") == "over tcp"
            assert client.name == "tcp"

    def test_stream(self, tcp: TcpServer) -> None:
        """Streams are pushed over the second socket."""
        with connect(rpc_port=tcp.rpc_port, stream_port=tcp.stream_port) as client:
            fixture = ServiceProxy(client, FixtureService)
            with fixture.get_counter_stream() as counter:
                assert counter.get() == 0
                fixture.increment(3)
                assert counter.wait_for(lambda value: value == 3, timeout=5)

    def test_client_address_reported(self, tcp: TcpServer) -> None:
        """get_Clients includes the peer address of socket clients."""
        with connect(rpc_port=tcp.rpc_port, stream_port=tcp.stream_port, name="addr") as client:
            clients = client.krpc.get_clients()
        assert [address for _, name, address in clients if name == "addr"][0].startswith("127.0.0.1:")

    def test_call_only(self, tcp: TcpServer) -> None:
        """enable_streams=False opens only the RPC socket."""
        with connect(rpc_port=tcp.rpc_port, stream_port=tcp.stream_port, enable_streams=False) as client:
            assert client.krpc.get_status().clients == 1

    def test_connection_refused(self) -> None:
        """Nothing listening raises ConnectionFailedError."""
        port = _unused_port()
        with pytest.raises(ConnectionFailedError, match=f"127.0.0.1:{port}"):
            connect(rpc_port=port, stream_port=port, connect_timeout=1)

    def test_close_disconnects_clients(self, server: RpcServer) -> None:
        """Closing the TCP server drops connected clients and frees the ports."""
        handle = serve_tcp(server, rpc_port=0, stream_port=0)
        client = connect(rpc_port=handle.rpc_port, stream_port=handle.stream_port)
        try:
            handle.close()
            assert wait_until(lambda: client.closed)
            assert wait_until(lambda: not server.sessions())
        finally:
            client.close()
        with pytest.raises(ConnectionFailedError):
            connect(rpc_port=handle.rpc_port, stream_port=handle.stream_port, connect_timeout=1)
