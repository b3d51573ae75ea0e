# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Client runtime for kRPC-style remote procedure calls over Arrow IPC.

Services are described as Python Protocol classes (see
:mod:`telerpc.service`); every argument and result is encoded with
:mod:`telerpc.encoding` as a one-row Arrow IPC stream.

Channels
--------
A connection uses two ordered byte channels:

- **RPC channel**: the client writes one ``Request`` and reads the matching
  ``Response`` before sending the next.  Calls are serialized by a lock.
- **Stream channel**: the server pushes ``StreamUpdate`` messages carrying
  the latest results of registered stream calls.  A background thread
  keeps the latest value of each stream.

Wire Protocol
-------------
Every message is one complete IPC stream (schema + one batch + EOS) whose
batch metadata carries ``telerpc.message_type`` and
``telerpc.request_version``::

    Client→Server (RPC):    ConnectionRequest(type=RPC, client_name)
    Server→Client (RPC):    ConnectionResponse(status, message, client_identifier)
    Client→Server (STREAM): ConnectionRequest(type=STREAM, client_identifier)
    Server→Client (STREAM): ConnectionResponse(status, message)

    Client→Server: Request      [one row per call: service, procedure, arguments]
    Server→Client: Response     [one row per call: value | error fields]
    Server→Client: StreamUpdate [one row per changed stream: id, value | error fields]

A request-level failure is a zero-row ``Response`` whose metadata holds
``telerpc.error_service``, ``telerpc.error_name``,
``telerpc.error_description`` and ``telerpc.error_stack_trace``.

Errors
------
Server faults are raised as :class:`RpcError`, or as the exception type
registered for the fault's service and name (see :class:`ExceptionRegistry`).
Transport failures raise :class:`TransportError` and close the connection.
"""

from __future__ import annotations

import contextlib
import logging
import socket
import socketserver
import threading
from collections.abc import Iterator
from types import TracebackType

from telerpc.rpc._client import Client, ClientConfig, connect
from telerpc.rpc._common import (
    CallContext,
    CallTimeoutError,
    ConnectionClosedError,
    ConnectionFailedError,
    RpcError,
    StreamDisconnectedError,
    StreamError,
    StreamRemovedError,
    StreamTimeoutError,
    TransportError,
    VersionError,
    _logger,
)
from telerpc.rpc._registry import ExceptionFactory, ExceptionRegistry
from telerpc.rpc._server import ObjectStore, RpcServer, ServerConfig
from telerpc.rpc._stream import Event, Stream
from telerpc.rpc._transport import (
    PipeTransport,
    RpcTransport,
    SocketTransport,
    make_pipe_pair,
    make_socket_pair,
    open_tcp,
)
from telerpc.rpc._types import (
    ConnectionStatus,
    ConnectionType,
    ProcedureCall,
    ProcedureDescription,
    ProcedureResult,
    RemoteFault,
    ServiceDescription,
    Services,
    Status,
    StreamInfo,
    StreamResult,
)

__all__ = [
    "CallContext",
    "CallTimeoutError",
    "Client",
    "ClientConfig",
    "ConnectionClosedError",
    "ConnectionFailedError",
    "ConnectionStatus",
    "ConnectionType",
    "Event",
    "ExceptionFactory",
    "ExceptionRegistry",
    "ObjectStore",
    "PipeTransport",
    "ProcedureCall",
    "ProcedureDescription",
    "ProcedureResult",
    "RemoteFault",
    "RpcError",
    "RpcServer",
    "RpcTransport",
    "ServerConfig",
    "ServiceDescription",
    "Services",
    "SocketTransport",
    "Status",
    "Stream",
    "StreamDisconnectedError",
    "StreamError",
    "StreamInfo",
    "StreamRemovedError",
    "StreamResult",
    "StreamTimeoutError",
    "TcpServer",
    "TransportError",
    "VersionError",
    "connect",
    "make_pipe_pair",
    "make_socket_pair",
    "open_tcp",
    "serve_pipe",
    "serve_tcp",
]


# ---------------------------------------------------------------------------
# serve_pipe
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def serve_pipe(
    server: RpcServer,
    *,
    name: str = "",
    config: ClientConfig | None = None,
    streams: bool = True,
) -> Iterator[Client]:
    """Serve *server* in-process over pipe pairs and yield a connected client.

    Useful for tests and demos: background threads run ``RpcServer.serve()``
    on the server side of each channel.

    Args:
        server: The server to run.
        name: Client name sent in the handshake.
        config: Client settings.
        streams: Open the stream channel.

    Yields:
        A connected :class:`Client`.

    """
    client_rpc, server_rpc = make_pipe_pair()
    threads = [threading.Thread(target=server.serve, args=(server_rpc,), name="telerpc-serve-rpc", daemon=True)]
    client_stream: PipeTransport | None = None
    if streams:
        client_stream, server_stream = make_pipe_pair()
        threads.append(
            threading.Thread(target=server.serve, args=(server_stream,), name="telerpc-serve-stream", daemon=True)
        )
    for thread in threads:
        thread.start()
    try:
        with Client(client_rpc, client_stream, name=name, config=config) as client:
            yield client
    finally:
        for thread in threads:
            thread.join(timeout=5)


# ---------------------------------------------------------------------------
# serve_tcp
# ---------------------------------------------------------------------------


class _ChannelHandler(socketserver.BaseRequestHandler):
    """Runs one channel of one client on the socketserver's worker thread."""

    server: _ChannelServer

    def handle(self) -> None:
        self.request.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self.server.rpc_server.serve(SocketTransport(self.request))


class _ChannelServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, address: tuple[str, int], rpc_server: RpcServer) -> None:
        self.rpc_server = rpc_server
        super().__init__(address, _ChannelHandler)


class TcpServer:
    """Handle for a server listening on an RPC port and a stream port."""

    __slots__ = ("_listeners", "_rpc_server", "_threads")

    def __init__(self, rpc_server: RpcServer, listeners: list[_ChannelServer]) -> None:
        """Start accepting on every listener; use :func:`serve_tcp` instead."""
        self._rpc_server = rpc_server
        self._listeners = listeners
        self._threads = [
            threading.Thread(target=listener.serve_forever, name="telerpc-tcp-accept", daemon=True)
            for listener in listeners
        ]
        for thread in self._threads:
            thread.start()

    @property
    def address(self) -> str:
        """Host the server is bound to."""
        return str(self._listeners[0].server_address[0])

    @property
    def rpc_port(self) -> int:
        """Port of the RPC channel."""
        return int(self._listeners[0].server_address[1])

    @property
    def stream_port(self) -> int:
        """Port of the stream channel."""
        return int(self._listeners[1].server_address[1])

    def close(self) -> None:
        """Stop accepting, drop connected clients and release the ports."""
        for listener in self._listeners:
            listener.shutdown()
        self._rpc_server.disconnect_all()
        for listener in self._listeners:
            listener.server_close()
        for thread in self._threads:
            thread.join(timeout=5)

    def __enter__(self) -> TcpServer:
        """Enter context manager."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the server."""
        self.close()


def serve_tcp(server: RpcServer, host: str = "127.0.0.1", rpc_port: int = 50000, stream_port: int = 50001) -> TcpServer:
    """Serve *server* over TCP on background threads.

    Pass ``0`` for either port to let the OS pick one; read the actual
    ports from the returned handle.
    """
    rpc_listener = _ChannelServer((host, rpc_port), server)
    try:
        stream_listener = _ChannelServer((host, stream_port), server)
    except OSError:
        rpc_listener.server_close()
        raise
    handle = TcpServer(server, [rpc_listener, stream_listener])
    if _logger.isEnabledFor(logging.INFO):
        _logger.info("Serving on %s (rpc=%d, stream=%d)", handle.address, handle.rpc_port, handle.stream_port)
    return handle
