# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Client connection: handshake, synchronous calls and stream registration."""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, replace
from types import TracebackType
from typing import TYPE_CHECKING, Any

from telerpc.encoding import encode
from telerpc.objects import RemoteObject
from telerpc.rpc._common import (
    CallTimeoutError,
    ConnectionClosedError,
    ConnectionFailedError,
    StreamDisconnectedError,
    StreamError,
    TransportError,
    VersionError,
    _logger,
)
from telerpc.rpc._debug import fmt_calls, wire_request_logger, wire_transport_logger
from telerpc.rpc._registry import ExceptionFactory, ExceptionRegistry
from telerpc.rpc._stream import Event, Stream, StreamManager
from telerpc.rpc._transport import RpcTransport, open_tcp
from telerpc.rpc._types import (
    CLIENT_IDENTIFIER_LENGTH,
    ConnectionStatus,
    ConnectionType,
    ProcedureCall,
    ProcedureResult,
)
from telerpc.rpc._wire import read_connection_response, read_response, write_connection_request, write_request
from telerpc.utils import IPCError

if TYPE_CHECKING:
    from telerpc.service import ServiceProxy

__all__ = ["Client", "ClientConfig", "connect"]

# Exceptions that indicate the peer has gone away or the IPC data is
# truncated/corrupt.  Wrapped into ``TransportError`` on the client side.
_TRANSPORT_ERRORS = (IPCError, VersionError, OSError, EOFError, ValueError)


@dataclass(frozen=True)
class ClientConfig:
    """Connection settings.

    Attributes:
        name: Client name sent in the handshake (shown in the server's client list).
        address: Server host for :func:`connect`.
        rpc_port: TCP port of the request/response channel.
        stream_port: TCP port of the stream channel.
        connect_timeout: Seconds allowed for TCP connect and handshake.
        call_timeout: Default per-call response timeout; ``None`` waits forever.
            Only enforced by transports that support ``settimeout``.
        first_update_timeout: Seconds a started stream waits for its first value.
        enable_streams: Open the stream channel in :func:`connect`.
        close_timeout: Seconds :meth:`Client.close` waits for in-flight work.

    """

    name: str = ""
    address: str = "127.0.0.1"
    rpc_port: int = 50000
    stream_port: int = 50001
    connect_timeout: float | None = 10.0
    call_timeout: float | None = None
    first_update_timeout: float = 10.0
    enable_streams: bool = True
    close_timeout: float = 5.0

    def __post_init__(self) -> None:
        """Validate ports and timeouts."""
        for attr in ("rpc_port", "stream_port"):
            port = getattr(self, attr)
            if not 0 < port < 65536:
                raise ValueError(f"{attr} must be in 1..65535, got {port}")
        for attr in ("connect_timeout", "call_timeout"):
            value = getattr(self, attr)
            if value is not None and value <= 0:
                raise ValueError(f"{attr} must be positive or None, got {value}")
        for attr in ("first_update_timeout", "close_timeout"):
            if getattr(self, attr) < 0:
                raise ValueError(f"{attr} must be >= 0, got {getattr(self, attr)}")


def _settimeout(transport: RpcTransport | None, timeout: float | None) -> None:
    settimeout = getattr(transport, "settimeout", None)
    if settimeout is not None:
        settimeout(timeout)


def _krpc_proxy(client: Client) -> ServiceProxy:
    # krpc imports telerpc.service, which imports this package
    from telerpc.services.krpc import krpc_service

    return krpc_service(client)


def _interrupt(transport: RpcTransport | None) -> None:
    """Wake any thread blocked reading *transport* without closing its reader."""
    if transport is None:
        return
    for name in ("shutdown", "close_writer"):
        method = getattr(transport, name, None)
        if method is not None:
            method()
            return


class Client:
    """A connection to a server.

    Calls are synchronous and serialized: one request is in flight at a
    time and its response is read before the next request is written.
    Server-pushed stream updates arrive on a second channel and are handled
    by a background thread (see :class:`~telerpc.rpc.Stream`).

    Usage::

        with Client(rpc_transport, stream_transport, name="lander") as client:
            status = client.krpc.get_status()

    Raises:
        ConnectionFailedError: If the server rejects the handshake or the
            handshake cannot complete.

    """

    __slots__ = (
        "__weakref__",
        "_closed",
        "_config",
        "_exceptions",
        "_identifier",
        "_krpc",
        "_lock",
        "_name",
        "_rpc",
        "_state_lock",
        "_stream",
        "_streams",
    )

    def __init__(
        self,
        rpc_transport: RpcTransport,
        stream_transport: RpcTransport | None = None,
        *,
        name: str | None = None,
        config: ClientConfig | None = None,
    ) -> None:
        """Perform the handshake on both channels and start the stream receiver.

        Args:
            rpc_transport: Request/response channel.
            stream_transport: Stream channel, or ``None`` for a call-only connection.
            name: Client name; defaults to ``config.name``.
            config: Connection settings; defaults to ``ClientConfig()``.

        """
        self._config = config if config is not None else ClientConfig()
        self._name = name if name is not None else self._config.name
        self._rpc = rpc_transport
        self._stream = stream_transport
        self._lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._closed: BaseException | None = None
        self._exceptions = ExceptionRegistry()
        self._identifier = b""
        # Registers the KRPC error types, so meta-service faults are typed
        # even for calls that never go through the proxy.
        self._krpc = _krpc_proxy(self)
        self._streams = StreamManager(self)
        try:
            self._handshake()
        except BaseException:
            self._closed = ConnectionFailedError("Handshake failed")
            self._streams.close(StreamDisconnectedError("Handshake failed"))
            rpc_transport.close()
            if stream_transport is not None:
                stream_transport.close()
            raise
        if stream_transport is not None:
            self._streams.start_receiver(stream_transport)
        _logger.info("Connected as %r (id=%s)", self._name, self._identifier.hex())

    def _handshake(self) -> None:
        timeout = self._config.connect_timeout
        _settimeout(self._rpc, timeout)
        _settimeout(self._stream, timeout)
        try:
            write_connection_request(self._rpc.writer, ConnectionType.RPC, self._name)
            status, message, identifier = read_connection_response(self._rpc.reader)
            if status is not ConnectionStatus.OK:
                raise ConnectionFailedError(f"RPC connection rejected ({status.value}): {message}")
            if len(identifier) != CLIENT_IDENTIFIER_LENGTH:
                raise ConnectionFailedError(
                    f"Server sent a {len(identifier)}-byte client identifier, expected {CLIENT_IDENTIFIER_LENGTH}"
                )
            self._identifier = identifier
            if self._stream is not None:
                write_connection_request(self._stream.writer, ConnectionType.STREAM, self._name, identifier)
                status, message, _ = read_connection_response(self._stream.reader)
                if status is not ConnectionStatus.OK:
                    raise ConnectionFailedError(f"Stream connection rejected ({status.value}): {message}")
        except _TRANSPORT_ERRORS as exc:
            raise ConnectionFailedError(f"Handshake failed: {exc}") from exc
        _settimeout(self._rpc, None)
        _settimeout(self._stream, None)

    # -- properties -----------------------------------------------------------

    @property
    def config(self) -> ClientConfig:
        """Connection settings."""
        return self._config

    @property
    def name(self) -> str:
        """Client name sent in the handshake."""
        return self._name

    @property
    def identifier(self) -> bytes:
        """16-byte client identifier assigned by the server."""
        return self._identifier

    @property
    def closed(self) -> bool:
        """Whether the connection is closed (by :meth:`close` or a failure)."""
        return self._closed is not None

    @property
    def exceptions(self) -> ExceptionRegistry:
        """Table mapping server error names to local exception types."""
        return self._exceptions

    @property
    def streams(self) -> StreamManager:
        """Stream subscriptions of this connection."""
        return self._streams

    @property
    def krpc(self) -> ServiceProxy:
        """Proxy for the ``KRPC`` meta-service."""
        return self._krpc

    def register_exception(self, service: str, name: str, factory: ExceptionFactory) -> None:
        """Map the server error *service*.*name* to *factory*."""
        self._exceptions.register(service, name, factory)

    # -- remote objects -------------------------------------------------------

    def bind_object(self, cls: type[RemoteObject], object_id: int) -> RemoteObject:
        """Wrap a non-zero object id received from the server."""
        return cls(self, object_id)

    def object_id_of(self, value: object) -> int:
        """Return the id to send for *value* (``0`` for ``None``).

        Raises:
            TypeError: If *value* is not a remote object of this connection.

        """
        if value is None:
            return 0
        if not isinstance(value, RemoteObject):
            raise TypeError(f"Expected a remote object, got {type(value).__name__}")
        if value.client is not self:
            raise TypeError(f"{value!r} belongs to a different connection")
        return value.object_id

    # -- calls ----------------------------------------------------------------

    def build_call(self, service: str, procedure: str, args: Sequence[bytes] = ()) -> ProcedureCall:
        """Build a procedure call from encoded arguments; performs no I/O."""
        return ProcedureCall(service, procedure, tuple(args))

    def encode_argument(self, value: Any, hint: Any) -> bytes:
        """Encode one argument, binding remote objects to this connection."""
        return encode(value, hint, self)

    def invoke(
        self,
        service: str,
        procedure: str,
        args: Sequence[bytes] = (),
        *,
        timeout: float | None = None,
    ) -> bytes:
        """Call *service*.*procedure* and return the encoded result.

        Returns ``b""`` for procedures that return nothing.

        Raises:
            RpcError: The server reported an error (typed via :attr:`exceptions`).
            ConnectionClosedError: The connection is already closed.
            CallTimeoutError: No response within *timeout*; the connection is closed.
            TransportError: The channel failed; the connection is closed.

        """
        return self.invoke_call(self.build_call(service, procedure, args), timeout=timeout)

    def invoke_call(self, call: ProcedureCall, *, timeout: float | None = None) -> bytes:
        """Send a prebuilt call; see :meth:`invoke`."""
        (result,) = self._send_calls([call], timeout)
        if result.fault is not None:
            raise self._exceptions.build_fault(result.fault)
        return result.value

    def _check_open(self) -> None:
        if self._closed is not None:
            raise ConnectionClosedError(f"Connection is closed: {self._closed}")

    def _send_calls(self, calls: Sequence[ProcedureCall], timeout: float | None) -> list[ProcedureResult]:
        if timeout is None:
            timeout = self._config.call_timeout
        with self._lock:
            self._check_open()
            if wire_request_logger.isEnabledFor(logging.DEBUG):
                wire_request_logger.debug("Send request: %s", fmt_calls(calls))
            try:
                _settimeout(self._rpc, timeout)
                write_request(self._rpc.writer, calls)
                response = read_response(self._rpc.reader)
            except TimeoutError as exc:
                error = CallTimeoutError(f"No response to {fmt_calls(calls)} within {timeout}s; connection closed")
                self._connection_lost(error)
                raise error from exc
            except _TRANSPORT_ERRORS as exc:
                if self._closed is not None:
                    raise ConnectionClosedError(f"Connection is closed: {self._closed}") from exc
                error = TransportError(f"Transport failed during call to {fmt_calls(calls)}: {exc}")
                self._connection_lost(error)
                raise error from exc
        if response.fault is not None:
            raise self._exceptions.build_fault(response.fault)
        if len(response.results) != len(calls):
            error = TransportError(f"Expected {len(calls)} results, got {len(response.results)}")
            self._connection_lost(error)
            raise error
        return list(response.results)

    # -- streams --------------------------------------------------------------

    def add_stream(
        self,
        call: ProcedureCall,
        return_type: Any,
        *,
        start: bool = True,
        rate: float | None = None,
    ) -> Stream[Any]:
        """Register *call* as a stream whose values decode as *return_type*.

        Identical calls on one connection share a server subscription.
        With ``start=True`` this waits (up to
        ``config.first_update_timeout``) for the first value.

        Raises:
            StreamError: If the connection has no stream channel.
            StreamDisconnectedError: If the connection is closed.

        """
        if self._stream is None:
            raise StreamError("Connection has no stream channel")
        return self._streams.add(call, return_type, start=start, rate=rate)

    def add_event(self, expression: RemoteObject) -> Event:
        """Create an :class:`Event` that fires when *expression* evaluates to true."""
        if self._stream is None:
            raise StreamError("Connection has no stream channel")
        with self._streams.registering():
            info = self.krpc.add_event(expression)
            return Event(self._streams.attach(info.id, bool, started=True))

    # -- lifecycle ------------------------------------------------------------

    def _connection_lost(self, reason: BaseException) -> None:
        """Mark the connection failed, release stream waiters and close the channels."""
        with self._state_lock:
            if self._closed is not None:
                return
            self._closed = reason
        _logger.warning("Connection %r lost: %s", self._name, reason)
        self._streams.close(StreamDisconnectedError(str(reason)))
        _interrupt(self._stream)
        _interrupt(self._rpc)
        self._close_rpc()

    def _close_rpc(self) -> None:
        acquired = self._lock.acquire(timeout=self._config.close_timeout)
        try:
            self._rpc.close()
        finally:
            if acquired:
                self._lock.release()

    def close(self) -> None:
        """Close both channels; idempotent.

        Blocked stream waiters are released with
        :class:`~telerpc.rpc.StreamDisconnectedError`.
        """
        with self._state_lock:
            already = self._closed is not None
            if not already:
                self._closed = ConnectionClosedError("Connection closed by client")
        if not already:
            if wire_transport_logger.isEnabledFor(logging.DEBUG):
                wire_transport_logger.debug("Client close: name=%r", self._name)
            self._streams.close(StreamDisconnectedError("Connection closed by client"))
            _interrupt(self._stream)
            if not self._lock.acquire(blocking=False):
                _interrupt(self._rpc)
            else:
                self._lock.release()
            self._close_rpc()
        if not self._streams.join_receiver(self._config.close_timeout):
            _logger.warning("Stream receiver did not exit within %ss", self._config.close_timeout)

    def __enter__(self) -> Client:
        """Enter context manager."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the connection."""
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed is not None else "open"
        return f"<Client {self._name!r} id={self._identifier.hex()} {state}>"


def connect(config: ClientConfig | None = None, **overrides: Any) -> Client:
    """Open a TCP connection to a server.

    Args:
        config: Connection settings; defaults to ``ClientConfig()``.
        **overrides: Fields replacing those of *config*
            (e.g. ``connect(name="telemetry", address="10.0.0.2")``).

    Raises:
        ConnectionFailedError: If a socket cannot be opened or the handshake fails.

    """
    if config is None:
        config = ClientConfig(**overrides)
    elif overrides:
        config = replace(config, **overrides)
    try:
        rpc = open_tcp(config.address, config.rpc_port, config.connect_timeout)
    except OSError as exc:
        raise ConnectionFailedError(f"Cannot connect to {config.address}:{config.rpc_port}: {exc}") from exc
    stream = None
    if config.enable_streams:
        try:
            stream = open_tcp(config.address, config.stream_port, config.connect_timeout)
        except OSError as exc:
            rpc.close()
            raise ConnectionFailedError(f"Cannot connect to {config.address}:{config.stream_port}: {exc}") from exc
    return Client(rpc, stream, config=config)
