# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Reference server: handshakes, call dispatch and stream pushing.

An :class:`RpcServer` hosts any number of services, each described by a
Protocol class (see :mod:`telerpc.service`) and backed by an
implementation object, plus the ``KRPC`` meta-service.  It serves both
channels of a connection:

* the RPC channel answers ``Request`` messages one at a time, in order;
* the stream channel receives a ``StreamUpdate`` every tick that carries
  the streams whose encoded value changed.

Each connected client gets a session holding its remote objects, its
stream subscriptions and the push loop state.  All procedure executions
of one server are serialized, so implementations need no locking.
"""

from __future__ import annotations

import contextlib
import inspect
import itertools
import logging
import operator
import threading
import time
import traceback
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from telerpc.encoding import EncodingError, decode, encode
from telerpc.objects import RemoteObject
from telerpc.rpc._common import CallContext, RpcError, VersionError, _server_logger
from telerpc.rpc._transport import RpcTransport
from telerpc.rpc._types import (
    ConnectionStatus,
    ConnectionType,
    ProcedureCall,
    ProcedureResult,
    RemoteFault,
    Services,
    Status,
    StreamInfo,
    StreamResult,
)
from telerpc.rpc._wire import (
    read_connection_request,
    read_request,
    write_connection_response,
    write_error_response,
    write_response,
    write_stream_update,
)
from telerpc.service import ProcedureInfo, describe_service, procedures
from telerpc.services import krpc
from telerpc.utils import IPCError

__all__ = ["RpcServer", "ServerConfig"]

_DEFAULT_VERSION = "0.1.0"


@dataclass(frozen=True)
class ServerConfig:
    """Server settings.

    Attributes:
        tick_interval: Seconds between stream evaluations.
        version: Version string reported by ``KRPC.GetStatus``.

    """

    tick_interval: float = 0.01
    version: str = _DEFAULT_VERSION

    def __post_init__(self) -> None:
        """Validate the tick interval."""
        if self.tick_interval <= 0:
            raise ValueError(f"tick_interval must be positive, got {self.tick_interval}")


# ---------------------------------------------------------------------------
# Per-session state
# ---------------------------------------------------------------------------


class ObjectStore:
    """Server-side table of objects handed to one client.

    The same object always gets the same id.  Ids start at 1; ``0`` is
    reserved for ``None``.
    """

    __slots__ = ("_by_id", "_ids", "_lock", "_next_id")

    def __init__(self) -> None:
        """Initialize an empty store."""
        self._by_id: dict[int, object] = {}
        self._ids: dict[int, int] = {}
        self._next_id = itertools.count(1)
        self._lock = threading.Lock()

    def add(self, obj: object) -> int:
        """Return the id of *obj*, assigning one on first use."""
        with self._lock:
            object_id = self._ids.get(id(obj))
            if object_id is None:
                object_id = next(self._next_id)
                self._ids[id(obj)] = object_id
                self._by_id[object_id] = obj
            return object_id

    def get(self, object_id: int) -> object:
        """Return the object for *object_id*.

        Raises:
            ArgumentException: If no such object was handed out.

        """
        with self._lock:
            try:
                return self._by_id[object_id]
            except KeyError:
                raise krpc.ArgumentException(f"No object with id {object_id}") from None

    def bind_object(self, cls: type[RemoteObject], object_id: int) -> object:
        """Decode a remote-object argument to the stored object."""
        return self.get(object_id)

    def object_id_of(self, value: object) -> int:
        """Encode a remote-object result, registering it if needed."""
        if value is None:
            return 0
        return self.add(value)

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)


class _ServerStream:
    """One stream subscription of a session."""

    __slots__ = ("call", "evaluate", "id", "key", "last", "next_due", "rate", "started")

    def __init__(self, stream_id: int, call: ProcedureCall | None, evaluate: Callable[[], ProcedureResult]) -> None:
        self.id = stream_id
        self.call = call
        self.key = call.key if call is not None else None
        self.evaluate = evaluate
        self.started = False
        self.rate = 0.0
        self.next_due = 0.0
        self.last: tuple[bytes, RemoteFault | None] | None = None


class _Session:
    """State of one connected client."""

    __slots__ = (
        "address",
        "by_key",
        "identifier",
        "lock",
        "name",
        "objects",
        "rpc_transport",
        "stopped",
        "stream_transport",
        "streams",
    )

    def __init__(self, name: str, address: str, rpc_transport: RpcTransport) -> None:
        self.identifier = uuid.uuid4().bytes
        self.name = name
        self.address = address
        self.rpc_transport = rpc_transport
        self.stream_transport: RpcTransport | None = None
        self.objects = ObjectStore()
        self.streams: dict[int, _ServerStream] = {}
        self.by_key: dict[bytes, int] = {}
        self.lock = threading.Lock()
        self.stopped = threading.Event()


def _interrupt(transport: RpcTransport | None) -> None:
    if transport is None:
        return
    for name in ("shutdown", "close_writer"):
        method = getattr(transport, name, None)
        if method is not None:
            method()
            return


def _at_eof(transport: RpcTransport) -> bool:
    """Block until data is available; ``True`` when the peer closed the channel."""
    peek = getattr(transport.reader, "peek", None)
    if peek is None:
        return False
    return not peek(1)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _ServiceEntry:
    name: str
    implementation: object
    procedures: Mapping[str, ProcedureInfo]
    ctx_methods: frozenset[str]
    exceptions: Mapping[type[BaseException], str]
    documentation: str = ""


def _validate_implementation(protocol: type, implementation: object, infos: Mapping[str, ProcedureInfo]) -> None:
    """Check that *implementation* has every procedure of *protocol*.

    Raises:
        TypeError: Listing every missing or incompatible method.

    """
    errors: list[str] = []
    for name, info in infos.items():
        method = getattr(implementation, name, None)
        if method is None or not callable(method):
            errors.append(f"missing method {name}()")
            continue
        params = inspect.signature(method).parameters
        errors.extend(f"'{name}()' missing parameter '{p}'" for p in info.param_types if p not in params)
    if errors:
        detail = "\n".join(f"  - {e}" for e in errors)
        raise TypeError(f"{type(implementation).__name__} does not implement {protocol.__name__}:\n{detail}")


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------


class _Expression:
    """Server-side expression node."""

    __slots__ = ()

    def evaluate(self, server: RpcServer, session: _Session) -> Any:
        raise NotImplementedError


class _Constant(_Expression):
    __slots__ = ("value",)

    def __init__(self, value: Any) -> None:
        self.value = value

    def evaluate(self, server: RpcServer, session: _Session) -> Any:
        return self.value


class _CallExpression(_Expression):
    __slots__ = ("call",)

    def __init__(self, call: ProcedureCall) -> None:
        self.call = call

    def evaluate(self, server: RpcServer, session: _Session) -> Any:
        _, value = server._invoke(session, self.call)
        return value


class _Operator(_Expression):
    __slots__ = ("args", "op")

    def __init__(self, op: Callable[..., Any], *args: _Expression) -> None:
        self.op = op
        self.args = args

    def evaluate(self, server: RpcServer, session: _Session) -> Any:
        return self.op(*(arg.evaluate(server, session) for arg in self.args))


def _expression_arg(value: object) -> _Expression:
    if not isinstance(value, _Expression):
        raise krpc.ArgumentException(f"Object {value!r} is not an expression")
    return value


class _KRPCService:
    """Implementation of the KRPC meta-service."""

    def __init__(self, server: RpcServer) -> None:
        self._server = server

    def _session(self, ctx: CallContext) -> _Session:
        return self._server._session_for(ctx.client_id)

    def get_status(self, ctx: CallContext) -> Status:
        return self._server.status()

    def get_client_id(self, ctx: CallContext) -> bytes:
        return ctx.client_id

    def get_client_name(self, ctx: CallContext) -> str:
        return ctx.client_name

    def get_clients(self, ctx: CallContext) -> list[tuple[bytes, str, str]]:
        return [(s.identifier, s.name, s.address) for s in self._server.sessions()]

    def get_services(self) -> Services:
        return self._server.describe()

    def add_stream(self, call: ProcedureCall, start: bool, ctx: CallContext) -> StreamInfo:
        session = self._session(ctx)
        server = self._server
        info = server._lookup(call)[1]
        if not info.has_return:
            raise krpc.ArgumentException(f"{call.service}.{call.procedure} returns nothing and cannot be streamed")
        stream = server._add_stream(session, call, lambda: server._execute(session, call, logging.DEBUG), start)
        return StreamInfo(stream.id)

    def start_stream(self, id: int, ctx: CallContext) -> None:
        session = self._session(ctx)
        with session.lock:
            stream = self._stream(session, id)
            stream.started = True

    def set_stream_rate(self, id: int, rate: float, ctx: CallContext) -> None:
        if rate < 0:
            raise krpc.ArgumentOutOfRangeException(f"Stream rate must be >= 0, got {rate}")
        session = self._session(ctx)
        with session.lock:
            stream = self._stream(session, id)
            stream.rate = rate
            stream.next_due = 0.0

    def remove_stream(self, id: int, ctx: CallContext) -> None:
        session = self._session(ctx)
        with session.lock:
            stream = session.streams.pop(id, None)
            if stream is not None and stream.key is not None:
                session.by_key.pop(stream.key, None)
        if stream is not None:
            _server_logger.debug("Removed stream %d for %r", id, session.name)

    def add_event(self, expression: object, ctx: CallContext) -> StreamInfo:
        session = self._session(ctx)
        node = _expression_arg(expression)
        server = self._server

        def evaluate() -> ProcedureResult:
            return server._guarded(
                session,
                krpc.SERVICE_NAME,
                "AddEvent",
                lambda: encode(bool(node.evaluate(server, session)), bool),
                logging.DEBUG,
            )

        return StreamInfo(server._add_stream(session, None, evaluate, True).id)

    @staticmethod
    def _stream(session: _Session, stream_id: int) -> _ServerStream:
        try:
            return session.streams[stream_id]
        except KeyError:
            raise krpc.ArgumentException(f"No stream with id {stream_id}") from None

    # Expression builders

    def expression_constant_bool(self, value: bool) -> _Expression:
        return _Constant(value)

    def expression_constant_int(self, value: int) -> _Expression:
        return _Constant(value)

    def expression_constant_float(self, value: float) -> _Expression:
        return _Constant(value)

    def expression_constant_double(self, value: float) -> _Expression:
        return _Constant(value)

    def expression_constant_string(self, value: str) -> _Expression:
        return _Constant(value)

    def expression_call(self, call: ProcedureCall) -> _Expression:
        info = self._server._lookup(call)[1]
        if not info.has_return:
            raise krpc.ArgumentException(f"{call.service}.{call.procedure} returns nothing")
        return _CallExpression(call)

    def expression_equal(self, arg0: object, arg1: object) -> _Expression:
        return _Operator(operator.eq, _expression_arg(arg0), _expression_arg(arg1))

    def expression_not_equal(self, arg0: object, arg1: object) -> _Expression:
        return _Operator(operator.ne, _expression_arg(arg0), _expression_arg(arg1))

    def expression_greater_than(self, arg0: object, arg1: object) -> _Expression:
        return _Operator(operator.gt, _expression_arg(arg0), _expression_arg(arg1))

    def expression_greater_than_or_equal(self, arg0: object, arg1: object) -> _Expression:
        return _Operator(operator.ge, _expression_arg(arg0), _expression_arg(arg1))

    def expression_less_than(self, arg0: object, arg1: object) -> _Expression:
        return _Operator(operator.lt, _expression_arg(arg0), _expression_arg(arg1))

    def expression_less_than_or_equal(self, arg0: object, arg1: object) -> _Expression:
        return _Operator(operator.le, _expression_arg(arg0), _expression_arg(arg1))

    def expression_and(self, arg0: object, arg1: object) -> _Expression:
        return _Operator(lambda a, b: bool(a) and bool(b), _expression_arg(arg0), _expression_arg(arg1))

    def expression_or(self, arg0: object, arg1: object) -> _Expression:
        return _Operator(lambda a, b: bool(a) or bool(b), _expression_arg(arg0), _expression_arg(arg1))

    def expression_not(self, arg: object) -> _Expression:
        return _Operator(operator.not_, _expression_arg(arg))

    def expression_add(self, arg0: object, arg1: object) -> _Expression:
        return _Operator(operator.add, _expression_arg(arg0), _expression_arg(arg1))

    def expression_subtract(self, arg0: object, arg1: object) -> _Expression:
        return _Operator(operator.sub, _expression_arg(arg0), _expression_arg(arg1))

    def expression_multiply(self, arg0: object, arg1: object) -> _Expression:
        return _Operator(operator.mul, _expression_arg(arg0), _expression_arg(arg1))

    def expression_divide(self, arg0: object, arg1: object) -> _Expression:
        return _Operator(operator.truediv, _expression_arg(arg0), _expression_arg(arg1))


# ---------------------------------------------------------------------------
# RpcServer
# ---------------------------------------------------------------------------


class RpcServer:
    """Dispatches calls to service implementations and pushes stream updates.

    Usage::

        server = RpcServer()
        server.add_service(SensorService, Sensors())
        with serve_pipe(server, name="lander") as client:
            ...

    ``serve(transport)`` handles one channel of one client and returns when
    that channel closes; run it on a thread per channel.
    """

    __slots__ = (
        "_config",
        "_exec_lock",
        "_lock",
        "_rpcs_executed",
        "_server_id",
        "_services",
        "_sessions",
        "_stream_ids",
        "_stream_rpcs_executed",
        "_stream_updates_sent",
    )

    def __init__(self, *, config: ServerConfig | None = None, server_id: str | None = None) -> None:
        """Initialize with only the KRPC meta-service registered.

        Args:
            config: Server settings; defaults to ``ServerConfig()``.
            server_id: Optional server identifier; auto-generated if ``None``.

        """
        self._config = config if config is not None else ServerConfig()
        self._server_id = server_id if server_id is not None else uuid.uuid4().hex[:12]
        self._services: dict[str, _ServiceEntry] = {}
        self._sessions: dict[bytes, _Session] = {}
        self._lock = threading.Lock()
        self._exec_lock = threading.RLock()
        self._stream_ids = itertools.count(1)
        self._rpcs_executed = 0
        self._stream_rpcs_executed = 0
        self._stream_updates_sent = 0
        self.add_service(krpc.KRPC, _KRPCService(self), name=krpc.SERVICE_NAME, exceptions=krpc.EXCEPTIONS)

    @property
    def server_id(self) -> str:
        """Short random identifier for this server instance."""
        return self._server_id

    @property
    def config(self) -> ServerConfig:
        """Server settings."""
        return self._config

    @property
    def services(self) -> Mapping[str, Mapping[str, ProcedureInfo]]:
        """Procedures of every hosted service, keyed by service name then method name."""
        return {name: entry.procedures for name, entry in self._services.items()}

    def add_service(
        self,
        protocol: type,
        implementation: object,
        *,
        name: str | None = None,
        exceptions: Mapping[str, type[BaseException]] | None = None,
    ) -> None:
        """Host *implementation* as the service described by *protocol*.

        Args:
            protocol: Protocol class describing the service.
            implementation: Object implementing every Protocol method.  A
                method may declare an extra ``ctx`` parameter to receive a
                :class:`~telerpc.rpc.CallContext`.
            name: Service name; defaults to ``SERVICE_NAME`` then the class name.
            exceptions: Error name to exception class, used to name faults;
                defaults to the Protocol's ``EXCEPTIONS``.

        Raises:
            TypeError: If *implementation* does not implement *protocol*.
            ValueError: If a service with the same name is already hosted.

        """
        service = name or getattr(protocol, "SERVICE_NAME", None) or protocol.__name__
        if service in self._services:
            raise ValueError(f"Service {service!r} is already registered")
        infos = procedures(protocol)
        _validate_implementation(protocol, implementation, infos)
        if exceptions is None:
            exceptions = getattr(protocol, "EXCEPTIONS", None) or {}
        ctx_methods = frozenset(
            n for n in infos if "ctx" in inspect.signature(getattr(implementation, n)).parameters
        )
        self._services[service] = _ServiceEntry(
            name=service,
            implementation=implementation,
            procedures=MappingProxyType({info.procedure: info for info in infos.values()}),
            ctx_methods=ctx_methods,
            exceptions={cls: err for err, cls in exceptions.items()},
            documentation=inspect.cleandoc(protocol.__doc__) if protocol.__doc__ else "",
        )
        _server_logger.info(
            "Service %s registered (server_id=%s, procedures=%d)",
            service,
            self._server_id,
            len(infos),
            extra={"server_id": self._server_id, "service": service, "procedure_count": len(infos)},
        )

    # -- sessions -------------------------------------------------------------

    def sessions(self) -> list[_Session]:
        """Connected sessions, in connection order."""
        with self._lock:
            return list(self._sessions.values())

    def _session_for(self, identifier: bytes) -> _Session:
        with self._lock:
            return self._sessions[identifier]

    def status(self) -> Status:
        """Snapshot of the server counters."""
        with self._lock:
            sessions = list(self._sessions.values())
            return Status(
                version=self._config.version,
                rpcs_executed=self._rpcs_executed,
                stream_rpcs=sum(len(s.streams) for s in sessions),
                stream_rpcs_executed=self._stream_rpcs_executed,
                stream_updates_sent=self._stream_updates_sent,
                clients=len(sessions),
            )

    def describe(self) -> Services:
        """Description of every hosted service, in registration order."""
        return Services(
            tuple(
                describe_service(entry.name, entry.procedures, entry.documentation)
                for entry in list(self._services.values())
            )
        )

    def disconnect_all(self) -> None:
        """Drop every connected client's channels."""
        for session in self.sessions():
            _server_logger.info("Disconnecting %r", session.name)
            session.stopped.set()
            _interrupt(session.rpc_transport)
            _interrupt(session.stream_transport)

    # -- serving --------------------------------------------------------------

    def serve(self, transport: RpcTransport) -> None:
        """Serve one channel until it closes.

        Reads the connection request and then either answers calls (RPC
        channel) or pushes stream updates (stream channel).
        """
        try:
            connection_type, name, identifier = read_connection_request(transport.reader)
        except (IPCError, VersionError) as exc:
            _server_logger.warning("Rejecting connection: %s", exc, extra={"server_id": self._server_id})
            with contextlib.suppress(OSError, ValueError):
                write_connection_response(transport.writer, ConnectionStatus.MALFORMED_MESSAGE, str(exc))
            transport.close()
            return
        except (OSError, ValueError) as exc:
            _server_logger.debug("Connection dropped before handshake: %s", exc)
            transport.close()
            return
        if connection_type is ConnectionType.RPC:
            self._serve_rpc(transport, name)
        else:
            self._serve_stream(transport, identifier)

    def _serve_rpc(self, transport: RpcTransport, name: str) -> None:
        session = _Session(name, getattr(transport, "peer", ""), transport)
        with self._lock:
            self._sessions[session.identifier] = session
        try:
            write_connection_response(transport.writer, ConnectionStatus.OK, "", session.identifier)
            _server_logger.info(
                "Client %r connected (id=%s)",
                name,
                session.identifier.hex(),
                extra={"server_id": self._server_id, "client_id": session.identifier.hex()},
            )
            while not session.stopped.is_set() and not _at_eof(transport):
                try:
                    calls = read_request(transport.reader)
                except VersionError as exc:
                    write_error_response(transport.writer, RemoteFault(krpc.SERVICE_NAME, "VersionError", str(exc)))
                    continue
                except IPCError as exc:
                    _server_logger.warning("Malformed request from %r: %s", name, exc)
                    write_error_response(
                        transport.writer,
                        RemoteFault(krpc.SERVICE_NAME, "InvalidOperationException", f"Malformed request: {exc}"),
                    )
                    break
                results = [self._execute(session, call) for call in calls]
                with self._lock:
                    self._rpcs_executed += len(calls)
                write_response(transport.writer, results)
        except (OSError, ValueError) as exc:
            _server_logger.debug("RPC channel for %r closed: %s", name, exc)
        finally:
            self._end_session(session)

    def _serve_stream(self, transport: RpcTransport, identifier: bytes) -> None:
        with self._lock:
            session = self._sessions.get(identifier)
        if session is None or session.stream_transport is not None:
            _server_logger.warning("Stream connection with unknown client id %s", identifier.hex())
            with contextlib.suppress(OSError, ValueError):
                write_connection_response(
                    transport.writer, ConnectionStatus.MALFORMED_MESSAGE, "Unknown client identifier", identifier
                )
            transport.close()
            return
        session.stream_transport = transport
        try:
            write_connection_response(transport.writer, ConnectionStatus.OK, "", identifier)
            self._push_loop(session, transport)
        except (OSError, ValueError) as exc:
            _server_logger.debug("Stream channel for %r closed: %s", session.name, exc)
        finally:
            transport.close()

    def _end_session(self, session: _Session) -> None:
        session.stopped.set()
        with self._lock:
            self._sessions.pop(session.identifier, None)
        session.rpc_transport.close()
        _server_logger.info("Client %r disconnected", session.name, extra={"server_id": self._server_id})

    def _push_loop(self, session: _Session, transport: RpcTransport) -> None:
        tick = self._config.tick_interval
        while not session.stopped.wait(tick):
            updates = self._poll_streams(session, time.monotonic())
            if updates:
                write_stream_update(transport.writer, updates)
                with self._lock:
                    self._stream_updates_sent += len(updates)

    def _poll_streams(self, session: _Session, now: float) -> list[StreamResult]:
        """Evaluate due streams and return those whose value changed."""
        with session.lock:
            due = [s for s in session.streams.values() if s.started and now >= s.next_due]
        updates: list[StreamResult] = []
        for stream in due:
            result = stream.evaluate()
            with self._lock:
                self._stream_rpcs_executed += 1
            stream.next_due = now + (1.0 / stream.rate if stream.rate > 0 else 0.0)
            marker = (result.value, result.fault)
            with session.lock:
                if stream.id not in session.streams or marker == stream.last:
                    continue
                stream.last = marker
            updates.append(StreamResult(stream.id, result))
        return updates

    def _add_stream(
        self,
        session: _Session,
        call: ProcedureCall | None,
        evaluate: Callable[[], ProcedureResult],
        start: bool,
    ) -> _ServerStream:
        key = call.key if call is not None else None
        with session.lock:
            existing = session.by_key.get(key) if key is not None else None
            if existing is not None:
                stream = session.streams[existing]
            else:
                stream = _ServerStream(next(self._stream_ids), call, evaluate)
                session.streams[stream.id] = stream
                if key is not None:
                    session.by_key[key] = stream.id
            if start:
                stream.started = True
        _server_logger.debug("Stream %d for %r (started=%s)", stream.id, session.name, stream.started)
        return stream

    # -- dispatch -------------------------------------------------------------

    def _lookup(self, call: ProcedureCall) -> tuple[_ServiceEntry, ProcedureInfo]:
        entry = self._services.get(call.service)
        if entry is None:
            raise krpc.InvalidOperationException(f"Service {call.service} not found")
        info = entry.procedures.get(call.procedure)
        if info is None:
            raise krpc.InvalidOperationException(f"Procedure {call.service}.{call.procedure} not found")
        return entry, info

    def _invoke(self, session: _Session, call: ProcedureCall) -> tuple[ProcedureInfo, Any]:
        """Decode arguments, run the implementation and return its Python result."""
        entry, info = self._lookup(call)
        params = list(info.param_types.items())
        if len(call.arguments) > len(params):
            raise krpc.ArgumentException(
                f"{call.service}.{call.procedure} takes {len(params)} arguments, got {len(call.arguments)}"
            )
        kwargs: dict[str, Any] = {}
        for i, (pname, hint) in enumerate(params):
            if i < len(call.arguments):
                try:
                    kwargs[pname] = decode(call.arguments[i], hint, session.objects)
                except EncodingError as exc:
                    raise krpc.ArgumentException(
                        f"Invalid argument '{pname}' for {call.service}.{call.procedure}: {exc}"
                    ) from exc
            elif pname in info.param_defaults:
                kwargs[pname] = info.param_defaults[pname]
            else:
                raise krpc.ArgumentException(f"Missing argument '{pname}' for {call.service}.{call.procedure}")
        if info.name in entry.ctx_methods:
            kwargs["ctx"] = CallContext(self, session, call.service, call.procedure)
        with self._exec_lock:
            return info, getattr(entry.implementation, info.name)(**kwargs)

    def _execute(self, session: _Session, call: ProcedureCall, log_level: int = logging.ERROR) -> ProcedureResult:
        """Run *call* and encode its result or fault."""

        def run() -> bytes:
            info, value = self._invoke(session, call)
            if not info.has_return:
                return b""
            return encode(value, info.return_type, session.objects)

        return self._guarded(session, call.service, call.procedure, run, log_level)

    def _guarded(
        self,
        session: _Session,
        service: str,
        procedure: str,
        run: Callable[[], bytes],
        log_level: int = logging.ERROR,
    ) -> ProcedureResult:
        """Run *run*, turning any exception into a logged fault.

        Stream evaluations log at DEBUG since a failing stream fails on
        every tick.
        """
        try:
            return ProcedureResult(value=run())
        except Exception as exc:
            fault = self._fault_for(exc, service)
            _server_logger.log(
                log_level,
                "Error in %s.%s: %s",
                service,
                procedure,
                exc,
                exc_info=True,
                extra={
                    "server_id": self._server_id,
                    "procedure": procedure,
                    "error_type": fault.name,
                    "client_id": session.identifier.hex(),
                },
            )
            return ProcedureResult(fault=fault)

    def _fault_for(self, exc: Exception, service: str) -> RemoteFault:
        """Name a fault after the service that owns the exception type."""
        stack_trace = "".join(traceback.format_exception(exc))
        if isinstance(exc, RpcError) and exc.service:
            return RemoteFault(exc.service, exc.error_type, exc.error_message, stack_trace)
        owner = service
        name = type(exc).__name__
        for entry in (self._services.get(service), self._services[krpc.SERVICE_NAME]):
            if entry is not None and type(exc) in entry.exceptions:
                owner, name = entry.name, entry.exceptions[type(exc)]
                break
        description = exc.error_message if isinstance(exc, RpcError) else str(exc)
        return RemoteFault(owner, name, description, stack_trace)
