# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Client-side stream subscriptions.

The server evaluates registered procedure calls repeatedly and pushes the
results over the connection's stream channel.  A background receiver
thread reads those updates and stores the latest value of every
subscription; :class:`Stream` handles read that cache without blocking
and can wait for the next update.

Concurrency model
-----------------
All subscription state is guarded by one ``threading.Condition`` per
connection.  The receiver thread is the only writer of cached values: it
decodes each update outside the lock, stores it under the lock, bumps the
subscription's version counter and notifies every waiter.  Readers never
observe a partially written value, and a single reader never sees values
go backwards.  Callbacks run on the receiver thread after the lock is
released; a failing callback is logged and does not stop delivery.

Sharing
-------
Streams created from byte-identical calls on one connection share one
server subscription.  Each :class:`Stream` handle holds one reference;
only the removal of the last handle sends ``RemoveStream``.  Rate and
started state belong to the shared subscription.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from collections.abc import Callable, Iterator
from types import TracebackType
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from telerpc.encoding import EncodingError, decode
from telerpc.rpc._common import (
    ConnectionClosedError,
    StreamDisconnectedError,
    StreamRemovedError,
    StreamTimeoutError,
    VersionError,
    _stream_logger,
)
from telerpc.rpc._types import ProcedureCall, RemoteFault, StreamResult
from telerpc.rpc._wire import read_stream_update
from telerpc.utils import IPCError

if TYPE_CHECKING:
    from telerpc.rpc._client import Client
    from telerpc.rpc._transport import RpcTransport

__all__ = ["Event", "Stream", "StreamManager"]

StreamCallback = Callable[[Any], object]


class _Subscription:
    """Shared client-side state of one server stream."""

    __slots__ = (
        "call_key",
        "error",
        "handles",
        "id",
        "rate",
        "removed",
        "return_type",
        "started",
        "updated",
        "value",
        "version",
    )

    def __init__(self, stream_id: int, call_key: bytes | None, return_type: Any, started: bool) -> None:
        self.id = stream_id
        self.call_key = call_key
        self.return_type = return_type
        self.started = started
        self.rate = 0.0
        self.value: Any = None
        self.error: RemoteFault | None = None
        self.updated = False
        self.version = 0
        self.handles: list[Stream[Any]] = []
        self.removed = False


class StreamManager:
    """Owns every stream subscription of one connection."""

    __slots__ = (
        "_by_call",
        "_by_id",
        "_client",
        "_closed",
        "_condition",
        "_in_flight",
        "_pending",
        "_receiver",
        "_registration",
    )

    def __init__(self, client: Client) -> None:
        """Initialize for *client*; call :meth:`start_receiver` once the stream channel is up."""
        self._client = client
        self._condition = threading.Condition(threading.Lock())
        self._registration = threading.Lock()
        self._by_id: dict[int, _Subscription] = {}
        self._by_call: dict[bytes, _Subscription] = {}
        self._pending: dict[int, StreamResult] = {}
        self._in_flight = 0
        self._closed: BaseException | None = None
        self._receiver: threading.Thread | None = None

    @property
    def condition(self) -> threading.Condition:
        """The condition notified on every update."""
        return self._condition

    @property
    def closed(self) -> bool:
        """Whether the connection's stream state has been shut down."""
        return self._closed is not None

    def __len__(self) -> int:
        with self._condition:
            return len(self._by_id)

    # -- receiver -------------------------------------------------------------

    def start_receiver(self, transport: RpcTransport) -> None:
        """Start the background thread that reads updates from *transport*."""
        thread = threading.Thread(
            target=self._receive_loop,
            args=(transport,),
            name="telerpc-stream-receiver",
            daemon=True,
        )
        self._receiver = thread
        thread.start()

    def join_receiver(self, timeout: float | None = None) -> bool:
        """Wait for the receiver thread to exit; return whether it did."""
        thread = self._receiver
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _receive_loop(self, transport: RpcTransport) -> None:
        reason: BaseException = StreamDisconnectedError("Stream channel closed")
        try:
            while True:
                for update in read_stream_update(transport.reader):
                    self.apply(update)
        except (IPCError, VersionError, OSError, ValueError) as exc:
            if self._closed is None:
                _stream_logger.info("Stream channel closed: %s", exc)
            reason = StreamDisconnectedError(f"Stream channel closed: {exc}")
        finally:
            self.close(reason)
            self._client._connection_lost(ConnectionClosedError(str(reason)))
            with contextlib.suppress(OSError, ValueError):
                transport.close()
            _stream_logger.debug("Stream receiver exited")

    def _decode(self, sub: _Subscription, update: StreamResult) -> tuple[bool, Any]:
        """Decode an update for *sub*; ``(False, None)`` when it must be skipped."""
        if update.result.fault is not None:
            return True, None
        try:
            return True, decode(update.result.value, sub.return_type, self._client)
        except EncodingError as exc:
            _stream_logger.warning("Dropping malformed update for stream %d: %s", update.id, exc)
            return False, None

    def _store(self, sub: _Subscription, update: StreamResult, value: Any) -> list[StreamCallback]:
        """Store a decoded update (lock held) and return the callbacks to run."""
        sub.value = value
        sub.error = update.result.fault
        sub.updated = True
        sub.version += 1
        self._condition.notify_all()
        if sub.error is not None:
            return []
        return [cb for handle in sub.handles for cb in handle._callbacks]

    def apply(self, update: StreamResult) -> None:
        """Apply one pushed update.

        While a registration is in flight, updates for unknown ids are held
        (latest only) until it completes; otherwise they belong to removed
        streams and are dropped.
        """
        with self._condition:
            sub = self._by_id.get(update.id)
            if sub is None:
                if self._in_flight:
                    self._pending[update.id] = update
                else:
                    _stream_logger.debug("Dropping update for unregistered stream %d", update.id)
                return
        ok, value = self._decode(sub, update)
        if not ok:
            return
        with self._condition:
            if sub.removed:
                return
            callbacks = self._store(sub, update, value)
        for callback in callbacks:
            try:
                callback(value)
            except Exception:
                _stream_logger.exception("Callback %r for stream %d failed", callback, update.id)

    # -- registration ---------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed is not None:
            raise StreamDisconnectedError(f"Connection is closed: {self._closed}")

    @contextlib.contextmanager
    def registering(self) -> Iterator[None]:
        """Hold updates for unknown ids while a server registration is in flight.

        Wrap the call that creates the server stream together with the
        :meth:`attach` that registers it.  Held updates left over when the
        last registration finishes are discarded.
        """
        with self._condition:
            self._in_flight += 1
        try:
            yield
        finally:
            with self._condition:
                self._in_flight -= 1
                if not self._in_flight:
                    self._pending.clear()

    def _register(self, stream_id: int, call_key: bytes | None, return_type: Any, started: bool) -> _Subscription:
        """Find or create the subscription for *stream_id* (lock held)."""
        sub = self._by_id.get(stream_id)
        if sub is None:
            sub = _Subscription(stream_id, call_key, return_type, started)
            self._by_id[stream_id] = sub
            if call_key is not None:
                self._by_call[call_key] = sub
            pending = self._pending.pop(stream_id, None)
            if pending is not None:
                ok, value = self._decode(sub, pending)
                if ok:
                    self._store(sub, pending, value)
            _stream_logger.debug("Registered stream %d (started=%s)", stream_id, started)
        return sub

    def _new_handle(self, sub: _Subscription) -> Stream[Any]:
        handle: Stream[Any] = Stream(self, sub)
        sub.handles.append(handle)
        return handle

    def add(
        self,
        call: ProcedureCall,
        return_type: Any,
        *,
        start: bool = True,
        rate: float | None = None,
        wait: bool = True,
    ) -> Stream[Any]:
        """Create a stream handle for *call*, sharing an existing subscription when possible."""
        key = call.key
        with self._registration:
            with self._condition:
                self._check_open()
                sub = self._by_call.get(key)
            if sub is None:
                with self.registering():
                    info = self._client.krpc.add_stream(call, start)
                    with self._condition:
                        self._check_open()
                        sub = self._register(info.id, key, return_type, start)
            else:
                _stream_logger.debug("Sharing stream %d for %r (%d handles)", sub.id, call, len(sub.handles) + 1)
            with self._condition:
                handle = self._new_handle(sub)
                needs_start = start and not sub.started
        if needs_start:
            handle.start(wait=False)
        if rate is not None:
            handle.set_rate(rate)
        if start and wait:
            self._wait_first(handle, None)
        return handle

    def attach(self, stream_id: int, return_type: Any, *, started: bool = False) -> Stream[Any]:
        """Create a handle for a stream the server already registered (e.g. an event)."""
        with self._registration, self._condition:
            self._check_open()
            return self._new_handle(self._register(stream_id, None, return_type, started))

    # -- handle operations ----------------------------------------------------

    def _check(self, handle: Stream[Any]) -> _Subscription:
        """Return the handle's subscription (lock held) or raise if it is unusable."""
        if handle._removed:
            raise StreamRemovedError(f"Stream {handle._sub.id} has been removed")
        if self._closed is not None:
            raise StreamDisconnectedError(f"Stream {handle._sub.id} is disconnected: {self._closed}")
        return handle._sub

    def _current(self, sub: _Subscription) -> Any:
        if sub.error is not None:
            raise self._client.exceptions.build_fault(sub.error)
        return sub.value

    def get(self, handle: Stream[Any]) -> Any:
        """Latest cached value; never blocks."""
        with self._condition:
            return self._current(self._check(handle))

    def start(self, handle: Stream[Any], *, wait: bool = True, timeout: float | None = None) -> None:
        """Start the subscription if needed, optionally waiting for its first value."""
        with self._condition:
            sub = self._check(handle)
            needs_start = not sub.started
        if needs_start:
            self._client.krpc.start_stream(sub.id)
            with self._condition:
                sub.started = True
            _stream_logger.debug("Started stream %d", sub.id)
        if wait:
            self._wait_first(handle, timeout)

    def _wait_first(self, handle: Stream[Any], timeout: float | None) -> None:
        if timeout is None:
            timeout = self._client.config.first_update_timeout
        with self._condition:
            sub = self._check(handle)
            arrived = self._condition.wait_for(
                lambda: sub.updated or handle._removed or self._closed is not None,
                timeout,
            )
            self._check(handle)
        if not arrived:
            _stream_logger.warning("No value for stream %d within %ss", sub.id, timeout)

    def set_rate(self, handle: Stream[Any], rate: float) -> None:
        """Set the shared update rate in Hz (``0`` = every server tick)."""
        if rate < 0:
            raise ValueError(f"Stream rate must be >= 0, got {rate}")
        with self._condition:
            sub = self._check(handle)
        self._client.krpc.set_stream_rate(sub.id, float(rate))
        with self._condition:
            sub.rate = float(rate)

    def wait(self, handle: Stream[Any], timeout: float | None = None) -> Any:
        """Block until the next update of the handle's subscription and return its value."""
        with self._condition:
            sub = self._check(handle)
            seen = sub.version
            if not self._condition.wait_for(
                lambda: sub.version != seen or handle._removed or self._closed is not None,
                timeout,
            ):
                raise StreamTimeoutError(f"No update for stream {sub.id} within {timeout}s")
            return self._current(self._check(handle))

    def wait_for(self, handle: Stream[Any], predicate: Callable[[Any], object], timeout: float | None = None) -> Any:
        """Block until the cached value satisfies *predicate* and return it."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while True:
                sub = self._check(handle)
                if sub.updated and predicate(self._current(sub)):
                    return sub.value
                seen = sub.version
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise StreamTimeoutError(f"Condition on stream {sub.id} not met within {timeout}s")
                self._condition.wait_for(
                    lambda: sub.version != seen or handle._removed or self._closed is not None,
                    remaining,
                )

    def remove(self, handle: Stream[Any]) -> None:
        """Drop *handle*; the last handle of a subscription removes it on the server."""
        with self._registration:
            with self._condition:
                sub = self._check(handle)
                handle._removed = True
                sub.handles.remove(handle)
                last = not sub.handles
                if last:
                    sub.removed = True
                    self._by_id.pop(sub.id, None)
                    if sub.call_key is not None and self._by_call.get(sub.call_key) is sub:
                        del self._by_call[sub.call_key]
                    self._pending.pop(sub.id, None)
                self._condition.notify_all()
            if last:
                _stream_logger.debug("Removing stream %d", sub.id)
                self._client.krpc.remove_stream(sub.id)

    def close(self, reason: BaseException) -> None:
        """Mark every subscription disconnected and release all waiters."""
        with self._condition:
            if self._closed is not None:
                return
            self._closed = reason
            count = len(self._by_id)
            self._condition.notify_all()
        if _stream_logger.isEnabledFor(logging.DEBUG):
            _stream_logger.debug("Stream manager closed (%d subscriptions): %s", count, reason)


T = TypeVar("T")


class Stream(Generic[T]):
    """Client handle to a value the server pushes as it changes.

    Reading never blocks: :meth:`get` (or calling the handle) returns the
    latest cached value, or ``None`` before the first update arrives.  A
    server error for the latest evaluation is raised as its typed
    exception.  Use :meth:`wait` to block for the next update.

    After :meth:`remove`, every operation raises
    :class:`~telerpc.rpc.StreamRemovedError`; after the connection is lost
    they raise :class:`~telerpc.rpc.StreamDisconnectedError`.
    """

    __slots__ = ("__weakref__", "_callbacks", "_manager", "_removed", "_sub")

    def __init__(self, manager: StreamManager, sub: _Subscription) -> None:
        """Create a handle; use :meth:`telerpc.rpc.Client.add_stream` instead."""
        self._manager = manager
        self._sub = sub
        self._removed = False
        self._callbacks: list[StreamCallback] = []

    @property
    def id(self) -> int:
        """Server-assigned stream id."""
        return self._sub.id

    @property
    def return_type(self) -> Any:
        """Type annotation used to decode updates."""
        return self._sub.return_type

    @property
    def started(self) -> bool:
        """Whether the server is producing updates."""
        return self._sub.started

    @property
    def removed(self) -> bool:
        """Whether :meth:`remove` was called on this handle."""
        return self._removed

    @property
    def condition(self) -> threading.Condition:
        """Condition notified whenever any stream of the connection updates."""
        return self._manager.condition

    @property
    def rate(self) -> float:
        """Update rate in Hz; ``0`` means every server tick."""
        return self._sub.rate

    @rate.setter
    def rate(self, value: float) -> None:
        self.set_rate(value)

    def get(self) -> T | None:
        """Return the latest value without blocking."""
        value: T | None = self._manager.get(self)
        return value

    __call__ = get

    def start(self, wait: bool = True, timeout: float | None = None) -> None:
        """Ask the server to start producing updates.

        Args:
            wait: Block until the first value arrives (bounded by *timeout*,
                default ``ClientConfig.first_update_timeout``).
            timeout: Upper bound in seconds for the wait.

        """
        self._manager.start(self, wait=wait, timeout=timeout)

    def set_rate(self, rate: float) -> None:
        """Limit updates to *rate* per second (``0`` for every change)."""
        self._manager.set_rate(self, rate)

    def wait(self, timeout: float | None = None) -> T | None:
        """Block until the next update and return the new value.

        Raises:
            StreamTimeoutError: If no update arrives within *timeout* seconds.

        """
        value: T | None = self._manager.wait(self, timeout)
        return value

    def wait_for(self, predicate: Callable[[T], object], timeout: float | None = None) -> T:
        """Block until the latest value satisfies *predicate* and return it."""
        value: T = self._manager.wait_for(self, predicate, timeout)
        return value

    def add_callback(self, callback: Callable[[T], object]) -> None:
        """Call *callback* with every new value, on the receiver thread."""
        with self._manager.condition:
            self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[T], object]) -> None:
        """Stop calling *callback*.

        Raises:
            ValueError: If *callback* was not added.

        """
        with self._manager.condition:
            self._callbacks.remove(callback)

    def remove(self) -> None:
        """Release this handle; the last handle removes the server subscription."""
        self._manager.remove(self)

    def __enter__(self) -> Stream[T]:
        """Enter context manager."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Remove the handle unless it is already unusable."""
        if not self._removed and not self._manager.closed:
            self.remove()

    def __repr__(self) -> str:
        state = "removed" if self._removed else ("started" if self._sub.started else "stopped")
        return f"<Stream #{self._sub.id} {state}>"


class Event:
    """A server-side condition exposed as a boolean stream.

    :meth:`wait` is level-triggered: it returns as soon as the latest value
    is ``True``, immediately if it already is.
    """

    __slots__ = ("_stream",)

    def __init__(self, stream: Stream[bool]) -> None:
        """Wrap a boolean *stream*."""
        self._stream = stream

    @property
    def stream(self) -> Stream[bool]:
        """The underlying boolean stream."""
        return self._stream

    @property
    def condition(self) -> threading.Condition:
        """Condition notified whenever any stream of the connection updates."""
        return self._stream.condition

    def is_set(self) -> bool:
        """Whether the latest value is ``True``."""
        return bool(self._stream.get())

    def wait(self, timeout: float | None = None) -> None:
        """Block until the event's value is ``True``.

        Raises:
            StreamTimeoutError: If it does not become true within *timeout* seconds.

        """
        self._stream.wait_for(bool, timeout)

    def add_callback(self, callback: Callable[[bool], object]) -> None:
        """Call *callback* with every new value."""
        self._stream.add_callback(callback)

    def remove(self) -> None:
        """Remove the underlying stream."""
        self._stream.remove()

    def __enter__(self) -> Event:
        """Enter context manager."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Remove the underlying stream."""
        self._stream.__exit__(exc_type, exc_val, exc_tb)

    def __repr__(self) -> str:
        return f"<Event stream=#{self._stream.id}>"
