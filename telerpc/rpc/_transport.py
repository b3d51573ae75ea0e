"""Byte channels a connection runs over.

A transport is one ordered, reliable byte channel in both directions.  A
connection uses two: one for request/response calls and one for stream
updates pushed by the server.  Anything with ``reader``, ``writer`` and
``close()`` will do; pipes and sockets are provided.
"""

from __future__ import annotations

import contextlib
import io
import logging
import os
import selectors
import socket
import time
from io import IOBase
from typing import Any, Protocol, runtime_checkable

from telerpc.rpc._debug import wire_transport_logger

_PIPE_CHUNK = 65536


@runtime_checkable
class RpcTransport(Protocol):
    """One bidirectional channel as a pair of binary file objects.

    Transports may additionally offer ``settimeout(seconds | None)`` (used
    for per-call timeouts) and ``shutdown()`` (unblocks a reader in another
    thread); both are looked up by name.
    """

    @property
    def reader(self) -> IOBase:
        """Incoming bytes."""
        ...

    @property
    def writer(self) -> IOBase:
        """Outgoing bytes."""
        ...

    def close(self) -> None:
        """Release the channel; a reader blocked on it sees EOF or an error."""
        ...


# ---------------------------------------------------------------------------
# Pipes
# ---------------------------------------------------------------------------


class _PipeReader(io.RawIOBase):
    """Read end of an OS pipe with a read timeout and a cross-thread wakeup.

    Waits on a selector holding the pipe and a private wakeup pipe, so
    :meth:`settimeout` bounds each read and :meth:`shutdown` releases a
    reader blocked in another thread.  After shutdown every read reports
    end of stream.
    """

    def __init__(self, file: IOBase) -> None:
        super().__init__()
        self._file = file
        self._fd = file.fileno()
        self._wake_r, self._wake_w = os.pipe()
        self._selector = selectors.DefaultSelector()
        self._selector.register(self._fd, selectors.EVENT_READ)
        self._selector.register(self._wake_r, selectors.EVENT_READ)
        self._timeout: float | None = None
        self._shut = False
        self._buffer = b""
        self._position = 0

    def readable(self) -> bool:
        return True

    def fileno(self) -> int:
        return self._fd

    def tell(self) -> int:
        return self._position

    def settimeout(self, timeout: float | None) -> None:
        """Bound each subsequent read to *timeout* seconds (``None`` blocks)."""
        self._timeout = timeout

    def shutdown(self) -> None:
        """Wake any blocked reader; later reads return end of stream."""
        if self._shut:
            return
        self._shut = True
        with contextlib.suppress(OSError):
            os.write(self._wake_w, b"\0")

    def _fill(self, limit: int, deadline: float | None) -> bool:
        """Append up to *limit* bytes to the buffer; ``False`` at end of stream."""
        while not self._shut:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            events = self._selector.select(remaining)
            if self._shut:
                break
            if any(key.fd == self._fd for key, _ in events):
                chunk = os.read(self._fd, limit)
                self._buffer += chunk
                return bool(chunk)
            if not events and deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError(f"No data on pipe within {self._timeout}s")
        return False

    def _deadline(self) -> float | None:
        return None if self._timeout is None else time.monotonic() + self._timeout

    def peek(self, size: int = 1) -> bytes:
        """Block until data is buffered and return it unconsumed; ``b""`` at end of stream."""
        if not self._buffer:
            self._fill(max(size, _PIPE_CHUNK), self._deadline())
        return self._buffer

    def read(self, size: int | None = -1) -> bytes:
        """Read *size* bytes, fewer only at end of stream; ``-1`` reads to the end."""
        deadline = self._deadline()
        if size is None or size < 0:
            while self._fill(_PIPE_CHUNK, deadline):
                pass
            size = len(self._buffer)
        while len(self._buffer) < size and self._fill(size - len(self._buffer), deadline):
            pass
        data, self._buffer = self._buffer[:size], self._buffer[size:]
        self._position += len(data)
        return data

    def readinto(self, buffer: Any) -> int:
        data = self.read(len(buffer))
        memoryview(buffer).cast("B")[: len(data)] = data
        return len(data)

    def close(self) -> None:
        if self.closed:
            return
        self.shutdown()
        self._selector.close()
        for fd in (self._wake_r, self._wake_w):
            with contextlib.suppress(OSError):
                os.close(fd)
        with contextlib.suppress(OSError, ValueError):
            self._file.close()
        super().close()


def _wrap_reader(reader: IOBase) -> IOBase:
    if isinstance(reader, _PipeReader):
        return reader
    try:
        reader.fileno()
    except (OSError, ValueError, io.UnsupportedOperation):
        return reader
    return _PipeReader(reader)


class PipeTransport:
    """A channel made of two already-open file objects, typically OS pipe ends.

    A reader backed by a file descriptor gets read timeouts
    (:meth:`settimeout`) and can be woken from another thread
    (:meth:`shutdown`).  Hand the reader over before anything reads from it.
    """

    __slots__ = ("_reader", "_writer")

    def __init__(self, reader: IOBase, writer: IOBase) -> None:
        """Take ownership of *reader* and *writer*."""
        self._reader = _wrap_reader(reader)
        self._writer = writer

    @property
    def reader(self) -> IOBase:
        """Incoming bytes."""
        return self._reader

    @property
    def writer(self) -> IOBase:
        """Outgoing bytes (unbuffered)."""
        return self._writer

    def settimeout(self, timeout: float | None) -> None:
        """Set the timeout applied to subsequent reads; ignored for readers without a descriptor."""
        settimeout = getattr(self._reader, "settimeout", None)
        if settimeout is not None:
            settimeout(timeout)

    def close_writer(self) -> None:
        """Close the write side only, signalling EOF to the peer."""
        with contextlib.suppress(OSError, ValueError):
            self._writer.close()

    def shutdown(self) -> None:
        """Signal EOF to the peer and wake a reader blocked in another thread."""
        self.close_writer()
        shutdown = getattr(self._reader, "shutdown", None)
        if shutdown is not None:
            shutdown()

    def close(self) -> None:
        """Close the write side, then the read side."""
        self.close_writer()
        with contextlib.suppress(OSError, ValueError):
            self._reader.close()


def _pipe() -> tuple[IOBase, IOBase, tuple[int, int]]:
    read_fd, write_fd = os.pipe()
    return os.fdopen(read_fd, "rb", buffering=0), os.fdopen(write_fd, "wb", buffering=0), (read_fd, write_fd)


def make_pipe_pair() -> tuple[PipeTransport, PipeTransport]:
    """Two transports wired back to back over a pair of OS pipes.

    Returns:
        ``(client_side, server_side)``: bytes written to one arrive on the other.

    """
    upstream_reader, upstream_writer, upstream_fds = _pipe()
    downstream_reader, downstream_writer, downstream_fds = _pipe()
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug("Pipe pair opened: upstream=%s, downstream=%s", upstream_fds, downstream_fds)
    return PipeTransport(downstream_reader, upstream_writer), PipeTransport(upstream_reader, downstream_writer)


# ---------------------------------------------------------------------------
# SocketTransport
# ---------------------------------------------------------------------------


class SocketTransport:
    """Transport over a connected stream socket (TCP or Unix).

    The reader is buffered so ``read(n)`` returns exactly *n* bytes, as
    Arrow IPC expects; writes are flushed by the wire layer after every
    message.
    """

    __slots__ = ("_closed", "_reader", "_sock", "_writer")

    def __init__(self, sock: socket.socket) -> None:
        """Wrap *sock*; the transport owns it from now on."""
        self._sock = sock
        self._reader: IOBase = sock.makefile("rb")
        self._writer: IOBase = sock.makefile("wb")
        self._closed = False

    @property
    def reader(self) -> IOBase:
        """Readable binary stream."""
        return self._reader

    @property
    def writer(self) -> IOBase:
        """Writable binary stream."""
        return self._writer

    @property
    def peer(self) -> str:
        """Printable remote address (empty when unavailable)."""
        try:
            name = self._sock.getpeername()
        except OSError:
            return ""
        if isinstance(name, tuple):
            return f"{name[0]}:{name[1]}"
        return str(name)

    def settimeout(self, timeout: float | None) -> None:
        """Set the timeout applied to subsequent reads and writes."""
        self._sock.settimeout(timeout)

    def shutdown(self) -> None:
        """Shut the socket down in both directions, waking any blocked reader."""
        with contextlib.suppress(OSError):
            self._sock.shutdown(socket.SHUT_RDWR)

    def close(self) -> None:
        """Shut down and close the socket and its file wrappers."""
        if self._closed:
            return
        self._closed = True
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("SocketTransport closing: peer=%s", self.peer)
        self.shutdown()
        with contextlib.suppress(OSError, ValueError):
            self._writer.close()
        with contextlib.suppress(OSError, ValueError):
            self._reader.close()
        self._sock.close()


def make_socket_pair() -> tuple[SocketTransport, SocketTransport]:
    """Create connected client/server transports using ``socket.socketpair()``.

    Returns (client_transport, server_transport).
    """
    client_sock, server_sock = socket.socketpair()
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug(
            "make_socket_pair: client_fd=%d, server_fd=%d",
            client_sock.fileno(),
            server_sock.fileno(),
        )
    return SocketTransport(client_sock), SocketTransport(server_sock)


def open_tcp(address: str, port: int, timeout: float | None = None) -> SocketTransport:
    """Connect to *address*:*port* over TCP.

    Args:
        address: Host name or IP address.
        port: TCP port.
        timeout: Connect timeout in seconds; ``None`` blocks indefinitely.

    Raises:
        OSError: If the connection cannot be established.

    """
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug("open_tcp: %s:%d (timeout=%s)", address, port, timeout)
    sock = socket.create_connection((address, port), timeout=timeout)
    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    return SocketTransport(sock)
