"""Loggers, errors and call context for the RPC framework."""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from telerpc.rpc._server import RpcServer, _Session

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_logger = logging.getLogger("telerpc.rpc")
_stream_logger = logging.getLogger("telerpc.stream")
_server_logger = logging.getLogger("telerpc.server")


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------


class RpcError(Exception):
    """Base class for every error reported by a connection.

    Server faults arrive as ``RpcError`` (or a registered subclass) carrying
    the service and error name reported by the server; ``str(exc)`` is the
    server's message unchanged.

    Attributes:
        error_message: The message text.
        error_type: Error name (defaults to the class name).
        service: Service that reported the error, empty for local errors.
        remote_traceback: Server-side stack trace, if one was sent.

    """

    def __init__(
        self,
        error_message: str = "",
        *,
        error_type: str | None = None,
        service: str = "",
        remote_traceback: str = "",
    ) -> None:
        """Initialize with the message and optional remote details."""
        self.error_message = error_message
        self.error_type = error_type if error_type is not None else type(self).__name__
        self.service = service
        self.remote_traceback = remote_traceback
        super().__init__(error_message)


class TransportError(RpcError):
    """The byte channel failed (peer gone, truncated or corrupt framing)."""


class ConnectionClosedError(TransportError):
    """The connection is closed; no further calls can be made on it."""


class ConnectionFailedError(TransportError):
    """The server rejected the connection handshake, or it could not complete."""


class CallTimeoutError(TransportError, TimeoutError):
    """A call did not receive its response in time; the connection is closed."""


class StreamError(RpcError):
    """Base class for errors raised by stream handles."""


class StreamRemovedError(StreamError):
    """The stream handle was removed and can no longer be used."""


class StreamDisconnectedError(StreamError, ConnectionClosedError):
    """The connection behind the stream is gone."""


class StreamTimeoutError(StreamError, TimeoutError):
    """No update arrived within the requested timeout."""


class VersionError(Exception):
    """Raised when a message has a missing or incompatible protocol version."""


# ---------------------------------------------------------------------------
# Call Context
# ---------------------------------------------------------------------------


class _ContextLoggerAdapter(logging.LoggerAdapter[logging.Logger]):
    """LoggerAdapter that preserves framework-bound extra fields.

    User-supplied ``extra`` in individual log calls is merged, but
    framework fields take precedence on key conflicts.
    """

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        """Merge user extra with framework extra, framework wins on conflict."""
        user_extra = kwargs.get("extra", {})
        kwargs["extra"] = {**user_extra, **(self.extra or {})}
        return msg, kwargs


class CallContext:
    """Per-call context injected into server methods that declare a ``ctx`` parameter.

    The parameter does not appear in the service Protocol; the server
    passes it when the implementation's signature asks for it.
    """

    __slots__ = ("_logger", "_procedure", "_server", "_service", "_session")

    def __init__(self, server: RpcServer, session: _Session, service: str, procedure: str) -> None:
        """Initialize for one call of *service*.*procedure* on *session*."""
        self._server = server
        self._session = session
        self._service = service
        self._procedure = procedure
        self._logger: _ContextLoggerAdapter | None = None

    @property
    def client_id(self) -> bytes:
        """16-byte identifier of the calling client."""
        return self._session.identifier

    @property
    def client_name(self) -> str:
        """Name the client sent in its handshake."""
        return self._session.name

    @property
    def server_id(self) -> str:
        """Identifier of the server handling the call."""
        return self._server.server_id

    @property
    def logger(self) -> logging.LoggerAdapter[logging.Logger]:
        """Server-side logger named ``telerpc.service.<Service>`` with call fields bound."""
        if self._logger is None:
            base = logging.getLogger(f"telerpc.service.{self._service}")
            extra: dict[str, object] = {
                "server_id": self._server.server_id,
                "procedure": self._procedure,
                "client_id": self._session.identifier.hex(),
            }
            if self._session.name:
                extra["client_name"] = self._session.name
            self._logger = _ContextLoggerAdapter(base, extra)
        return self._logger
