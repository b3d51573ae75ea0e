"""Mapping from server-reported error names to local exception types."""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from typing import NoReturn

from telerpc.rpc._common import RpcError
from telerpc.rpc._types import RemoteFault

ExceptionFactory = Callable[[str], BaseException]
"""Builds a local exception from the server's message."""


class ExceptionRegistry:
    """Per-connection table of ``(service, error name) -> factory``.

    Service proxies register their exception types when they are created;
    faults with no registered factory become a plain :class:`RpcError`
    carrying the raw message, service and name.
    """

    __slots__ = ("_factories", "_lock")

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._factories: dict[tuple[str, str], ExceptionFactory] = {}
        self._lock = threading.Lock()

    def register(self, service: str, name: str, factory: ExceptionFactory) -> None:
        """Map *service*.*name* to *factory*, replacing any earlier mapping."""
        with self._lock:
            self._factories[(service, name)] = factory

    def register_all(self, service: str, exceptions: Mapping[str, ExceptionFactory]) -> None:
        """Register every ``name -> factory`` entry of *exceptions* under *service*."""
        with self._lock:
            for name, factory in exceptions.items():
                self._factories[(service, name)] = factory

    def lookup(self, service: str, name: str) -> ExceptionFactory | None:
        """Return the factory for *service*.*name*, or ``None``."""
        with self._lock:
            return self._factories.get((service, name))

    def build(self, service: str, name: str, message: str, stack_trace: str = "") -> BaseException:
        """Build the exception for a server fault.

        ``str()`` of the result is *message* unchanged.  Factories that
        produce :class:`RpcError` subclasses get ``service``,
        ``error_type`` and ``remote_traceback`` filled in.
        """
        factory = self.lookup(service, name)
        if factory is None:
            return RpcError(message, error_type=name or "RpcError", service=service, remote_traceback=stack_trace)
        exc = factory(message)
        if isinstance(exc, RpcError):
            exc.service = service
            exc.error_type = name
            exc.remote_traceback = stack_trace
        return exc

    def build_fault(self, fault: RemoteFault) -> BaseException:
        """Build the exception for a decoded :class:`RemoteFault`."""
        return self.build(fault.service, fault.name, fault.description, fault.stack_trace)

    def raise_for(self, service: str, name: str, message: str, stack_trace: str = "") -> NoReturn:
        """Raise the exception for a server fault."""
        raise self.build(service, name, message, stack_trace)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._factories

    def __len__(self) -> int:
        with self._lock:
            return len(self._factories)
