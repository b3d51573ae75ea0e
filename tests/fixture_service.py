"""Service description, implementation and helpers shared by the integration tests."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from telerpc import (
    ArrowSerializableDataclass,
    CallContext,
    Double,
    Int32,
    Int64,
    RemoteObject,
    RpcError,
)
from telerpc.services import krpc

# ---------------------------------------------------------------------------
# Service description shared by client and server
# ---------------------------------------------------------------------------


class Vessel(RemoteObject):
    """Handle for a server-side vessel."""

    __slots__ = ()


class Mode(Enum):
    """Integer-valued enum carried as int32."""

    IDLE = 0
    ACTIVE = 1
    DOCKED = 7


@dataclass(frozen=True)
class Reading(ArrowSerializableDataclass):
    """A structured result that travels as nested IPC bytes."""

    name: str
    value: float
    tags: list[str] = field(default_factory=list)


class FixtureError(RpcError):
    """Service-specific error type."""


class FixtureService(Protocol):
    """Procedures exercised by the integration tests."""

    SERVICE_NAME = "Fixture"
    EXCEPTIONS = {"FixtureError": FixtureError}

    def echo(self, value: str) -> str:
        """Return *value* unchanged."""
        ...

    def add(self, a: Int32, b: Int32) -> Int32: ...

    def scale(self, value: Double, factor: Double = 2.0) -> Double: ...

    def get_counter(self) -> Int64:
        """Current counter value."""
        ...

    def increment(self, amount: Int32 = 1) -> None: ...

    def fail(self, message: str) -> str: ...

    def bad_argument(self) -> None: ...

    def crash(self) -> None: ...

    def sleep(self, seconds: Double) -> None: ...

    def active_vessel(self) -> Vessel | None: ...

    def no_vessel(self) -> Vessel | None: ...

    def vessel_name(self, vessel: Vessel) -> str: ...

    def set_mode(self, mode: Mode) -> Mode: ...

    def sum_all(self, values: list[Int32]) -> Int64: ...

    def pair(self, name: str, count: Int32) -> tuple[str, Int32]: ...

    def lookup(self, table: dict[str, Int32], key: str) -> Int32 | None: ...

    def make_reading(self, name: str, value: Double) -> Reading: ...

    def whoami(self) -> str: ...

    def note(self, text: str) -> None: ...


# ---------------------------------------------------------------------------
# Server-side implementation
# ---------------------------------------------------------------------------


class _VesselState:
    def __init__(self, name: str) -> None:
        self.name = name


class FixtureServiceImpl:
    """Server-side implementation of :class:`FixtureService`."""

    def __init__(self) -> None:
        self.counter = 0
        self.mode = Mode.IDLE
        self.vessel = _VesselState("Probe")

    def echo(self, value: str) -> str:
        return value

    def add(self, a: int, b: int) -> int:
        return a + b

    def scale(self, value: float, factor: float = 2.0) -> float:
        return value * factor

    def get_counter(self) -> int:
        return self.counter

    def increment(self, amount: int = 1) -> None:
        self.counter += amount

    def fail(self, message: str) -> str:
        raise FixtureError(message)

    def bad_argument(self) -> None:
        raise krpc.ArgumentException("bad arg")

    def crash(self) -> None:
        raise RuntimeError("exploded")

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def active_vessel(self) -> _VesselState:
        return self.vessel

    def no_vessel(self) -> None:
        return None

    def vessel_name(self, vessel: _VesselState) -> str:
        return vessel.name

    def set_mode(self, mode: Mode) -> Mode:
        previous, self.mode = self.mode, mode
        return previous

    def sum_all(self, values: list[int]) -> int:
        return sum(values)

    def pair(self, name: str, count: int) -> tuple[str, int]:
        return name, count

    def lookup(self, table: dict[str, int], key: str) -> int | None:
        return table.get(key)

    def make_reading(self, name: str, value: float) -> Reading:
        return Reading(name=name, value=value, tags=["fixture"])

    def whoami(self, ctx: CallContext) -> str:
        return ctx.client_name

    def note(self, text: str, ctx: CallContext) -> None:
        ctx.logger.info(text)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll *predicate* until it holds or *timeout* expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def run_in_thread(target: Callable[[], object]) -> tuple[threading.Thread, list[BaseException]]:
    """Run *target* on a daemon thread and collect the exception it raises."""
    errors: list[BaseException] = []

    def runner() -> None:
        try:
            target()
        except BaseException as exc:
            errors.append(exc)

    thread = threading.Thread(target=runner, daemon=True)
    thread.start()
    return thread, errors
