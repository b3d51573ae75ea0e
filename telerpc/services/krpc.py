# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""The ``KRPC`` meta-service every server provides.

It reports server status and the hosted services, identifies the calling
client, manages stream subscriptions and builds server-side expressions
that back events::

    expr = Expression.greater_than(
        client,
        Expression.call(client, sensors.altitude_call()),
        Expression.constant_double(client, 1000.0),
    )
    with client.add_event(expr) as event:
        event.wait()
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from telerpc.encoding import Double, Float, Int32, UInt64
from telerpc.objects import RemoteObject
from telerpc.rpc._common import RpcError
from telerpc.rpc._types import ProcedureCall, Services, Status, StreamInfo
from telerpc.service import ServiceProxy, procedure

if TYPE_CHECKING:
    from telerpc.rpc._client import Client

__all__ = [
    "EXCEPTIONS",
    "KRPC",
    "SERVICE_NAME",
    "ArgumentException",
    "ArgumentNullException",
    "ArgumentOutOfRangeException",
    "Expression",
    "InvalidOperationException",
    "krpc_service",
]

SERVICE_NAME = "KRPC"


class ArgumentException(RpcError):
    """An argument does not meet the parameter requirements of the procedure."""


class ArgumentNullException(RpcError):
    """A null reference was passed to a procedure that does not accept it."""


class ArgumentOutOfRangeException(RpcError):
    """An argument is outside the allowable range of values."""


class InvalidOperationException(RpcError):
    """The call is invalid given the current state of the object."""


EXCEPTIONS: dict[str, type[RpcError]] = {
    "ArgumentException": ArgumentException,
    "ArgumentNullException": ArgumentNullException,
    "ArgumentOutOfRangeException": ArgumentOutOfRangeException,
    "InvalidOperationException": InvalidOperationException,
}


class Expression(RemoteObject):
    """A server-side expression, built with the classmethods below."""

    __slots__ = ()

    @classmethod
    def constant_bool(cls, client: Client, value: bool) -> Expression:
        """A constant boolean."""
        return _expr(client.krpc.expression_constant_bool(value))

    @classmethod
    def constant_int(cls, client: Client, value: int) -> Expression:
        """A constant 32-bit integer."""
        return _expr(client.krpc.expression_constant_int(value))

    @classmethod
    def constant_float(cls, client: Client, value: float) -> Expression:
        """A constant single precision float."""
        return _expr(client.krpc.expression_constant_float(value))

    @classmethod
    def constant_double(cls, client: Client, value: float) -> Expression:
        """A constant double precision float."""
        return _expr(client.krpc.expression_constant_double(value))

    @classmethod
    def constant_string(cls, client: Client, value: str) -> Expression:
        """A constant string."""
        return _expr(client.krpc.expression_constant_string(value))

    @classmethod
    def call(cls, client: Client, call: ProcedureCall) -> Expression:
        """The result of *call*, evaluated whenever the expression is."""
        return _expr(client.krpc.expression_call(call))

    @classmethod
    def equal(cls, client: Client, arg0: Expression, arg1: Expression) -> Expression:
        """``arg0 == arg1``."""
        return _expr(client.krpc.expression_equal(arg0, arg1))

    @classmethod
    def not_equal(cls, client: Client, arg0: Expression, arg1: Expression) -> Expression:
        """``arg0 != arg1``."""
        return _expr(client.krpc.expression_not_equal(arg0, arg1))

    @classmethod
    def greater_than(cls, client: Client, arg0: Expression, arg1: Expression) -> Expression:
        """``arg0 > arg1``."""
        return _expr(client.krpc.expression_greater_than(arg0, arg1))

    @classmethod
    def greater_than_or_equal(cls, client: Client, arg0: Expression, arg1: Expression) -> Expression:
        """``arg0 >= arg1``."""
        return _expr(client.krpc.expression_greater_than_or_equal(arg0, arg1))

    @classmethod
    def less_than(cls, client: Client, arg0: Expression, arg1: Expression) -> Expression:
        """``arg0 < arg1``."""
        return _expr(client.krpc.expression_less_than(arg0, arg1))

    @classmethod
    def less_than_or_equal(cls, client: Client, arg0: Expression, arg1: Expression) -> Expression:
        """``arg0 <= arg1``."""
        return _expr(client.krpc.expression_less_than_or_equal(arg0, arg1))

    @classmethod
    def and_(cls, client: Client, arg0: Expression, arg1: Expression) -> Expression:
        """Boolean and."""
        return _expr(client.krpc.expression_and(arg0, arg1))

    @classmethod
    def or_(cls, client: Client, arg0: Expression, arg1: Expression) -> Expression:
        """Boolean or."""
        return _expr(client.krpc.expression_or(arg0, arg1))

    @classmethod
    def not_(cls, client: Client, arg: Expression) -> Expression:
        """Boolean not."""
        return _expr(client.krpc.expression_not(arg))

    @classmethod
    def add(cls, client: Client, arg0: Expression, arg1: Expression) -> Expression:
        """Numerical addition."""
        return _expr(client.krpc.expression_add(arg0, arg1))

    @classmethod
    def subtract(cls, client: Client, arg0: Expression, arg1: Expression) -> Expression:
        """Numerical subtraction."""
        return _expr(client.krpc.expression_subtract(arg0, arg1))

    @classmethod
    def multiply(cls, client: Client, arg0: Expression, arg1: Expression) -> Expression:
        """Numerical multiplication."""
        return _expr(client.krpc.expression_multiply(arg0, arg1))

    @classmethod
    def divide(cls, client: Client, arg0: Expression, arg1: Expression) -> Expression:
        """Numerical division."""
        return _expr(client.krpc.expression_divide(arg0, arg1))


def _expr(value: object) -> Expression:
    if not isinstance(value, Expression):
        raise InvalidOperationException(f"Server returned no expression (got {value!r})")
    return value


class KRPC(Protocol):
    """Main service: server status, clients, streams and expressions."""

    SERVICE_NAME = SERVICE_NAME
    EXCEPTIONS = EXCEPTIONS

    def get_status(self) -> Status:
        """Information about the server, such as its version and counters."""
        ...

    def get_services(self) -> Services:
        """Every hosted service with its procedures, parameter types and return types."""
        ...

    @procedure("GetClientID")
    def get_client_id(self) -> bytes:
        """Identifier of the calling client."""
        ...

    def get_client_name(self) -> str:
        """Name of the calling client; empty if it sent none."""
        ...

    @procedure("get_Clients")
    def get_clients(self) -> list[tuple[bytes, str, str]]:
        """``(identifier, name, address)`` of every connected client."""
        ...

    def add_stream(self, call: ProcedureCall, start: bool = True) -> StreamInfo:
        """Register *call* as a stream and return its identifier."""
        ...

    def start_stream(self, id: UInt64) -> None:
        """Start a stream added with ``start=False``."""
        ...

    def set_stream_rate(self, id: UInt64, rate: Float) -> None:
        """Set the update rate of a stream in Hz; ``0`` means every tick."""
        ...

    def remove_stream(self, id: UInt64) -> None:
        """Remove a stream."""
        ...

    def add_event(self, expression: Expression) -> StreamInfo:
        """Register a boolean stream that evaluates *expression*."""
        ...

    @procedure("Expression_static_ConstantBool")
    def expression_constant_bool(self, value: bool) -> Expression: ...

    @procedure("Expression_static_ConstantInt")
    def expression_constant_int(self, value: Int32) -> Expression: ...

    @procedure("Expression_static_ConstantFloat")
    def expression_constant_float(self, value: Float) -> Expression: ...

    @procedure("Expression_static_ConstantDouble")
    def expression_constant_double(self, value: Double) -> Expression: ...

    @procedure("Expression_static_ConstantString")
    def expression_constant_string(self, value: str) -> Expression: ...

    @procedure("Expression_static_Call")
    def expression_call(self, call: ProcedureCall) -> Expression: ...

    @procedure("Expression_static_Equal")
    def expression_equal(self, arg0: Expression, arg1: Expression) -> Expression: ...

    @procedure("Expression_static_NotEqual")
    def expression_not_equal(self, arg0: Expression, arg1: Expression) -> Expression: ...

    @procedure("Expression_static_GreaterThan")
    def expression_greater_than(self, arg0: Expression, arg1: Expression) -> Expression: ...

    @procedure("Expression_static_GreaterThanOrEqual")
    def expression_greater_than_or_equal(self, arg0: Expression, arg1: Expression) -> Expression: ...

    @procedure("Expression_static_LessThan")
    def expression_less_than(self, arg0: Expression, arg1: Expression) -> Expression: ...

    @procedure("Expression_static_LessThanOrEqual")
    def expression_less_than_or_equal(self, arg0: Expression, arg1: Expression) -> Expression: ...

    @procedure("Expression_static_And")
    def expression_and(self, arg0: Expression, arg1: Expression) -> Expression: ...

    @procedure("Expression_static_Or")
    def expression_or(self, arg0: Expression, arg1: Expression) -> Expression: ...

    @procedure("Expression_static_Not")
    def expression_not(self, arg: Expression) -> Expression: ...

    @procedure("Expression_static_Add")
    def expression_add(self, arg0: Expression, arg1: Expression) -> Expression: ...

    @procedure("Expression_static_Subtract")
    def expression_subtract(self, arg0: Expression, arg1: Expression) -> Expression: ...

    @procedure("Expression_static_Multiply")
    def expression_multiply(self, arg0: Expression, arg1: Expression) -> Expression: ...

    @procedure("Expression_static_Divide")
    def expression_divide(self, arg0: Expression, arg1: Expression) -> Expression: ...


def krpc_service(client: Client) -> ServiceProxy:
    """Return a proxy for the KRPC service on *client*."""
    return ServiceProxy(client, KRPC, service=SERVICE_NAME, exceptions=EXCEPTIONS)
