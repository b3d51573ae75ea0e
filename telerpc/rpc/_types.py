# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Procedure-call descriptors, results and wire message schemas."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any

import pyarrow as pa

from telerpc.encoding import ArrowSerializableDataclass, ArrowType, UInt32, UInt64

__all__ = [
    "CONNECTION_REQUEST_SCHEMA",
    "CONNECTION_RESPONSE_SCHEMA",
    "REQUEST_SCHEMA",
    "RESPONSE_SCHEMA",
    "STREAM_UPDATE_SCHEMA",
    "ConnectionStatus",
    "ConnectionType",
    "ProcedureCall",
    "ProcedureDescription",
    "ProcedureResult",
    "RemoteFault",
    "Response",
    "ServiceDescription",
    "Services",
    "Status",
    "StreamInfo",
    "StreamResult",
]

CLIENT_IDENTIFIER_LENGTH = 16


# ---------------------------------------------------------------------------
# Procedure calls
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProcedureCall(ArrowSerializableDataclass):
    """One remote procedure invocation, fully encoded.

    Built by :meth:`telerpc.rpc.Client.build_call` (no I/O).  Immutable and
    hashable; two calls with the same service, procedure and argument bytes
    are equal and share the same :attr:`key`.

    Attributes:
        service: Remote service name.
        procedure: Remote procedure name.
        arguments: Encoded argument values in declared parameter order.

    """

    service: str
    procedure: str
    arguments: tuple[bytes, ...] = ()

    def __post_init__(self) -> None:
        """Normalise *arguments* to a tuple and check every entry is bytes."""
        arguments = tuple(self.arguments)
        for i, arg in enumerate(arguments):
            if not isinstance(arg, bytes):
                raise TypeError(
                    f"{self.service}.{self.procedure} argument {i} must be encoded bytes, got {type(arg).__name__}"
                )
        object.__setattr__(self, "arguments", arguments)

    @property
    def key(self) -> bytes:
        """Canonical byte encoding, identical for identical calls."""
        return self.serialize_to_bytes()

    def __repr__(self) -> str:
        return f"ProcedureCall({self.service}.{self.procedure}, {len(self.arguments)} args)"


@dataclass(frozen=True)
class RemoteFault:
    """An error reported by the server for one call or one stream evaluation."""

    service: str
    name: str
    description: str
    stack_trace: str = ""


@dataclass(frozen=True)
class ProcedureResult:
    """Outcome of one call: encoded value bytes or a fault."""

    value: bytes = b""
    fault: RemoteFault | None = None


@dataclass(frozen=True)
class StreamResult:
    """Outcome of one stream evaluation pushed to the client."""

    id: int
    result: ProcedureResult


@dataclass(frozen=True)
class Response:
    """A decoded response message.

    ``fault`` is set for request-level failures, in which case ``results``
    is empty.
    """

    results: tuple[ProcedureResult, ...] = ()
    fault: RemoteFault | None = None


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------


class ConnectionType(Enum):
    """Which channel a connection request opens."""

    RPC = "RPC"
    STREAM = "STREAM"


class ConnectionStatus(Enum):
    """Outcome of a connection handshake."""

    OK = "OK"
    MALFORMED_MESSAGE = "MALFORMED_MESSAGE"
    TIMEOUT = "TIMEOUT"
    WRONG_TYPE = "WRONG_TYPE"


# ---------------------------------------------------------------------------
# Wire schemas
# ---------------------------------------------------------------------------

CONNECTION_REQUEST_SCHEMA = pa.schema(
    [
        pa.field("type", pa.string(), nullable=False),
        pa.field("client_name", pa.string(), nullable=False),
        pa.field("client_identifier", pa.binary(), nullable=False),
    ]
)

CONNECTION_RESPONSE_SCHEMA = pa.schema(
    [
        pa.field("status", pa.string(), nullable=False),
        pa.field("message", pa.string(), nullable=False),
        pa.field("client_identifier", pa.binary(), nullable=False),
    ]
)

REQUEST_SCHEMA = pa.schema(
    [
        pa.field("service", pa.string(), nullable=False),
        pa.field("procedure", pa.string(), nullable=False),
        pa.field("arguments", pa.list_(pa.binary()), nullable=False),
    ]
)

_RESULT_FIELDS = [
    pa.field("value", pa.binary()),
    pa.field("error_service", pa.string()),
    pa.field("error_name", pa.string()),
    pa.field("error_description", pa.string()),
    pa.field("error_stack_trace", pa.string()),
]

RESPONSE_SCHEMA = pa.schema(_RESULT_FIELDS)

STREAM_UPDATE_SCHEMA = pa.schema([pa.field("id", pa.uint64(), nullable=False), *_RESULT_FIELDS])


# ---------------------------------------------------------------------------
# Meta-service messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StreamInfo(ArrowSerializableDataclass):
    """Identifies a server-side stream subscription."""

    id: UInt64


@dataclass(frozen=True)
class Status(ArrowSerializableDataclass):
    """Server status snapshot returned by ``KRPC.GetStatus``."""

    version: str
    rpcs_executed: UInt64 = 0
    stream_rpcs: UInt32 = 0
    stream_rpcs_executed: UInt64 = 0
    stream_updates_sent: UInt64 = 0
    clients: UInt32 = 0


def _read_schema(data: bytes) -> pa.Schema:
    return pa.ipc.read_schema(pa.py_buffer(data))


def _field_hint(arrow_field: pa.Field) -> Any:
    hint = Annotated[object, ArrowType(arrow_field.type)]
    return hint | None if arrow_field.nullable else hint


@dataclass(frozen=True)
class ProcedureDescription(ArrowSerializableDataclass):
    """One procedure of a hosted service, as reported by ``KRPC.GetServices``.

    Parameter and result types travel as serialized Arrow schemas: one
    field per parameter in call order, and a single ``value`` field for
    the result (no fields when the procedure returns nothing).

    Attributes:
        name: Remote procedure name.
        parameters: Parameter names in call order.
        param_types: Readable parameter type names, parallel to ``parameters``.
        params_schema_ipc: Serialized schema of the parameters.
        has_return: ``False`` for procedures that return nothing.
        return_type: Readable return type name; empty without a return value.
        result_schema_ipc: Serialized schema of the result.
        param_defaults: Encoded default value of each optional parameter.
        documentation: The procedure's docstring.

    """

    name: str
    parameters: tuple[str, ...]
    param_types: tuple[str, ...]
    params_schema_ipc: bytes
    has_return: bool
    return_type: str
    result_schema_ipc: bytes
    param_defaults: dict[str, bytes] = field(default_factory=dict)
    documentation: str = ""

    @property
    def params_schema(self) -> pa.Schema:
        """Arrow schema of the parameters."""
        return _read_schema(self.params_schema_ipc)

    @property
    def result_schema(self) -> pa.Schema:
        """Arrow schema of the result."""
        return _read_schema(self.result_schema_ipc)

    @property
    def param_hints(self) -> list[Any]:
        """Encoding hints for the parameters, usable with ``encode``."""
        return [_field_hint(f) for f in self.params_schema]

    @property
    def return_hint(self) -> Any:
        """Decoding hint for the result; ``None`` without a return value."""
        schema = self.result_schema
        return _field_hint(schema.field(0)) if self.has_return else None


@dataclass(frozen=True)
class ServiceDescription(ArrowSerializableDataclass):
    """A hosted service and its procedures."""

    name: str
    procedures: tuple[ProcedureDescription, ...] = ()
    documentation: str = ""

    def procedure(self, name: str) -> ProcedureDescription:
        """Description of the procedure named *name*.

        Raises:
            KeyError: If the service has no such procedure.

        """
        for description in self.procedures:
            if description.name == name:
                return description
        raise KeyError(f"{self.name} has no procedure {name!r}")


@dataclass(frozen=True)
class Services(ArrowSerializableDataclass):
    """Every service a server hosts, returned by ``KRPC.GetServices``."""

    services: tuple[ServiceDescription, ...] = ()

    def service(self, name: str) -> ServiceDescription:
        """Description of the service named *name*.

        Raises:
            KeyError: If the server hosts no such service.

        """
        for description in self.services:
            if description.name == name:
                return description
        raise KeyError(f"No service {name!r}")
