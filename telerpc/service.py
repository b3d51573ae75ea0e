# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Typed service proxies generated from Protocol classes.

A remote service is described once, as a ``typing.Protocol`` whose methods
carry type annotations::

    class SpaceCenter(Protocol):
        SERVICE_NAME = "SpaceCenter"

        def get_ut(self) -> Double: ...

        @procedure("Vessel_get_Name")
        def vessel_name(self, vessel: Vessel) -> str: ...

:func:`procedures` turns the Protocol into :class:`ProcedureInfo` records
and :class:`ServiceProxy` exposes, for every method ``m``:

* ``m(...)`` invokes the procedure and decodes the result,
* ``m_call(...)`` returns the encoded :class:`ProcedureCall` (no I/O),
* ``m_stream(...)`` registers the call as a :class:`Stream`.

Remote procedure names default to the PascalCase form of the method name
(``get_ut`` -> ``GetUt``); use :func:`procedure` when the server name does
not follow that rule.
"""

from __future__ import annotations

import functools
import inspect
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, TypeVar, get_type_hints

import pyarrow as pa

from telerpc.encoding import VALUE_FIELD, EncodingError, _is_optional_type, arrow_type_for, decode, encode, type_name
from telerpc.rpc._registry import ExceptionFactory
from telerpc.rpc._types import ProcedureCall, ProcedureDescription, ServiceDescription

if TYPE_CHECKING:
    from telerpc.rpc._client import Client
    from telerpc.rpc._stream import Stream

__all__ = [
    "ProcedureInfo",
    "ServiceProxy",
    "describe_procedure",
    "describe_service",
    "procedure",
    "procedures",
]

_PROCEDURE_ATTR = "__telerpc_procedure__"
_CALL_SUFFIX = "_call"
_STREAM_SUFFIX = "_stream"


F = TypeVar("F", bound=Callable[..., Any])


def procedure(name: str) -> Callable[[F], F]:
    """Set the remote procedure name of a Protocol method explicitly."""

    def decorator(func: F) -> F:
        setattr(func, _PROCEDURE_ATTR, name)
        return func

    return decorator


def _pascal_case(name: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in name.split("_"))


@dataclass(frozen=True)
class ProcedureInfo:
    """Metadata for a single remote procedure, derived from Protocol type hints.

    Attributes:
        name: Method name as it appears on the Protocol.
        procedure: Procedure name sent to the server.
        signature: Method signature without ``self``.
        return_type: The raw return annotation.
        has_return: ``False`` for ``-> None``.
        doc: The method's docstring, if any.
        param_types: Parameter name to annotation, in declared order.
        param_defaults: Parameter name to default value.

    """

    name: str
    procedure: str
    signature: inspect.Signature
    return_type: Any
    has_return: bool
    doc: str | None
    param_types: dict[str, Any] = field(default_factory=dict)
    param_defaults: dict[str, Any] = field(default_factory=dict)


_UNSUPPORTED_PARAM_KINDS: dict[int, str] = {
    inspect.Parameter.VAR_POSITIONAL: "*args",
    inspect.Parameter.VAR_KEYWORD: "**kwargs",
}


@functools.lru_cache(maxsize=64)
def procedures(protocol: type) -> Mapping[str, ProcedureInfo]:
    """Introspect a Protocol class and return ProcedureInfo for each method.

    Skips underscore-prefixed names and non-callable attributes.

    Raises:
        TypeError: If a method's hints cannot be resolved or it declares
            ``*args``/``**kwargs`` (arguments travel positionally).

    """
    result: dict[str, ProcedureInfo] = {}
    for name in dir(protocol):
        if name.startswith("_"):
            continue
        attr = getattr(protocol, name, None)
        if attr is None or not callable(attr) or isinstance(attr, type):
            continue

        try:
            hints = get_type_hints(attr, include_extras=True)
        except (NameError, AttributeError) as exc:
            raise TypeError(f"Failed to resolve type hints for {protocol.__name__}.{name}(): {exc}") from exc

        sig = inspect.signature(attr)
        params = [p for p in sig.parameters.values() if p.name != "self"]
        errors = [
            f"  - '{p.name}' is {_UNSUPPORTED_PARAM_KINDS[p.kind]}" for p in params if p.kind in _UNSUPPORTED_PARAM_KINDS
        ]
        missing = [p.name for p in params if p.name not in hints]
        errors.extend(f"  - '{n}' has no type annotation" for n in missing)
        if errors:
            detail = "\n".join(errors)
            raise TypeError(f"{protocol.__name__}.{name}() cannot be called remotely:\n{detail}")

        return_type = hints.get("return", type(None))
        result[name] = ProcedureInfo(
            name=name,
            procedure=getattr(attr, _PROCEDURE_ATTR, None) or _pascal_case(name),
            signature=sig.replace(parameters=params),
            return_type=return_type,
            has_return=return_type is not type(None) and return_type is not None,
            doc=getattr(attr, "__doc__", None),
            param_types={p.name: hints[p.name] for p in params},
            param_defaults={p.name: p.default for p in params if p.default is not inspect.Parameter.empty},
        )
    return MappingProxyType(result)


# ---------------------------------------------------------------------------
# Service descriptions
# ---------------------------------------------------------------------------


def _schema_bytes(fields: list[pa.Field]) -> bytes:
    return pa.schema(fields).serialize().to_pybytes()


def _value_field(name: str, hint: Any) -> pa.Field:
    return pa.field(name, arrow_type_for(hint), nullable=_is_optional_type(hint)[1])


def describe_procedure(info: ProcedureInfo) -> ProcedureDescription:
    """Build the wire description of one procedure."""
    defaults: dict[str, bytes] = {}
    for name, value in info.param_defaults.items():
        try:
            defaults[name] = encode(value, info.param_types[name])
        except (EncodingError, TypeError):
            # Left out; callers must pass the argument.
            continue
    return ProcedureDescription(
        name=info.procedure,
        parameters=tuple(info.param_types),
        param_types=tuple(type_name(hint) for hint in info.param_types.values()),
        params_schema_ipc=_schema_bytes([_value_field(n, h) for n, h in info.param_types.items()]),
        has_return=info.has_return,
        return_type=type_name(info.return_type) if info.has_return else "",
        result_schema_ipc=_schema_bytes([_value_field(VALUE_FIELD, info.return_type)] if info.has_return else []),
        param_defaults=defaults,
        documentation=inspect.cleandoc(info.doc) if info.doc else "",
    )


def describe_service(name: str, infos: Mapping[str, ProcedureInfo], documentation: str = "") -> ServiceDescription:
    """Build the ``KRPC.GetServices`` entry for a service, procedures sorted by name."""
    ordered = sorted(infos.values(), key=lambda info: info.procedure)
    return ServiceDescription(
        name=name,
        procedures=tuple(describe_procedure(info) for info in ordered),
        documentation=documentation,
    )


class ServiceProxy:
    """Dynamic proxy that calls the procedures of one remote service.

    Thread-safe to the extent the underlying :class:`~telerpc.rpc.Client`
    is: calls from several threads are serialized on the connection.
    """

    def __init__(
        self,
        client: Client,
        protocol: type,
        *,
        service: str | None = None,
        exceptions: Mapping[str, ExceptionFactory] | None = None,
    ) -> None:
        """Bind *protocol* to *client*.

        Args:
            client: The connection to call through.
            protocol: Protocol class describing the service.
            service: Remote service name; defaults to the Protocol's
                ``SERVICE_NAME`` attribute, then its class name.
            exceptions: Error name to exception factory, registered with
                the client; defaults to the Protocol's ``EXCEPTIONS``.

        """
        self._client = client
        self._protocol = protocol
        self._service: str = service or getattr(protocol, "SERVICE_NAME", None) or protocol.__name__
        self._procedures = procedures(protocol)
        if exceptions is None:
            exceptions = getattr(protocol, "EXCEPTIONS", None) or {}
        if exceptions:
            client.exceptions.register_all(self._service, exceptions)

    @property
    def service_name(self) -> str:
        """Remote service name."""
        return self._service

    @property
    def client(self) -> Client:
        """The connection this proxy calls through."""
        return self._client

    @property
    def procedures(self) -> Mapping[str, ProcedureInfo]:
        """Procedures exposed by the proxy, keyed by method name."""
        return self._procedures

    def __getattr__(self, name: str) -> Any:
        info = self._procedures.get(name)
        if info is not None:
            caller = self._make_invoker(info)
        elif name.endswith(_CALL_SUFFIX) and name[: -len(_CALL_SUFFIX)] in self._procedures:
            caller = self._make_call_builder(self._procedures[name[: -len(_CALL_SUFFIX)]])
        elif name.endswith(_STREAM_SUFFIX) and name[: -len(_STREAM_SUFFIX)] in self._procedures:
            caller = self._make_streamer(self._procedures[name[: -len(_STREAM_SUFFIX)]])
        else:
            raise AttributeError(f"{self._protocol.__name__} has no procedure '{name}'")

        self.__dict__[name] = caller
        return caller

    def __dir__(self) -> list[str]:
        names = set(super().__dir__())
        for name in self._procedures:
            names.update((name, name + _CALL_SUFFIX, name + _STREAM_SUFFIX))
        return sorted(names)

    def __repr__(self) -> str:
        return f"<ServiceProxy {self._service} ({len(self._procedures)} procedures)>"

    def build_call(self, info: ProcedureInfo, args: tuple[Any, ...], kwargs: dict[str, Any]) -> ProcedureCall:
        """Bind and encode arguments for *info* into a :class:`ProcedureCall`.

        Raises:
            TypeError: If the arguments do not match the signature, or
                ``None`` is passed for a non-optional parameter.
            EncodingError: If a value does not fit its declared type.

        """
        bound = info.signature.bind(*args, **kwargs)
        bound.apply_defaults()
        encoded: list[bytes] = []
        for pname, value in bound.arguments.items():
            hint = info.param_types[pname]
            if value is None and not _is_optional_type(hint)[1]:
                raise TypeError(f"{self._service}.{info.procedure}() argument '{pname}' must not be None")
            encoded.append(encode(value, hint, self._client))
        return self._client.build_call(self._service, info.procedure, encoded)

    def _make_invoker(self, info: ProcedureInfo) -> Callable[..., object]:
        client = self._client

        def invoker(*args: Any, **kwargs: Any) -> object:
            data = client.invoke_call(self.build_call(info, args, kwargs))
            if not info.has_return:
                return None
            return decode(data, info.return_type, client)

        invoker.__name__ = info.name
        invoker.__doc__ = info.doc
        return invoker

    def _make_call_builder(self, info: ProcedureInfo) -> Callable[..., ProcedureCall]:
        def call_builder(*args: Any, **kwargs: Any) -> ProcedureCall:
            return self.build_call(info, args, kwargs)

        call_builder.__name__ = info.name + _CALL_SUFFIX
        return call_builder

    def _make_streamer(self, info: ProcedureInfo) -> Callable[..., Stream[Any]]:
        if not info.has_return:
            raise AttributeError(f"{self._service}.{info.procedure}() returns nothing and cannot be streamed")
        client = self._client

        def streamer(*args: Any, **kwargs: Any) -> Stream[Any]:
            return client.add_stream(self.build_call(info, args, kwargs), info.return_type)

        streamer.__name__ = info.name + _STREAM_SUFFIX
        return streamer
