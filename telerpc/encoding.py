# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Typed value encoding for procedure arguments, results and stream updates.

Every value that crosses the wire is written as a complete Arrow IPC stream
holding one row and one column named ``value``.  The Arrow type of that
column is derived from the Python type annotation of the parameter or
return value:

==========================================  ================================
Annotation                                  Arrow type
==========================================  ================================
``bool``                                    ``bool``
``Int32`` / ``Int64`` (``int``)             ``int32`` / ``int64``
``UInt32`` / ``UInt64``                     ``uint32`` / ``uint64``
``Float`` / ``Double`` (``float``)          ``float`` / ``double``
``str`` / ``bytes``                         ``string`` / ``binary``
``Enum`` with integer values                ``int32``
``tuple[A, B]``                             ``struct<f0: A, f1: B>``
``tuple[T, ...]`` / ``list[T]``             ``list<T>``
``set[T]`` / ``frozenset[T]``               ``list<T>`` (sorted)
``dict[K, V]``                              ``map<K, V>`` (sorted by key)
``RemoteObject`` subclass                   ``uint64`` object id, ``0`` = None
``ArrowSerializableDataclass`` subclass     ``binary`` (its own IPC stream)
``X | None``                                nullable ``X``
``Annotated[T, ArrowType(t)]``              ``t``
==========================================  ================================

Encoding is deterministic: sets are written in sorted order and dict
entries in sorted key order, falling back to ``repr`` order for elements
that are not mutually orderable.  Identical values therefore produce
identical bytes, which the stream layer relies on to share subscriptions.

Decoding validates the stream (end-of-stream marker, exactly one batch,
exactly one row, the expected Arrow type) and raises :class:`EncodingError`
naming the expected type when anything is off.
"""

from __future__ import annotations

import functools
from dataclasses import MISSING, dataclass
from dataclasses import fields as dataclass_fields
from enum import Enum
from types import UnionType
from typing import Annotated, Any, ClassVar, Protocol, Self, Union, get_args, get_origin, get_type_hints

import pyarrow as pa

from telerpc.objects import RemoteObject
from telerpc.utils import IPCError, deserialize_record_batch, serialize_record_batch_bytes

__all__ = [
    "ArrowSerializableDataclass",
    "ArrowType",
    "Double",
    "EncodingError",
    "Float",
    "Int32",
    "Int64",
    "ObjectBinder",
    "UInt32",
    "UInt64",
    "arrow_type_for",
    "decode",
    "encode",
    "from_wire",
    "to_wire",
    "type_name",
]

VALUE_FIELD = "value"


class EncodingError(ValueError):
    """Raised when a value cannot be encoded as, or decoded to, its declared type.

    Attributes:
        expected_type: The type annotation the value was checked against.

    """

    def __init__(self, message: str, expected_type: Any = None) -> None:
        """Initialize with a message and the annotation that failed."""
        super().__init__(message)
        self.expected_type = expected_type


@dataclass(frozen=True)
class ArrowType:
    """Annotation marker to specify an explicit Arrow type.

    Use with Annotated to override the default inferred Arrow type::

        Speed = Annotated[float, ArrowType(pa.float32())]

    """

    arrow_type: pa.DataType


Int32 = Annotated[int, ArrowType(pa.int32())]
Int64 = int
UInt32 = Annotated[int, ArrowType(pa.uint32())]
UInt64 = Annotated[int, ArrowType(pa.uint64())]
Float = Annotated[float, ArrowType(pa.float32())]
Double = float

_ALIAS_NAMES: dict[pa.DataType, str] = {
    pa.int32(): "Int32",
    pa.uint32(): "UInt32",
    pa.uint64(): "UInt64",
    pa.float32(): "Float",
}


class ObjectBinder(Protocol):
    """Maps remote-object ids to handles and back (implemented by connections)."""

    def bind_object(self, cls: type[RemoteObject], object_id: int) -> object:
        """Return the object for a non-zero *object_id*."""
        ...

    def object_id_of(self, value: object) -> int:
        """Return the id to send for *value*."""
        ...


# ---------------------------------------------------------------------------
# Annotation helpers
# ---------------------------------------------------------------------------


def _is_optional_type(python_type: Any) -> tuple[Any, bool]:
    """Check if a type is Optional (X | None) and extract the inner type.

    Returns:
        Tuple of (inner_type, is_nullable). If nullable, inner_type is the
        non-None type. If not nullable, inner_type is the original type.

    """
    origin = get_origin(python_type)
    args = get_args(python_type)

    # Handle X | None (UnionType) or Optional[X] (Union[X, None])
    if origin is UnionType or origin is Union:
        non_none_types = [t for t in args if t is not type(None)]
        if len(non_none_types) == 1 and len(args) == 2:
            return non_none_types[0], True

    return python_type, False


def _base_type(hint: Any) -> Any:
    """Strip Optional, Annotated and NewType wrappers."""
    hint, _ = _is_optional_type(hint)
    while True:
        if get_origin(hint) is Annotated:
            hint = get_args(hint)[0]
        elif hasattr(hint, "__supertype__"):
            hint = hint.__supertype__
        else:
            return hint


def _is_message_type(tp: Any) -> bool:
    """Whether *tp* serializes itself to IPC bytes (ArrowSerializableDataclass and look-alikes)."""
    return isinstance(tp, type) and hasattr(tp, "ARROW_SCHEMA") and hasattr(tp, "deserialize_from_bytes")


def _is_remote_object_type(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, RemoteObject)


def type_name(hint: Any) -> str:
    """Readable name of a type annotation for error messages."""
    inner, nullable = _is_optional_type(hint)
    if nullable:
        return f"{type_name(inner)} | None"
    if get_origin(hint) is Annotated:
        for arg in get_args(hint)[1:]:
            if isinstance(arg, ArrowType):
                return _ALIAS_NAMES.get(arg.arrow_type, str(arg.arrow_type))
        return type_name(get_args(hint)[0])
    if isinstance(hint, type) and get_origin(hint) is None:
        return hint.__name__
    return repr(hint).replace("typing.", "")


# ---------------------------------------------------------------------------
# Arrow type inference
# ---------------------------------------------------------------------------


def arrow_type_for(python_type: Any) -> pa.DataType:
    """Infer the Arrow type for a Python type annotation.

    Raises:
        TypeError: If the type cannot be mapped.  Use
            ``Annotated[T, ArrowType(...)]`` to specify it explicitly.

    """
    inner_type, _ = _is_optional_type(python_type)
    if inner_type is not python_type:
        return arrow_type_for(inner_type)

    if get_origin(python_type) is Annotated:
        args = get_args(python_type)
        for arg in args[1:]:
            if isinstance(arg, ArrowType):
                return arg.arrow_type
        return arrow_type_for(args[0])

    # NewType creates a callable with __supertype__ attribute
    if hasattr(python_type, "__supertype__"):
        return arrow_type_for(python_type.__supertype__)

    if _is_remote_object_type(python_type):
        return pa.uint64()
    if isinstance(python_type, type) and issubclass(python_type, Enum):
        return pa.int32()
    if _is_message_type(python_type):
        return pa.binary()

    origin = get_origin(python_type)
    args = get_args(python_type)

    if origin is tuple:
        if len(args) == 2 and args[1] is Ellipsis:
            return pa.list_(arrow_type_for(args[0]))
        if not args:
            raise TypeError("Bare tuple needs element types: use tuple[A, B] or tuple[T, ...]")
        return pa.struct([pa.field(f"f{i}", arrow_type_for(a)) for i, a in enumerate(args)])

    if origin in (list, set, frozenset):
        if not args:
            raise TypeError(f"{origin.__name__} needs an element type, e.g. {origin.__name__}[int]")
        return pa.list_(arrow_type_for(args[0]))

    if origin is dict:
        if len(args) != 2:
            raise TypeError("dict needs key and value types, e.g. dict[str, int]")
        return pa.map_(arrow_type_for(args[0]), arrow_type_for(args[1]))

    # Simple type mappings
    type_map: dict[type, pa.DataType] = {
        str: pa.string(),
        bytes: pa.binary(),
        int: pa.int64(),
        float: pa.float64(),
        bool: pa.bool_(),
    }

    if python_type in type_map:
        return type_map[python_type]

    raise TypeError(
        f"Cannot infer Arrow type for: {python_type}. "
        f"Use Annotated[T, ArrowType(...)] to specify the Arrow type explicitly."
    )


# ---------------------------------------------------------------------------
# Python <-> Arrow-compatible conversion
# ---------------------------------------------------------------------------


def _canonical(items: list[Any], key: Any = None) -> list[Any]:
    """Sort for deterministic output, falling back to repr order."""
    try:
        return sorted(items, key=key)
    except TypeError:
        if key is None:
            return sorted(items, key=repr)
        return sorted(items, key=lambda item: repr(key(item)))


def to_wire(value: Any, hint: Any, binder: ObjectBinder | None = None) -> Any:
    """Convert a Python value into the shape ``pa.array`` expects for *hint*.

    Raises:
        EncodingError: If *value* does not fit the shape of *hint*.

    """
    base = _base_type(hint)
    if value is None:
        return 0 if _is_remote_object_type(base) else None

    if isinstance(base, type):
        if issubclass(base, RemoteObject):
            if binder is not None:
                return binder.object_id_of(value)
            if not isinstance(value, RemoteObject):
                raise EncodingError(f"Expected {base.__name__}, got {type(value).__name__}", hint)
            return value.object_id
        if issubclass(base, Enum):
            if not isinstance(value, base) or not isinstance(value.value, int):
                raise EncodingError(f"Expected an integer-valued {base.__name__} member, got {value!r}", hint)
            return value.value
        if _is_message_type(base):
            if not isinstance(value, base):
                raise EncodingError(f"Expected {base.__name__}, got {type(value).__name__}", hint)
            return value.serialize_to_bytes()

    origin = get_origin(base)
    args = get_args(base)

    if origin is tuple:
        if len(args) == 2 and args[1] is Ellipsis:
            return [to_wire(v, args[0], binder) for v in value]
        if len(value) != len(args):
            raise EncodingError(f"Expected a {len(args)}-tuple for {type_name(hint)}, got {len(value)} items", hint)
        return {f"f{i}": to_wire(v, a, binder) for i, (v, a) in enumerate(zip(value, args, strict=True))}
    if origin is list:
        return [to_wire(v, args[0], binder) for v in value]
    if origin in (set, frozenset):
        return _canonical([to_wire(v, args[0], binder) for v in value])
    if origin is dict:
        if not isinstance(value, dict):
            raise EncodingError(f"Expected a dict for {type_name(hint)}, got {type(value).__name__}", hint)
        pairs = [(to_wire(k, args[0], binder), to_wire(v, args[1], binder)) for k, v in value.items()]
        return _canonical(pairs, key=lambda pair: pair[0])
    return value


def from_wire(value: Any, hint: Any, binder: ObjectBinder | None = None) -> Any:
    """Convert an ``as_py()`` value back to the Python type named by *hint*.

    Raises:
        EncodingError: If the value cannot be converted (unknown enum value,
            malformed nested message, remote object without a binder).

    """
    base = _base_type(hint)
    if _is_remote_object_type(base):
        if value is None or value == 0:
            return None
        if binder is None:
            raise EncodingError(f"Decoding {base.__name__} requires a connection", hint)
        return binder.bind_object(base, value)
    if value is None:
        return None

    if isinstance(base, type):
        if issubclass(base, Enum):
            try:
                return base(value)
            except ValueError as exc:
                raise EncodingError(f"{value!r} is not a valid {base.__name__}", hint) from exc
        if _is_message_type(base):
            try:
                return base.deserialize_from_bytes(value)
            except (IPCError, ValueError, TypeError) as exc:
                raise EncodingError(f"Malformed {base.__name__} message: {exc}", hint) from exc

    origin = get_origin(base)
    args = get_args(base)

    if origin is tuple:
        if len(args) == 2 and args[1] is Ellipsis:
            return tuple(from_wire(v, args[0], binder) for v in value)
        return tuple(from_wire(value[f"f{i}"], a, binder) for i, a in enumerate(args))
    if origin is list:
        return [from_wire(v, args[0], binder) for v in value]
    if origin is set:
        return {from_wire(v, args[0], binder) for v in value}
    if origin is frozenset:
        return frozenset(from_wire(v, args[0], binder) for v in value)
    if origin is dict:
        # MapScalar.as_py() yields a list of (key, value) pairs
        items = value.items() if isinstance(value, dict) else value
        return {from_wire(k, args[0], binder): from_wire(v, args[1], binder) for k, v in items}
    return value


# ---------------------------------------------------------------------------
# Value codec
# ---------------------------------------------------------------------------


def encode(value: Any, hint: Any, binder: ObjectBinder | None = None) -> bytes:
    """Encode *value* as a one-row, one-column IPC stream typed by *hint*.

    Raises:
        EncodingError: If *value* is out of range or of the wrong shape.
        TypeError: If *hint* has no Arrow mapping.

    """
    arrow_type = arrow_type_for(hint)
    _, nullable = _is_optional_type(hint)
    try:
        array = pa.array([to_wire(value, hint, binder)], type=arrow_type)
    except EncodingError:
        raise
    except (pa.ArrowException, TypeError, ValueError, OverflowError) as exc:
        raise EncodingError(f"Cannot encode {value!r} as {type_name(hint)}: {exc}", hint) from exc
    if array.null_count and not nullable:
        raise EncodingError(f"Cannot encode None as non-optional {type_name(hint)}", hint)
    schema = pa.schema([pa.field(VALUE_FIELD, arrow_type, nullable=nullable)])
    return serialize_record_batch_bytes(pa.RecordBatch.from_arrays([array], schema=schema))


def decode(data: bytes, hint: Any, binder: ObjectBinder | None = None) -> Any:
    """Decode bytes produced by :func:`encode` for the same *hint*.

    Raises:
        EncodingError: If the data is truncated or malformed, or its Arrow
            type does not match *hint*.

    """
    expected = arrow_type_for(hint)
    name = type_name(hint)
    try:
        batch, _ = deserialize_record_batch(data, context=name)
    except IPCError as exc:
        raise EncodingError(f"Malformed {name} value: {exc}", hint) from exc
    if batch.num_columns != 1 or batch.num_rows != 1:
        raise EncodingError(
            f"Malformed {name} value: expected 1 column and 1 row, got {batch.num_columns} and {batch.num_rows}",
            hint,
        )
    actual = batch.schema.field(0).type
    if not actual.equals(expected):
        raise EncodingError(f"Expected {name} ({expected}), got {actual}", hint)
    return from_wire(batch.column(0)[0].as_py(), hint, binder)


# =============================================================================
# ArrowSerializableDataclass - Auto-serialization mixin for dataclasses
# =============================================================================


@functools.lru_cache(maxsize=256)
def _field_hints(cls: type) -> dict[str, Any]:
    """Resolved field annotations of a dataclass, Annotated wrappers preserved."""
    try:
        return get_type_hints(cls, include_extras=True)
    except (NameError, AttributeError) as exc:
        raise TypeError(f"Failed to resolve type hints for {cls.__name__}: {exc}") from exc


class _ArrowSchemaDescriptor:
    """Descriptor that lazily generates ARROW_SCHEMA on first access.

    The @dataclass decorator runs AFTER __init_subclass__, so
    __dataclass_fields__ isn't available until the class body is complete.
    The schema is built on first access and cached on the class.
    """

    def __set_name__(self, owner: type, name: str) -> None:
        self._name = name

    def __get__(self, instance: object | None, owner: type[ArrowSerializableDataclass]) -> pa.Schema:
        cache_attr = f"_cached_{self._name}"
        cached: pa.Schema | None = owner.__dict__.get(cache_attr)
        if cached is not None:
            return cached
        schema = self._generate_schema(owner)
        setattr(owner, cache_attr, schema)
        return schema

    def _generate_schema(self, cls: type[ArrowSerializableDataclass]) -> pa.Schema:
        """Generate ARROW_SCHEMA from dataclass field annotations."""
        hints = _field_hints(cls)
        arrow_fields: list[pa.Field[Any]] = []
        for field in dataclass_fields(cls):  # type: ignore[arg-type]
            field_type = hints.get(field.name, field.type)
            _, nullable = _is_optional_type(field_type)
            try:
                arrow_fields.append(pa.field(field.name, arrow_type_for(field_type), nullable=nullable))
            except TypeError as e:
                raise TypeError(f"Cannot generate Arrow schema for {cls.__name__}.{field.name}: {e}") from e
        return pa.schema(arrow_fields)


class ArrowSerializableDataclass:
    """Mixin for frozen dataclasses with automatic Arrow IPC serialization.

    The ARROW_SCHEMA is generated from field annotations using the same
    mapping as procedure values, so message types can be nested in each
    other and passed as procedure arguments (they travel as ``binary``).
    Optional fields (annotated with ``| None``) are nullable.

    Attributes:
        ARROW_SCHEMA: Auto-generated Arrow schema from field annotations.

    """

    ARROW_SCHEMA: ClassVar[pa.Schema] = _ArrowSchemaDescriptor()  # type: ignore[assignment]

    def _to_row_dict(self) -> dict[str, Any]:
        """Convert the instance to a row dict for Arrow batch construction."""
        hints = _field_hints(type(self))
        return {
            field.name: to_wire(getattr(self, field.name), hints.get(field.name, field.type))
            for field in dataclass_fields(self)  # type: ignore[arg-type]
        }

    def _serialize(self) -> pa.RecordBatch:
        """Serialize this instance to a single-row RecordBatch."""
        return pa.RecordBatch.from_pylist([self._to_row_dict()], schema=self.ARROW_SCHEMA)

    def serialize_to_bytes(self) -> bytes:
        """Serialize this instance to Arrow IPC bytes.

        Returns:
            Arrow IPC stream bytes containing a single-row RecordBatch.

        """
        return serialize_record_batch_bytes(self._serialize())

    @classmethod
    def deserialize_from_batch(cls, batch: pa.RecordBatch) -> Self:
        """Deserialize an instance from a single-row RecordBatch.

        Fields missing from the batch take their dataclass defaults.

        Raises:
            ValueError: If the batch is empty, has multiple rows, or lacks
                a field without a default.

        """
        if batch.num_rows != 1:
            raise ValueError(f"Expected single-row RecordBatch for {cls.__name__}, got {batch.num_rows} rows")
        row: dict[str, Any] = batch.to_pylist()[0]
        hints = _field_hints(cls)

        kwargs: dict[str, Any] = {}
        for field in dataclass_fields(cls):  # type: ignore[arg-type]
            if field.name in row:
                kwargs[field.name] = from_wire(row[field.name], hints.get(field.name, field.type))
            elif field.default is MISSING and field.default_factory is MISSING:
                raise ValueError(f"Missing field '{field.name}' in {cls.__name__} RecordBatch. Found: {sorted(row)}")
        return cls(**kwargs)

    @classmethod
    def deserialize_from_bytes(cls, data: bytes) -> Self:
        """Deserialize an instance from Arrow IPC bytes.

        Raises:
            IPCError: If the bytes are not a complete single-batch IPC stream.
            ValueError: If the batch does not describe an instance.

        """
        batch, _ = deserialize_record_batch(data, context=cls.__name__)
        return cls.deserialize_from_batch(batch)
