# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Handles for objects that live on the server.

A :class:`RemoteObject` is an opaque reference: a connection plus a
server-assigned 64-bit identifier.  The identifier ``0`` is reserved for
"no object" and is never wrapped; it decodes to ``None``.  Services
subclass :class:`RemoteObject` to give their object types names and
methods, and declare those subclasses in procedure signatures.

The client never invalidates references locally; an id the server has
forgotten surfaces as a server error on the next call that uses it.
"""

from __future__ import annotations

__all__ = ["RemoteObject"]


class RemoteObject:
    """Opaque reference to a server-side object.

    Two references are equal when they belong to the same connection and
    carry the same id, regardless of the concrete subclass they were
    decoded as.  Hashing uses the id only.
    """

    __slots__ = ("_client", "_object_id")

    def __init__(self, client: object, object_id: int) -> None:
        """Wrap *object_id* issued by the server behind *client*.

        Raises:
            ValueError: If *object_id* is not a positive integer.

        """
        if object_id <= 0:
            raise ValueError(f"Remote object ids are positive integers, got {object_id}")
        self._client = client
        self._object_id = object_id

    @property
    def client(self) -> object:
        """The connection this reference belongs to."""
        return self._client

    @property
    def object_id(self) -> int:
        """Server-assigned identifier."""
        return self._object_id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RemoteObject):
            return NotImplemented
        return self._client is other._client and self._object_id == other._object_id

    def __hash__(self) -> int:
        return hash(self._object_id)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} #{self._object_id}>"
