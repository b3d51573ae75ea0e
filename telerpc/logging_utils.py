# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""One-line JSON log output for telerpc's structured log fields.

The server and client attach fields such as ``server_id``, ``client_id``,
``procedure`` and ``error_type`` to their records through ``extra``.
:class:`JsonFormatter` writes every such field without an allowlist::

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    logging.getLogger("telerpc").addHandler(handler)

This module is **not** auto-imported by ``telerpc``.
"""

from __future__ import annotations

import json
import logging
import time

__all__ = ["JsonFormatter"]

# Attribute names every LogRecord has; anything else came from ``extra``.
_DEFAULT_RECORD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()) | {
    "message",
    "asctime",
}

_RESERVED_KEYS: frozenset[str] = frozenset({"timestamp", "level", "logger", "thread", "message", "exception"})


def _json_default(value: object) -> object:
    if isinstance(value, bytes | bytearray):
        return value.hex()
    return str(value)


class JsonFormatter(logging.Formatter):
    """Formats records as single-line JSON objects.

    ``timestamp``, ``level``, ``logger``, ``thread`` and ``message`` are
    always present and win over ``extra`` fields of the same name.  Bytes
    values (client identifiers) are written as hex; other values JSON
    cannot represent are written with ``str()``.

    Args:
        utc: Render timestamps in UTC instead of local time.

    """

    def __init__(self, *, utc: bool = True) -> None:
        """Initialize; timestamps are ISO-8601 with milliseconds."""
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")
        if utc:
            self.converter = time.gmtime

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:  # noqa: N802
        """Return the record time as ``YYYY-MM-DDTHH:MM:SS.mmm``."""
        return f"{super().formatTime(record, datefmt)}.{int(record.msecs):03d}"

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        record.message = record.getMessage()
        obj: dict[str, object] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.message,
            **{k: v for k, v in record.__dict__.items() if k not in _DEFAULT_RECORD_ATTRS and k not in _RESERVED_KEYS},
        }
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(obj, default=_json_default)
