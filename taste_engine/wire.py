"""Wire helpers: timestamps and ``google.protobuf.Struct`` conversion.

Every persisted or transmitted structure in the engine is a JSON-safe
``dict`` produced by a dataclass ``to_dict()``.  This module converts those
dicts to and from protobuf ``Struct`` messages for the gRPC layer and
normalises timestamps to UTC-aware :class:`datetime` objects.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from google.protobuf import json_format
from google.protobuf.struct_pb2 import Struct
from google.protobuf.timestamp_pb2 import Timestamp


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def ensure_utc(dt: datetime) -> datetime:
    """Return *dt* as a UTC-aware datetime; naive datetimes are assumed UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    """Serialise a datetime as an ISO-8601 string (``None`` passes through)."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()


def from_iso(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or datetime) into a UTC-aware datetime.

    Raises:
        ValueError: If *value* is not a parseable timestamp.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        raise ValueError(f"Expected ISO-8601 string, got {type(value).__name__}")
    return ensure_utc(datetime.fromisoformat(value))


def timestamp_to_datetime(ts: Any) -> datetime:
    """Convert a ``google.protobuf.Timestamp`` to a UTC-aware ``datetime``.

    Args:
        ts: A protobuf Timestamp object with ``seconds`` and ``nanos`` fields.

    Returns:
        A UTC-aware :class:`datetime`.
    """
    return datetime.fromtimestamp(ts.seconds + ts.nanos / 1e9, tz=timezone.utc)


def parse_rfc3339(value: str) -> datetime:
    """Parse an RFC 3339 timestamp the way protobuf's JSON mapping does.

    Raises:
        ValueError: If *value* is not a valid RFC 3339 timestamp.
    """
    ts = Timestamp()
    ts.FromJsonString(value)
    return timestamp_to_datetime(ts)


# ---------------------------------------------------------------------------
# Struct payloads
# ---------------------------------------------------------------------------


def dict_to_struct(payload: dict[str, Any]) -> Struct:
    """Pack a JSON-safe dict into a protobuf ``Struct``.

    Numbers travel as doubles; callers coerce integer fields on the way out
    (see :func:`struct_to_dict`).
    """
    message = Struct()
    message.update(payload)
    return message


def struct_to_dict(message: Struct) -> dict[str, Any]:
    """Unpack a protobuf ``Struct`` into a plain dict.

    Whole-number doubles are converted back to ``int`` so counters and
    counts survive the round trip unchanged.
    """
    return _restore_ints(json_format.MessageToDict(message))


def _restore_ints(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {k: _restore_ints(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_restore_ints(v) for v in value]
    return value
