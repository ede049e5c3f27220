from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from pathlib import PurePath
from typing import Any
from uuid import UUID

import rfc8785
from pydantic import BaseModel

_SCALARS = (bool, int, float, str, type(None))


def _to_json_primitive(value: Any) -> Any:
    """Convert snapshot values into the JSON subset accepted by rfc8785.

    Pydantic models are dumped in JSON mode, sets and frozensets are sorted so
    that map-of-set snapshots (atom-test links) serialize identically
    regardless of insertion order.

    Raises:
        TypeError: If a value has no JSON representation.
    """
    if isinstance(value, _SCALARS):
        return value
    if isinstance(value, BaseModel):
        return _to_json_primitive(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _to_json_primitive(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_primitive(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_to_json_primitive(item) for item in value)
    if isinstance(value, Enum):
        return _to_json_primitive(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (UUID, PurePath)):
        return str(value)
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize a value to RFC 8785 canonical JSON.

    Args:
        value: Any JSON-like structure, possibly containing Pydantic models.

    Returns:
        Deterministic JSON text.

    Raises:
        TypeError: If value contains an unsupported type.
    """
    return rfc8785.dumps(_to_json_primitive(value)).decode("utf-8")


def canonical_digest(value: Any) -> str:
    """Return the sha256 hex digest of the canonical JSON form of ``value``."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
