"""JSON-safe conversion, isolated copies and document checksums.

Anything that leaves the engine (results over the API, exported bundles,
durable cache rows) goes through ``to_jsonable`` first. Host functions and
remote payloads can hand back dataclasses, enums, datetimes, sets or objects
that reference themselves; those are converted rather than rejected.

Checksums are SHA-256 over canonical JSON (sorted keys, no whitespace), so
two documents with equal content always hash the same regardless of key
insertion order.
"""

from __future__ import annotations

import copy
import dataclasses
import hashlib
import json
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID

_CIRCULAR_REF = "<circular reference>"
_MAX_REPR_LEN = 500


def safe_deepcopy(obj: Any) -> Any:
    """Deep copy, falling back to a JSON round-trip for uncopyable objects."""
    try:
        return copy.deepcopy(obj)
    except Exception:
        return json.loads(json.dumps(to_jsonable(obj)))


def to_jsonable(value: Any, *, _seen: frozenset[int] = frozenset()) -> Any:
    """Convert an arbitrary Python object into plain JSON types."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value

    obj_id = id(value)
    if isinstance(value, (dict, list, tuple, set, frozenset)):
        if obj_id in _seen:
            return _CIRCULAR_REF
        _seen = _seen | {obj_id}

    if isinstance(value, dict):
        return {str(k): to_jsonable(v, _seen=_seen) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [to_jsonable(item, _seen=_seen) for item in value]

    if isinstance(value, (set, frozenset)):
        items = [to_jsonable(item, _seen=_seen) for item in value]
        try:
            return sorted(items)
        except TypeError:
            return items

    if isinstance(value, Enum):
        return value.value

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, (UUID, Path)):
        return str(value)

    if isinstance(value, (bytes, bytearray)):
        return f"<bytes len={len(value)}>"

    if isinstance(value, BaseException):
        from actionrail.core.errors import error_to_dict

        return error_to_dict(value)

    # Our own models expose to_dict().
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        try:
            return to_jsonable(to_dict(), _seen=_seen)
        except Exception:
            pass

    # Pydantic v2 models.
    if hasattr(value, "model_dump"):
        try:
            return to_jsonable(value.model_dump(), _seen=_seen)
        except Exception:
            pass

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        try:
            return to_jsonable(dataclasses.asdict(value), _seen=_seen)
        except Exception:
            pass

    r = repr(value)
    if len(r) > _MAX_REPR_LEN:
        r = r[:_MAX_REPR_LEN] + "..."
    return f"<unserializable: {r}>"


def canonical_json(value: Any) -> str:
    return json.dumps(to_jsonable(value), sort_keys=True, separators=(",", ":"))


def checksum(value: Any) -> str:
    """Stable content hash of a JSON document."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()
