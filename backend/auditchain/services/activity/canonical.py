"""
Canonical encoding and hashing of activity entry content.

Two runs over the same logical entry must produce byte-identical output,
whether the entry was just built in memory or read back from the database.
The rules, applied at every level:

  * object keys are sorted;
  * keys whose value is None are omitted, so null and absent are the same;
  * integral floats are written as integers, other floats use the shortest
    round-trip form, NaN and infinities are rejected;
  * output is compact, ASCII-only JSON encoded as UTF-8;
  * timestamps are UTC ISO-8601 with millisecond precision.
"""

from __future__ import annotations

import hashlib
import json
import math
import uuid
from collections.abc import Mapping, Sequence
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel

from auditchain.core.errors import CanonicalizationError

GENESIS_HASH = "0" * 64

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


def normalize_timestamp(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime truncated to milliseconds."""
    if value.tzinfo is None:
        # SQLite hands back naive datetimes; everything is stored as UTC
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def format_timestamp(value: datetime) -> str:
    value = normalize_timestamp(value)
    return f"{value.strftime(_TIMESTAMP_FORMAT)}.{value.microsecond // 1000:03d}Z"


def to_json_value(value: Any, _path: str = "$") -> Any:
    """
    Convert caller-supplied data into plain JSON values.

    Applied once when an entry is built; the result is what gets stored,
    so reading it back yields the same structure.

    Raises:
        CanonicalizationError: For values with no stable JSON form.
    """
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise CanonicalizationError(
                "Non-finite numbers cannot be recorded.", detail={"path": _path}
            )
        return value
    if isinstance(value, Enum):
        return to_json_value(value.value, _path)
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, BaseModel):
        return to_json_value(value.model_dump(by_alias=True), _path)
    if isinstance(value, Mapping):
        out: dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise CanonicalizationError(
                    "Object keys must be strings.", detail={"path": _path, "key": repr(key)}
                )
            out[key] = to_json_value(item, f"{_path}.{key}")
        return out
    if isinstance(value, (set, frozenset)):
        items = [to_json_value(item, f"{_path}[]") for item in value]
        return sorted(items, key=lambda item: _dumps(item))
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [to_json_value(item, f"{_path}[{i}]") for i, item in enumerate(value)]
    raise CanonicalizationError(
        f"Cannot record value of type {type(value).__name__}.", detail={"path": _path}
    )


def _canonical_form(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _canonical_form(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_canonical_form(v) for v in value]
    if isinstance(value, float):
        if not math.isfinite(value):
            raise CanonicalizationError("Non-finite numbers cannot be hashed.")
        if value.is_integer():
            return int(value)
    return value


def _dumps(value: Any) -> str:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        allow_nan=False,
    )


def canonical_encode(content: Mapping[str, Any]) -> bytes:
    """Return the canonical byte encoding of already JSON-native ``content``."""
    try:
        return _dumps(_canonical_form(dict(content))).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise CanonicalizationError(f"Entry content is not canonically encodable: {exc}") from exc


def hashable_content(
    *,
    sequence_number: int,
    actor_id: str | None,
    action: str,
    target: Mapping[str, Any],
    related_targets: Sequence[Mapping[str, Any]],
    metadata: Mapping[str, Any],
    created_at: datetime,
    prev_hash: str,
) -> dict[str, Any]:
    """Assemble the fields covered by ``entry_hash``."""
    return {
        "sequence_number": sequence_number,
        "actor_id": actor_id,
        "action": action,
        "target": dict(target),
        "related_targets": [dict(t) for t in related_targets],
        "metadata": dict(metadata),
        "created_at": format_timestamp(created_at),
        "prev_hash": prev_hash,
    }


def compute_entry_hash(**fields: Any) -> str:
    """SHA-256 hex digest of the canonical encoding of the hashed fields."""
    return hashlib.sha256(canonical_encode(hashable_content(**fields))).hexdigest()
