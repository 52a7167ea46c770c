"""Unit tests for auditchain.services.activity.canonical."""
import hashlib
import uuid
from datetime import UTC, datetime, timedelta, timezone
from decimal import Decimal
from enum import StrEnum

import pytest

from auditchain.core.errors import CanonicalizationError
from auditchain.schemas.activity import ActivityTarget
from auditchain.services.activity.canonical import (
    GENESIS_HASH,
    canonical_encode,
    compute_entry_hash,
    format_timestamp,
    normalize_timestamp,
    to_json_value,
)

WHEN = datetime(2026, 3, 4, 5, 6, 7, 891234, tzinfo=UTC)


def _fields(**overrides):
    fields = {
        "sequence_number": 1,
        "actor_id": "user-1",
        "action": "roles.update",
        "target": {"type": "role", "id": "r1", "displayName": "Editors"},
        "related_targets": [],
        "metadata": {"changes": [{"field": "name", "from": "Edit", "to": "Editors"}]},
        "created_at": WHEN,
        "prev_hash": GENESIS_HASH,
    }
    fields.update(overrides)
    return fields


# ─── Encoding rules ───────────────────────────────────────────────────────────

def test_keys_are_sorted_at_every_level():
    a = canonical_encode({"b": 1, "a": {"z": 1, "y": 2}})
    b = canonical_encode({"a": {"y": 2, "z": 1}, "b": 1})
    assert a == b == b'{"a":{"y":2,"z":1},"b":1}'


def test_none_and_absent_encode_identically():
    assert canonical_encode({"a": 1, "b": None}) == canonical_encode({"a": 1})


def test_integral_floats_encode_as_integers():
    assert canonical_encode({"n": 3.0}) == canonical_encode({"n": 3})
    assert canonical_encode({"n": 0.5}) == b'{"n":0.5}'


def test_non_ascii_is_escaped():
    assert canonical_encode({"name": "Zoë"}) == b'{"name":"Zo\\u00eb"}'


def test_nan_is_rejected():
    with pytest.raises(CanonicalizationError):
        canonical_encode({"n": float("nan")})


# ─── Timestamps ───────────────────────────────────────────────────────────────

def test_timestamp_is_truncated_to_milliseconds():
    assert normalize_timestamp(WHEN).microsecond == 891000
    assert format_timestamp(WHEN) == "2026-03-04T05:06:07.891Z"


def test_timestamp_offset_is_converted_to_utc():
    local = WHEN.astimezone(timezone(timedelta(hours=5, minutes=30)))
    assert format_timestamp(local) == "2026-03-04T05:06:07.891Z"


def test_naive_timestamp_is_treated_as_utc():
    assert format_timestamp(WHEN.replace(tzinfo=None)) == format_timestamp(WHEN)


# ─── to_json_value ────────────────────────────────────────────────────────────

class Color(StrEnum):
    RED = "red"


def test_to_json_value_normalizes_rich_types():
    ident = uuid.UUID("12345678-1234-5678-1234-567812345678")
    value = to_json_value(
        {
            "color": Color.RED,
            "at": WHEN,
            "id": ident,
            "amount": Decimal("1.50"),
            "tags": {"b", "a"},
            "pair": ("x", 1),
        }
    )
    assert value == {
        "color": "red",
        "at": "2026-03-04T05:06:07.891Z",
        "id": str(ident),
        "amount": "1.50",
        "tags": ["a", "b"],
        "pair": ["x", 1],
    }


def test_to_json_value_dumps_models_by_alias():
    target = ActivityTarget(type="role", id="r1", display_name="Editors")
    assert to_json_value(target) == {"type": "role", "id": "r1", "displayName": "Editors"}


def test_to_json_value_rejects_non_string_keys():
    with pytest.raises(CanonicalizationError) as exc_info:
        to_json_value({"outer": {1: "x"}})
    assert exc_info.value.detail["path"] == "$.outer"


def test_to_json_value_rejects_unknown_types():
    with pytest.raises(CanonicalizationError):
        to_json_value({"blob": object()})


def test_to_json_value_rejects_infinity():
    with pytest.raises(CanonicalizationError):
        to_json_value({"n": float("inf")})


# ─── compute_entry_hash ───────────────────────────────────────────────────────

def test_hash_is_sha256_hex():
    digest = compute_entry_hash(**_fields())
    assert len(digest) == 64
    assert int(digest, 16) >= 0


def test_hash_is_deterministic():
    assert compute_entry_hash(**_fields()) == compute_entry_hash(**_fields())


def test_hash_matches_manual_encoding():
    expected_bytes = (
        b'{"action":"roles.update","actor_id":"user-1","created_at":"2026-03-04T05:06:07.891Z",'
        b'"metadata":{"changes":[{"field":"name","from":"Edit","to":"Editors"}]},'
        b'"prev_hash":"' + GENESIS_HASH.encode() + b'","related_targets":[],'
        b'"sequence_number":1,"target":{"displayName":"Editors","id":"r1","type":"role"}}'
    )
    assert compute_entry_hash(**_fields()) == hashlib.sha256(expected_bytes).hexdigest()


def test_submillisecond_difference_does_not_change_hash():
    later = WHEN + timedelta(microseconds=100)
    assert compute_entry_hash(**_fields(created_at=later)) == compute_entry_hash(**_fields())


@pytest.mark.parametrize(
    "override",
    [
        {"sequence_number": 2},
        {"actor_id": "user-2"},
        {"actor_id": None},
        {"action": "roles.delete"},
        {"target": {"type": "role", "id": "r2"}},
        {"related_targets": [{"type": "user", "id": "u1"}]},
        {"metadata": {}},
        {"created_at": WHEN + timedelta(milliseconds=1)},
        {"prev_hash": "f" * 64},
    ],
)
def test_every_hashed_field_changes_the_hash(override):
    assert compute_entry_hash(**_fields(**override)) != compute_entry_hash(**_fields())
