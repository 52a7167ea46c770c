"""Unit tests for auditchain.services.activity.payloads."""
from datetime import UTC, datetime

import pytest

from auditchain.core.errors import ValidationError
from auditchain.services.activity.payloads import (
    GenericPayload,
    LoginFailurePayload,
    RevokeAllPayload,
    UpdatePayload,
    payload_model_for,
    shape_metadata,
)


@pytest.mark.parametrize(
    "action,model",
    [
        ("roles.update", UpdatePayload),
        ("sessions.revoke_all", RevokeAllPayload),
        ("auth.login_failed", LoginFailurePayload),
        ("roles.create", GenericPayload),
        ("notes.pin", GenericPayload),
    ],
)
def test_payload_model_selected_by_verb(action, model):
    assert payload_model_for(action) is model


def test_update_requires_changes():
    with pytest.raises(ValidationError) as exc_info:
        shape_metadata("roles.update", {})
    assert exc_info.value.detail["errors"]


def test_update_changes_use_from_key():
    shaped = shape_metadata(
        "roles.update",
        {"changes": [{"field": "name", "from": "a", "to": "b"}]},
    )
    assert shaped == {"changes": [{"field": "name", "from": "a", "to": "b"}]}


def test_array_change_keeps_added_and_removed():
    shaped = shape_metadata(
        "roles.update",
        {"changes": [{"field": "permissions", "added": ["x.read"], "removed": ["y.write"]}]},
    )
    assert shaped["changes"][0] == {
        "field": "permissions",
        "added": ["x.read"],
        "removed": ["y.write"],
    }


def test_generic_payload_keeps_extra_fields():
    assert shape_metadata("notes.pin", {"position": 2, "note": None}) == {"position": 2, "note": None}


def test_unset_optional_fields_are_not_dumped():
    assert shape_metadata("sessions.revoke_all", {}) == {}


def test_change_values_keep_explicit_nulls():
    shaped = shape_metadata(
        "users.update",
        {"changes": [{"field": "phone", "from": "555", "to": None}]},
    )
    assert shaped == {"changes": [{"field": "phone", "from": "555", "to": None}]}


def test_values_are_dumped_as_python_objects():
    when = datetime(2026, 1, 2, tzinfo=UTC)
    assert shape_metadata("notes.pin", {"at": when}) == {"at": when}


def test_revoke_all_count_must_not_be_negative():
    with pytest.raises(ValidationError):
        shape_metadata("sessions.revoke_all", {"count": -1})


def test_impersonation_is_shaped():
    shaped = shape_metadata(
        "roles.create",
        {
            "impersonation": {
                "actor": {"id": "admin-1", "name": "Admin"},
                "effective": {"id": "user-9"},
            }
        },
    )
    assert shaped == {
        "impersonation": {
            "actor": {"id": "admin-1", "name": "Admin"},
            "effective": {"id": "user-9"},
        }
    }
