"""
Metadata shapes per action verb.

The verb of an action (``sessions.revoke`` → ``revoke``) selects the
pydantic model its metadata must satisfy. Facade helpers go through
``shape_metadata`` so every call site produces the same structure for the
same verb; encoding for hashing lives in ``canonical``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from auditchain.core.errors import ValidationError
from auditchain.schemas.activity import ChangeRecord


class ActorRef(BaseModel):
    id: str
    name: str | None = None
    email: str | None = None


class ImpersonationContext(BaseModel):
    """The real actor and the identity they were acting as."""

    actor: ActorRef
    effective: ActorRef


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")

    impersonation: ImpersonationContext | None = None


class GenericPayload(_Payload):
    """Create, delete and custom verbs: free-form detail."""


class UpdatePayload(_Payload):
    changes: list[ChangeRecord] = Field(min_length=1)


class RevokeAllPayload(_Payload):
    count: int | None = Field(default=None, ge=0)


class LoginFailurePayload(_Payload):
    identifier: str
    reason: str
    ip_address: str | None = None


PAYLOAD_MODELS: dict[str, type[_Payload]] = {
    "update": UpdatePayload,
    "revoke_all": RevokeAllPayload,
    "login_failed": LoginFailurePayload,
}


def payload_model_for(action: str) -> type[_Payload]:
    verb = action.split(".", 1)[-1]
    return PAYLOAD_MODELS.get(verb, GenericPayload)


def shape_metadata(action: str, metadata: dict[str, Any] | None) -> dict[str, Any]:
    """
    Validate ``metadata`` against the model for ``action`` and dump it.

    Only what the caller supplied is dumped; explicit nulls are kept. Values
    stay Python objects and are normalised once by the appender.
    """
    model = payload_model_for(action)
    try:
        payload = model.model_validate(metadata or {})
    except PydanticValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        raise ValidationError(
            f"Invalid metadata for '{action}'.",
            detail={"errors": errors},
        ) from exc
    return payload.model_dump(by_alias=True, exclude_unset=True)
