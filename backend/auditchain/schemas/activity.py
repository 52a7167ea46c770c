"""Activity log schemas."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

_camel = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ActivityTarget(BaseModel):
    """An object affected by an action."""

    model_config = _camel

    type: str = Field(min_length=1, max_length=100)
    id: str | None = None
    display_name: str | None = None


class ChangeRecord(BaseModel):
    """One field-level change recorded by an update."""

    model_config = ConfigDict(populate_by_name=True)

    field: str = Field(min_length=1)
    from_: Any = Field(default=None, alias="from")
    to: Any = None
    added: list[str] | None = None
    removed: list[str] | None = None

    @property
    def is_noop(self) -> bool:
        if self.added or self.removed:
            return False
        return _same_value(self.from_, self.to)


def _same_value(a: Any, b: Any) -> bool:
    """Deep equality that keeps booleans, numbers and strings apart (1 is not True)."""
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(_same_value(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(_same_value(x, y) for x, y in zip(a, b))
    return type(a) is type(b) and a == b


class ActivityEntryOut(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    sequence_number: int
    actor_id: str | None
    action: str
    target: dict[str, Any]
    related_targets: list[dict[str, Any]]
    metadata: dict[str, Any]
    created_at: datetime
    prev_hash: str
    entry_hash: str
    signature: str | None = None


class ActivityListResponse(BaseModel):
    items: list[ActivityEntryOut]
    total: int
    page: int
    page_size: int


class ActionCount(BaseModel):
    action: str
    count: int


# ── Verification ──────────────────────────────────────────────────────── #


class VerificationMode(StrEnum):
    QUICK = "quick"
    FULL = "full"


class FailureReason(StrEnum):
    CONTENT_MODIFIED = "content_modified"
    CHAIN_BREAK = "chain_break"
    INVALID_SIGNATURE = "invalid_signature"


QUICK_LIMITS: tuple[int, ...] = (50, 100, 500, 1000)


class BrokenLink(BaseModel):
    """Where and why verification stopped."""

    model_config = _camel

    id: str
    sequence_number: int
    reason: FailureReason
    expected: str | None = None
    actual: str | None = None


class ChainVerificationResult(BaseModel):
    """
    Outcome of a verification run.

    ``valid`` is True only when every checked entry passed and the run was
    not aborted. ``checked_entries`` is the number actually examined.
    """

    model_config = _camel

    valid: bool
    total_entries: int
    checked_entries: int
    mode: VerificationMode
    from_sequence: int | None = None
    to_sequence: int | None = None
    covers_full_history: bool = False
    aborted: bool = False
    notice: str | None = None
    broken_at: BrokenLink | None = None
