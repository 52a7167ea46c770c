"""Immutable activity record and its hash recomputation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from auditchain.core.errors import ValidationError
from auditchain.services.activity.canonical import compute_entry_hash

ACTION_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*\.[a-z][a-z0-9_]*$")
MAX_ACTION_LENGTH = 100


def validate_action(action: str) -> str:
    """Ensure ``action`` has the ``resource.verb`` form."""
    if len(action) > MAX_ACTION_LENGTH or not ACTION_PATTERN.match(action):
        raise ValidationError(
            f"Invalid activity action '{action}'. Expected 'resource.verb'.",
            detail={"action": action},
        )
    return action


@dataclass(frozen=True, slots=True)
class ActivityRecord:
    """One entry of the activity chain, exactly as stored."""

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
    signature: str | None = field(default=None)

    @property
    def resource(self) -> str:
        return self.action.split(".", 1)[0]

    @property
    def verb(self) -> str:
        return self.action.split(".", 1)[1] if "." in self.action else ""

    def recompute_hash(self) -> str:
        """Hash the stored content again, ignoring the stored entry_hash."""
        return compute_entry_hash(
            sequence_number=self.sequence_number,
            actor_id=self.actor_id,
            action=self.action,
            target=self.target,
            related_targets=self.related_targets,
            metadata=self.metadata,
            created_at=self.created_at,
            prev_hash=self.prev_hash,
        )
