"""
Chain verifier: re-walks stored entries and reports the first defect.

Each entry is checked in a fixed order and the first failing check is the
one reported:

  1. content   the hash recomputed from stored content equals entry_hash
  2. linkage   prev_hash equals the previous entry's entry_hash and the
               sequence number follows the previous one without a gap
  3. signature a stored signature verifies under a configured key

The walk stops at the first failure; nothing after a broken link can be
trusted within the checked range.

Quick mode checks the most recent window only. Its first entry is attached
to the stored hash of the entry just before the window, which is itself
not re-verified: quick mode says nothing about older history.
"""

from __future__ import annotations

import time

import structlog

from auditchain.core.errors import SigningKeyMissingError, ValidationError
from auditchain.core.metrics import VERIFICATIONS
from auditchain.core.security import EntrySigner
from auditchain.schemas.activity import (
    QUICK_LIMITS,
    BrokenLink,
    ChainVerificationResult,
    FailureReason,
    VerificationMode,
)
from auditchain.services.activity.canonical import GENESIS_HASH
from auditchain.services.activity.model import ActivityRecord
from auditchain.services.activity.store import EntryStore

_log = structlog.get_logger(__name__)

DEFAULT_QUICK_LIMIT = QUICK_LIMITS[0]
DEFAULT_CHUNK_SIZE = 1000


class _Walk:
    """State carried from one entry to the next, across chunk boundaries."""

    def __init__(
        self,
        expected_prev_hash: str | None,
        expected_sequence: int,
        signer: EntrySigner | None,
        require_signatures: bool,
    ) -> None:
        self.expected_prev_hash = expected_prev_hash
        self.expected_sequence = expected_sequence
        self.checked = 0
        self._signer = signer
        self._require_signatures = require_signatures

    def check(self, entry: ActivityRecord) -> BrokenLink | None:
        self.checked += 1

        recomputed = entry.recompute_hash()
        if recomputed != entry.entry_hash:
            return BrokenLink(
                id=entry.id,
                sequence_number=entry.sequence_number,
                reason=FailureReason.CONTENT_MODIFIED,
                expected=recomputed,
                actual=entry.entry_hash,
            )

        if (
            entry.prev_hash != self.expected_prev_hash
            or entry.sequence_number != self.expected_sequence
        ):
            return BrokenLink(
                id=entry.id,
                sequence_number=entry.sequence_number,
                reason=FailureReason.CHAIN_BREAK,
                expected=self.expected_prev_hash,
                actual=entry.prev_hash,
            )

        if entry.signature is not None:
            if self._signer is None:
                raise SigningKeyMissingError()
            if not self._signer.verify(entry.entry_hash, entry.signature):
                return BrokenLink(
                    id=entry.id,
                    sequence_number=entry.sequence_number,
                    reason=FailureReason.INVALID_SIGNATURE,
                )
        elif self._require_signatures:
            return BrokenLink(
                id=entry.id,
                sequence_number=entry.sequence_number,
                reason=FailureReason.INVALID_SIGNATURE,
            )

        self.expected_prev_hash = entry.entry_hash
        self.expected_sequence = entry.sequence_number + 1
        return None


class ChainVerifier:
    """
    Verifies the activity chain held by an EntryStore.

    Read-only; safe to run alongside appends and other verifications. The
    tip sequence is snapshotted when a run starts and nothing above it is
    read.
    """

    def __init__(
        self,
        store: EntryStore,
        *,
        signer: EntrySigner | None = None,
        require_signatures: bool = False,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout_seconds: float | None = None,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self._store = store
        self._signer = signer
        self._require_signatures = require_signatures
        self._chunk_size = chunk_size
        self._timeout_seconds = timeout_seconds

    async def verify(
        self,
        mode: VerificationMode | str = VerificationMode.QUICK,
        limit: int | None = None,
    ) -> ChainVerificationResult:
        """
        Run a quick or full verification.

        Raises:
            ValidationError: unknown mode, or a quick limit outside 50/100/500/1000.
            SigningKeyMissingError: signed entries but no key to check them.
            StoreUnavailableError: the store could not be read.
        """
        try:
            mode = VerificationMode(mode)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown verification mode '{mode}'.",
                detail={"allowed": [m.value for m in VerificationMode]},
            ) from exc

        if mode is VerificationMode.QUICK:
            limit = DEFAULT_QUICK_LIMIT if limit is None else limit
            if limit not in QUICK_LIMITS:
                raise ValidationError(
                    f"Quick verification limit must be one of {list(QUICK_LIMITS)}.",
                    detail={"limit": limit, "allowed": list(QUICK_LIMITS)},
                )

        tip = await self._store.get_tip()
        if tip is None:
            result = ChainVerificationResult(
                valid=True,
                total_entries=0,
                checked_entries=0,
                mode=mode,
                covers_full_history=True,
            )
        elif mode is VerificationMode.QUICK:
            result = await self._verify_quick(tip.sequence_number, limit or DEFAULT_QUICK_LIMIT)
        else:
            result = await self._verify_full(tip.sequence_number)

        self._record(result)
        return result

    async def _verify_quick(self, bound: int, limit: int) -> ChainVerificationResult:
        total = await self._store.count(up_to_seq=bound)
        window = await self._store.latest(limit, up_to_seq=bound)
        first = window[0]

        if first.sequence_number == 1:
            expected_prev: str | None = GENESIS_HASH
        else:
            before = await self._store.range(first.sequence_number - 1, first.sequence_number - 1)
            expected_prev = before[0].entry_hash if before else None

        walk = _Walk(expected_prev, first.sequence_number, self._signer, self._require_signatures)
        broken = None
        for entry in window:
            broken = walk.check(entry)
            if broken is not None:
                break

        covers_all = first.sequence_number == 1
        notice = None
        if not covers_all:
            notice = (
                f"Quick verification checked sequences {first.sequence_number}-"
                f"{window[-1].sequence_number} only. Entries before sequence "
                f"{first.sequence_number} were not re-verified; run a full "
                "verification to check the whole history."
            )
        return ChainVerificationResult(
            valid=broken is None,
            total_entries=total,
            checked_entries=walk.checked,
            mode=VerificationMode.QUICK,
            from_sequence=first.sequence_number,
            to_sequence=window[-1].sequence_number,
            covers_full_history=covers_all,
            notice=notice,
            broken_at=broken,
        )

    async def _verify_full(self, bound: int) -> ChainVerificationResult:
        total = await self._store.count(up_to_seq=bound)
        walk = _Walk(GENESIS_HASH, 1, self._signer, self._require_signatures)
        deadline = (
            time.monotonic() + self._timeout_seconds if self._timeout_seconds is not None else None
        )

        start = 1
        while start <= bound:
            if deadline is not None and time.monotonic() > deadline:
                _log.warning(
                    "activity_verification_aborted",
                    checked_entries=walk.checked,
                    total_entries=total,
                    timeout_seconds=self._timeout_seconds,
                )
                return ChainVerificationResult(
                    valid=False,
                    total_entries=total,
                    checked_entries=walk.checked,
                    mode=VerificationMode.FULL,
                    from_sequence=1,
                    to_sequence=bound,
                    covers_full_history=False,
                    aborted=True,
                    notice=(
                        f"Verification stopped after {walk.checked} of {total} entries "
                        "because the time budget ran out. The result is incomplete."
                    ),
                )

            end = min(start + self._chunk_size - 1, bound)
            for entry in await self._store.range(start, end):
                broken = walk.check(entry)
                if broken is not None:
                    return ChainVerificationResult(
                        valid=False,
                        total_entries=total,
                        checked_entries=walk.checked,
                        mode=VerificationMode.FULL,
                        from_sequence=1,
                        to_sequence=bound,
                        covers_full_history=True,
                        broken_at=broken,
                    )
            start = end + 1

        return ChainVerificationResult(
            valid=True,
            total_entries=total,
            checked_entries=walk.checked,
            mode=VerificationMode.FULL,
            from_sequence=1,
            to_sequence=bound,
            covers_full_history=True,
        )

    def _record(self, result: ChainVerificationResult) -> None:
        if result.aborted:
            outcome = "aborted"
        elif result.valid:
            outcome = "valid"
        else:
            outcome = "broken"
        VERIFICATIONS.labels(mode=result.mode.value, outcome=outcome).inc()

        if result.broken_at is not None:
            _log.warning(
                "activity_chain_broken",
                mode=result.mode.value,
                sequence_number=result.broken_at.sequence_number,
                entry_id=result.broken_at.id,
                reason=result.broken_at.reason.value,
            )
        else:
            _log.info(
                "activity_chain_verified",
                mode=result.mode.value,
                valid=result.valid,
                checked_entries=result.checked_entries,
                total_entries=result.total_entries,
            )
