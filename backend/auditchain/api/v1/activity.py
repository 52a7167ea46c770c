"""Activity log API endpoints."""

from datetime import UTC, datetime, timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from slowapi import Limiter

from auditchain.api.deps import (
    ActivityReader,
    ActivityVerifier,
    get_chain_verifier,
    get_entry_store,
)
from auditchain.config.settings import Settings
from auditchain.core.errors import ErrorCode, NotFoundError
from auditchain.schemas.activity import (
    ActionCount,
    ActivityEntryOut,
    ActivityListResponse,
    ChainVerificationResult,
    VerificationMode,
)
from auditchain.services.activity.sql_store import SqlAlchemyEntryStore
from auditchain.services.activity.verifier import ChainVerifier

Store = Annotated[SqlAlchemyEntryStore, Depends(get_entry_store)]


async def list_activity(
    store: Store,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    actor_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    resource: str | None = Query(default=None, description="Action prefix, e.g. 'roles'"),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
) -> ActivityListResponse:
    """Return paginated activity entries, newest first, with optional filters."""
    items, total = await store.search(
        actor_id=actor_id,
        action=action,
        resource=resource,
        start=start,
        end=end,
        offset=(page - 1) * page_size,
        limit=page_size,
    )
    return ActivityListResponse(
        items=[ActivityEntryOut.model_validate(r) for r in items],
        total=total,
        page=page,
        page_size=page_size,
    )


async def list_actions(store: Store) -> list[str]:
    return await store.distinct_actions()


async def list_resources(store: Store) -> list[str]:
    return await store.distinct_resources()


async def activity_summary(
    store: Store,
    days: int = Query(default=7, ge=1, le=365),
) -> list[ActionCount]:
    """Entry counts per action over the last ``days`` days, most frequent first."""
    since = datetime.now(UTC) - timedelta(days=days)
    return [
        ActionCount(action=action, count=count)
        for action, count in await store.action_counts(since=since)
    ]


async def verify_chain(
    request: Request,
    verifier: Annotated[ChainVerifier, Depends(get_chain_verifier)],
    mode: VerificationMode = Query(default=VerificationMode.QUICK),
    limit: int | None = Query(
        default=None, description="Quick mode window: 50, 100, 500 or 1000 entries"
    ),
) -> ChainVerificationResult:
    """
    Recompute hashes and links over the recent window (quick) or the whole
    history (full) and report the first broken entry, if any.
    """
    return await verifier.verify(mode=mode, limit=limit)


async def get_activity_entry(entry_id: str, store: Store) -> ActivityEntryOut:
    record = await store.get(entry_id)
    if record is None:
        raise NotFoundError("ActivityEntry", entry_id, code=ErrorCode.ACTIVITY_NOT_FOUND)
    return ActivityEntryOut.model_validate(record)


def build_router(limiter: Limiter, settings: Settings) -> APIRouter:
    """
    Activity routes bound to one application's limiter.

    ``/{entry_id}`` is registered last so the fixed paths match first.
    """
    router = APIRouter(prefix="/activity", tags=["activity"])
    router.add_api_route(
        "",
        list_activity,
        methods=["GET"],
        response_model=ActivityListResponse,
        response_model_by_alias=True,
        summary="List activity entries",
        dependencies=[ActivityReader],
    )
    router.add_api_route(
        "/actions",
        list_actions,
        methods=["GET"],
        response_model=list[str],
        summary="List recorded action names",
        dependencies=[ActivityReader],
    )
    router.add_api_route(
        "/resources",
        list_resources,
        methods=["GET"],
        response_model=list[str],
        summary="List recorded resource names",
        dependencies=[ActivityReader],
    )
    router.add_api_route(
        "/summary",
        activity_summary,
        methods=["GET"],
        response_model=list[ActionCount],
        summary="Count entries per action",
        dependencies=[ActivityReader],
    )
    router.add_api_route(
        "/verify",
        limiter.limit(settings.rate_limit_verify)(verify_chain),
        methods=["GET"],
        response_model=ChainVerificationResult,
        response_model_by_alias=True,
        summary="Verify activity hash chain integrity",
        dependencies=[ActivityVerifier],
    )
    router.add_api_route(
        "/{entry_id}",
        get_activity_entry,
        methods=["GET"],
        response_model=ActivityEntryOut,
        response_model_by_alias=True,
        summary="Get one activity entry",
        dependencies=[ActivityReader],
    )
    return router
