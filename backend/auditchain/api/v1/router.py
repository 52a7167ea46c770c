"""API v1 router aggregator."""

from fastapi import APIRouter
from slowapi import Limiter

from auditchain.api.v1 import activity
from auditchain.config.settings import Settings


def build_router(limiter: Limiter, settings: Settings) -> APIRouter:
    router = APIRouter(prefix="/api/v1")
    router.include_router(activity.build_router(limiter, settings))
    return router
