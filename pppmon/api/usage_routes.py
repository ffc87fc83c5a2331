from fastapi import APIRouter, Depends

from pppmon.core.deps import get_usage_tracking
from pppmon.services.usage_tracking import UsageTrackingService
import logging

logger = logging.getLogger(__name__)

router = APIRouter(tags=["usage"])


@router.get("/api/usage/router/{router_id}")
async def get_router_usage(
    router_id: int,
    usage_tracking: UsageTrackingService = Depends(get_usage_tracking)
):
    """Stored usage for every subscriber of a router, with recent session history"""
    return await usage_tracking.get_router_usage(router_id)


@router.get("/api/usage/router/{router_id}/user/{secret_name}")
async def get_user_usage(
    router_id: int,
    secret_name: str,
    usage_tracking: UsageTrackingService = Depends(get_usage_tracking)
):
    summary = await usage_tracking.get_usage_summary(router_id, secret_name)
    if summary is None:
        return {"message": "No usage data found"}
    return summary
