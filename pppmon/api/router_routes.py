from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional

from pppmon.config import settings
from pppmon.core.deps import get_isolation, get_router_service, get_usage_tracking
from pppmon.core.exceptions import PPPMonitorError
from pppmon.db.database import get_db
from pppmon.services.isolation import IsolationController
from pppmon.services.router_service import RouterService
from pppmon.services.usage_tracking import UsageTrackingService
import logging

logger = logging.getLogger(__name__)

router = APIRouter(tags=["routers"])


class RouterCreateRequest(BaseModel):
    name: str
    host: str
    username: str
    password: str
    port: int = settings.MIKROTIK_DEFAULT_PORT
    is_active: bool = True
    isolate_profile: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None


class RouterUpdateRequest(BaseModel):
    name: Optional[str] = None
    host: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    port: Optional[int] = None
    is_active: Optional[bool] = None
    isolate_profile: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None


class PPPSecretCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    password: str = Field(min_length=1)
    profile: str = Field(min_length=1)
    service: str = "pppoe"
    comment: Optional[str] = None


class CommentUpdateRequest(BaseModel):
    comment: str = ""


class IsolateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_profile: Optional[str] = Field(default=None, alias="targetProfile")


class CoordinatesUpdateRequest(BaseModel):
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


# =============================================================================
# ROUTERS
# =============================================================================

@router.get("/api/routers")
async def get_routers(
    db: AsyncSession = Depends(get_db),
    service: RouterService = Depends(get_router_service)
):
    """Get all routers"""
    return await service.list_routers(db)


@router.post("/api/routers")
async def create_router_api(
    request: RouterCreateRequest,
    db: AsyncSession = Depends(get_db),
    service: RouterService = Depends(get_router_service)
):
    """Create a new router"""
    try:
        return await service.create_router(db, request.model_dump())
    except (HTTPException, PPPMonitorError):
        raise
    except Exception as e:
        logger.error(f"Error creating router: {str(e)}")
        await db.rollback()
        raise HTTPException(status_code=500, detail=f"Failed to create router: {str(e)}")


@router.get("/api/routers/{router_id}")
async def get_router(
    router_id: int,
    db: AsyncSession = Depends(get_db),
    service: RouterService = Depends(get_router_service)
):
    return await service.get_router(db, router_id)


@router.put("/api/routers/{router_id}")
async def update_router(
    router_id: int,
    request: RouterUpdateRequest,
    db: AsyncSession = Depends(get_db),
    service: RouterService = Depends(get_router_service)
):
    """Update router details; only the fields sent are changed"""
    try:
        return await service.update_router(db, router_id, request.model_dump(exclude_unset=True))
    except (HTTPException, PPPMonitorError):
        raise
    except Exception as e:
        logger.error(f"Error updating router: {str(e)}")
        await db.rollback()
        raise HTTPException(status_code=500, detail=f"Failed to update router: {str(e)}")


@router.delete("/api/routers/{router_id}")
async def delete_router(
    router_id: int,
    db: AsyncSession = Depends(get_db),
    service: RouterService = Depends(get_router_service)
):
    try:
        await service.delete_router(db, router_id)
        return {"success": True, "message": f"Router {router_id} deleted"}
    except (HTTPException, PPPMonitorError):
        raise
    except Exception as e:
        logger.error(f"Error deleting router: {str(e)}")
        await db.rollback()
        raise HTTPException(status_code=500, detail=f"Failed to delete router: {str(e)}")


@router.post("/api/routers/{router_id}/test")
async def test_router_connection(
    router_id: int,
    db: AsyncSession = Depends(get_db),
    service: RouterService = Depends(get_router_service)
):
    """Open an API session to the router and read its identity"""
    return await service.test_connection(db, router_id)


@router.post("/api/routers/{router_id}/sync")
async def sync_router_now(
    router_id: int,
    usage_tracking: UsageTrackingService = Depends(get_usage_tracking)
):
    """Reconcile one router immediately, outside the scheduler"""
    return await usage_tracking.sync_now(router_id)


@router.get("/api/routers/{router_id}/profiles")
async def get_router_profiles(
    router_id: int,
    db: AsyncSession = Depends(get_db),
    service: RouterService = Depends(get_router_service)
):
    return {"router_id": router_id, "profiles": await service.list_profiles(db, router_id)}


# =============================================================================
# PPP SUBSCRIBERS
# =============================================================================

@router.get("/api/routers/{router_id}/ppp")
async def get_ppp_users(
    router_id: int,
    service: RouterService = Depends(get_router_service)
):
    """Subscriber list from the cache, falling back to a bounded live fetch"""
    return await service.list_subscribers(router_id)


@router.post("/api/routers/{router_id}/ppp")
async def create_ppp_user(
    router_id: int,
    request: PPPSecretCreateRequest,
    db: AsyncSession = Depends(get_db),
    service: RouterService = Depends(get_router_service)
):
    try:
        return await service.create_subscriber(db, router_id, request.model_dump())
    except (HTTPException, PPPMonitorError):
        raise
    except Exception as e:
        logger.error(f"Error creating PPP secret {request.name}: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Failed to create PPP secret: {str(e)}")


@router.post("/api/routers/{router_id}/ppp/{secret_name}/comment")
async def update_ppp_comment(
    router_id: int,
    secret_name: str,
    request: CommentUpdateRequest,
    db: AsyncSession = Depends(get_db),
    service: RouterService = Depends(get_router_service)
):
    return await service.set_comment(db, router_id, secret_name, request.comment)


@router.post("/api/routers/{router_id}/ppp/{secret_name}/isolate")
async def toggle_ppp_isolation(
    router_id: int,
    secret_name: str,
    request: Optional[IsolateRequest] = None,
    isolation: IsolationController = Depends(get_isolation)
):
    """Isolate the subscriber, or restore it if it is already isolated"""
    target_profile = request.target_profile if request else None
    return await isolation.toggle_isolation(router_id, secret_name, target_profile)


@router.put("/api/routers/{router_id}/ppp/{secret_name}/coordinates")
async def update_ppp_coordinates(
    router_id: int,
    secret_name: str,
    request: CoordinatesUpdateRequest,
    db: AsyncSession = Depends(get_db),
    service: RouterService = Depends(get_router_service)
):
    return await service.set_coordinates(db, router_id, secret_name, request.latitude, request.longitude)
