from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete
from typing import Any, Callable, Dict, List, Optional
import asyncio
import logging

from pppmon.core.exceptions import DeviceError, NotFound
from pppmon.db.models import Router, PPPUser
from pppmon.services.mikrotik_api import MikroTikAPI
from pppmon.services.router_helpers import connect_to_router, get_router_by_id, router_info
from pppmon.services.usage_tracking import UsageTrackingService

logger = logging.getLogger(__name__)

ROUTER_FIELDS = (
    "name", "host", "port", "username", "password", "is_active",
    "isolate_profile", "telegram_bot_token", "telegram_chat_id",
)


def serialize_router(router: Router) -> Dict[str, Any]:
    return {
        "id": router.id,
        "name": router.name,
        "host": router.host,
        "port": router.port,
        "username": router.username,
        "is_active": router.is_active,
        "isolate_profile": router.isolate_profile,
        "telegram_configured": bool(router.telegram_bot_token and router.telegram_chat_id),
        "last_sync": router.last_sync.isoformat() if router.last_sync else None,
        "created_at": router.created_at.isoformat() if router.created_at else None,
    }


class RouterService:
    """Router CRUD and the operator-facing subscriber operations."""

    def __init__(
        self,
        usage_tracking: UsageTrackingService,
        gateway_factory: Callable[[dict], MikroTikAPI] = connect_to_router,
    ):
        self.usage_tracking = usage_tracking
        self.cache = usage_tracking.cache
        self.gateway_factory = gateway_factory

    # -- routers -------------------------------------------------------------

    async def list_routers(self, db: AsyncSession) -> List[Dict[str, Any]]:
        result = await db.execute(select(Router).order_by(Router.name))
        return [serialize_router(r) for r in result.scalars().all()]

    async def get_router(self, db: AsyncSession, router_id: int) -> Dict[str, Any]:
        return serialize_router(await get_router_by_id(db, router_id))

    async def create_router(self, db: AsyncSession, data: Dict[str, Any]) -> Dict[str, Any]:
        router = Router(**{k: v for k, v in data.items() if k in ROUTER_FIELDS})
        db.add(router)
        await db.commit()
        await db.refresh(router)
        logger.info(f"Router created: {router.id} ({router.host})")
        return serialize_router(router)

    async def update_router(self, db: AsyncSession, router_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        router = await get_router_by_id(db, router_id)
        for key, value in data.items():
            if key in ROUTER_FIELDS:
                setattr(router, key, value)
        await db.commit()
        await db.refresh(router)
        await self.cache.invalidate(router_id)
        return serialize_router(router)

    async def delete_router(self, db: AsyncSession, router_id: int) -> None:
        router = await get_router_by_id(db, router_id)
        # Usage history is kept; only the live subscriber rows go with the router
        await db.execute(delete(PPPUser).where(PPPUser.router_id == router_id))
        await db.delete(router)
        await db.commit()
        await self.cache.invalidate(router_id)
        logger.info(f"Router deleted: {router_id}")

    def _identity_sync(self, info: dict) -> Optional[str]:
        with self.gateway_factory(info) as api:
            return api.get_identity()

    async def test_connection(self, db: AsyncSession, router_id: int) -> Dict[str, Any]:
        info = router_info(await get_router_by_id(db, router_id))
        try:
            identity = await asyncio.to_thread(self._identity_sync, info)
        except DeviceError as e:
            logger.error(f"Connection test failed for {info['host']}: {e}")
            return {"is_connected": False, "identity": None}
        logger.info(f"Connection to {info['host']} (Identity: {identity}) successful.")
        return {"is_connected": True, "identity": identity or "Unknown"}

    def _profiles_sync(self, info: dict) -> List[str]:
        with self.gateway_factory(info) as api:
            return api.list_profiles()

    async def list_profiles(self, db: AsyncSession, router_id: int) -> List[str]:
        info = router_info(await get_router_by_id(db, router_id))
        try:
            return await asyncio.to_thread(self._profiles_sync, info)
        except DeviceError as e:
            logger.error(f"Error fetching profiles from {info['host']}: {e}")
            return []

    # -- subscribers ---------------------------------------------------------

    async def list_subscribers(self, router_id: int) -> List[Dict[str, Any]]:
        return await self.usage_tracking.list_subscribers(router_id)

    def _set_comment_sync(self, info: dict, secret_name: str, comment: str) -> bool:
        with self.gateway_factory(info) as api:
            return api.set_secret_field(secret_name, "comment", comment)

    async def set_comment(self, db: AsyncSession, router_id: int, secret_name: str, comment: str) -> Dict[str, Any]:
        info = router_info(await get_router_by_id(db, router_id))
        updated = await asyncio.to_thread(self._set_comment_sync, info, secret_name, comment)
        if not updated:
            raise NotFound(f"PPP secret {secret_name} not found on {info['name']}")

        row = await self._get_row(db, router_id, secret_name)
        if row is not None:
            row.comment = comment
            await db.commit()

        await self.cache.invalidate(router_id)
        logger.info(f"Updated comment for PPP user {secret_name} on {info['name']}")
        return {"success": True, "name": secret_name, "comment": comment}

    def _add_secret_sync(self, info: dict, data: Dict[str, Any]):
        with self.gateway_factory(info) as api:
            api.add_secret(
                name=data["name"],
                password=data["password"],
                profile=data["profile"],
                service=data.get("service") or "pppoe",
                comment=data.get("comment") or "",
            )

    async def create_subscriber(self, db: AsyncSession, router_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        info = router_info(await get_router_by_id(db, router_id))
        await asyncio.to_thread(self._add_secret_sync, info, data)
        await self.cache.invalidate(router_id)
        logger.info(f"Created PPP secret {data['name']} on {info['name']}")

        try:
            await self.usage_tracking.sync_now(router_id)
        except DeviceError as e:
            logger.warning(f"Post-create sync failed for router {router_id}: {e}")

        return {"success": True, "name": data["name"], "profile": data["profile"]}

    async def set_coordinates(
        self,
        db: AsyncSession,
        router_id: int,
        secret_name: str,
        latitude: Optional[float],
        longitude: Optional[float],
    ) -> Dict[str, Any]:
        await get_router_by_id(db, router_id)
        row = await self._get_row(db, router_id, secret_name)
        if row is None:
            raise NotFound(f"PPP user {secret_name} has not been synced for router {router_id}")
        row.latitude = latitude
        row.longitude = longitude
        await db.commit()
        await self.cache.invalidate(router_id)
        return {"name": secret_name, "latitude": latitude, "longitude": longitude}

    @staticmethod
    async def _get_row(db: AsyncSession, router_id: int, secret_name: str) -> Optional[PPPUser]:
        result = await db.execute(
            select(PPPUser).where(PPPUser.router_id == router_id, PPPUser.secret_name == secret_name)
        )
        return result.scalar_one_or_none()
