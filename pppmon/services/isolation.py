"""
Isolate / restore PPP subscribers.

A subscriber is quarantined by switching its secret to the router's isolate
profile. The profile it had before is kept in ``PPPUser.original_profile``;
that column being set is what marks the subscriber as isolated by us.

Ordering keeps the local record safe under partial failure:
  isolate: save original_profile -> switch device profile (undo the save if
           the switch fails) -> kick active session
  restore: switch device profile -> clear original_profile -> kick session
A restore that fails after the device switch leaves original_profile set, so
the next toggle simply restores again.
"""

from sqlalchemy import select
from typing import Any, Callable, Dict, Optional
import asyncio
import logging

from pppmon.config import settings
from pppmon.core.cache import RouterDataCache
from pppmon.core.exceptions import ConfigurationError, DeviceError, NotFound
from pppmon.core.locks import KeyedLock
from pppmon.db.database import AsyncSessionLocal
from pppmon.db.models import PPPUser
from pppmon.services.mikrotik_api import MikroTikAPI, PPPSecret
from pppmon.services.router_helpers import connect_to_router, get_router_by_id, router_info

logger = logging.getLogger(__name__)


class IsolationController:
    def __init__(
        self,
        cache: RouterDataCache,
        session_factory=AsyncSessionLocal,
        gateway_factory: Callable[[dict], MikroTikAPI] = connect_to_router,
        default_profile: str = None,
    ):
        self.cache = cache
        self.session_factory = session_factory
        self.gateway_factory = gateway_factory
        self.default_profile = default_profile or settings.DEFAULT_RESTORE_PROFILE
        self._locks = KeyedLock()

    async def toggle_isolation(
        self, router_id: int, secret_name: str, target_profile: Optional[str] = None
    ) -> Dict[str, Any]:
        async with self._locks.hold((router_id, secret_name)):
            try:
                return await self._toggle(router_id, secret_name, target_profile)
            finally:
                await self.cache.invalidate(router_id)

    async def _toggle(self, router_id: int, secret_name: str, target_profile: Optional[str]) -> Dict[str, Any]:
        async with self.session_factory() as db:
            router = await get_router_by_id(db, router_id)
            if not router.isolate_profile:
                raise ConfigurationError(f"Router {router.name}: isolate profile not configured")
            info = router_info(router)
            isolate_profile = router.isolate_profile
            row = await self._get_row(db, router_id, secret_name)
            original_profile = row.original_profile if row else None

        api = self.gateway_factory(info)
        await asyncio.to_thread(api.connect)
        try:
            secret = await asyncio.to_thread(api.find_secret, secret_name)
            if secret is None:
                raise NotFound(f"PPP secret {secret_name} not found on {info['name']}")

            if original_profile is not None or secret.profile == isolate_profile:
                action = "restore"
                new_profile = target_profile or original_profile or self.default_profile
                logger.info(f"[UNISOLATE] Restoring {secret_name} on {info['name']} to {new_profile}")
                await self._set_profile(api, secret_name, new_profile)
                await self._save_original_profile(router_id, secret, None)
            else:
                action = "isolate"
                new_profile = isolate_profile
                logger.info(f"[ISOLATE] Switching {secret_name} on {info['name']} from {secret.profile} to {new_profile}")
                await self._save_original_profile(router_id, secret, secret.profile)
                try:
                    await self._set_profile(api, secret_name, new_profile)
                except Exception:
                    await self._rollback_original_profile(router_id, secret)
                    raise

            disconnected = await asyncio.to_thread(self._kick_sessions, api, secret_name)
        finally:
            await asyncio.to_thread(api.disconnect)

        return {
            "success": True,
            "action": action,
            "profile": new_profile,
            "disconnected_sessions": disconnected,
            "message": f"User {'ISOLATED' if action == 'isolate' else 'RESTORED'} successfully",
        }

    @staticmethod
    async def _get_row(db, router_id: int, secret_name: str) -> Optional[PPPUser]:
        result = await db.execute(
            select(PPPUser).where(PPPUser.router_id == router_id, PPPUser.secret_name == secret_name)
        )
        return result.scalar_one_or_none()

    async def _set_profile(self, api: MikroTikAPI, secret_name: str, profile: str):
        if not await asyncio.to_thread(api.set_secret_field, secret_name, "profile", profile):
            raise NotFound(f"PPP secret {secret_name} disappeared before its profile could be set")

    async def _save_original_profile(self, router_id: int, secret: PPPSecret, value: Optional[str]):
        async with self.session_factory() as db:
            async with db.begin():
                row = await self._get_row(db, router_id, secret.name)
                if row is None:
                    # Not synced yet; create the row so the restore target survives
                    db.add(PPPUser(
                        router_id=router_id,
                        secret_name=secret.name,
                        profile=secret.profile,
                        comment=secret.comment,
                        original_profile=value,
                    ))
                else:
                    row.original_profile = value

    async def _rollback_original_profile(self, router_id: int, secret: PPPSecret):
        try:
            await self._save_original_profile(router_id, secret, None)
        except Exception as e:
            logger.critical(
                f"[ISOLATE] Could not undo original_profile for {secret.name} after a failed isolate: {e}"
            )

    def _kick_sessions(self, api: MikroTikAPI, secret_name: str) -> int:
        """Drop live sessions so the subscriber reconnects under the new profile."""
        removed = 0
        try:
            for session in api.find_active_sessions(secret_name):
                if api.remove_active_session(session.id):
                    removed += 1
                    logger.info(f"[KILL] Removed active connection for {secret_name}")
        except DeviceError as e:
            logger.warning(f"[KILL] Failed to kill active connection for {secret_name}: {e}")
        return removed
