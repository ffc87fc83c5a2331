"""
PPP Usage Tracking
==================

Background sync of every active router:
- Scheduler tick every SYNC_INTERVAL_SECONDS (30s)
- One cycle at a time; a cycle older than SYNC_STUCK_TIMEOUT_SECONDS (120s)
  is considered wedged and superseded
- Per router: fetch snapshot -> reconcile -> one DB transaction -> cache ->
  Telegram report

Also serves the read path (cached subscriber list with a bounded live
fallback) and the per-subscriber usage queries.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, update
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import asyncio
import logging
import time

from pppmon.config import settings
from pppmon.core.cache import RouterDataCache
from pppmon.core.exceptions import DeviceError
from pppmon.core.locks import KeyedLock
from pppmon.db.database import AsyncSessionLocal
from pppmon.db.models import Router, PPPUser, UsageHistory
from pppmon.services.mikrotik_api import MikroTikAPI, RouterSnapshot
from pppmon.services.router_helpers import connect_to_router, get_router_by_id, router_info
from pppmon.services.telegram import SyncReport, TelegramNotifier
from pppmon.services.usage_reconciler import ReconcileResult, ReconciledUser, StoredCounters, reconcile

logger = logging.getLogger(__name__)

RECENT_HISTORY_LIMIT = 5


def serialize_ppp_user(user: ReconciledUser, row: Optional[PPPUser] = None) -> Dict[str, Any]:
    """Convert a reconciled subscriber (plus its stored row, if any) to the API shape"""
    return {
        "id": user.secret_id,
        "name": user.name,
        "service": user.service,
        "profile": user.profile,
        "comment": user.comment,
        "is_online": user.is_online,
        "address": user.address,
        "uptime": user.uptime,
        "caller_id": user.caller_id,
        "current_tx_bytes": user.current_tx,
        "current_rx_bytes": user.current_rx,
        "current_tx_rate": user.tx_rate,
        "current_rx_rate": user.rx_rate,
        "stored_tx_bytes": user.accumulated_tx,
        "stored_rx_bytes": user.accumulated_rx,
        "total_tx_bytes": user.total_tx,
        "total_rx_bytes": user.total_rx,
        "original_profile": row.original_profile if row else None,
        "latitude": row.latitude if row else None,
        "longitude": row.longitude if row else None,
    }


def _stored_counters(rows: List[PPPUser]) -> Dict[str, StoredCounters]:
    return {
        row.secret_name: StoredCounters(
            current_tx=row.current_tx_bytes or 0,
            current_rx=row.current_rx_bytes or 0,
            accumulated_tx=row.accumulated_tx_bytes or 0,
            accumulated_rx=row.accumulated_rx_bytes or 0,
            is_online=bool(row.is_online),
        )
        for row in rows
    }


class UsageTrackingService:
    def __init__(
        self,
        session_factory=AsyncSessionLocal,
        gateway_factory: Callable[[dict], MikroTikAPI] = connect_to_router,
        cache: RouterDataCache = None,
        notifier: TelegramNotifier = None,
        clock: Callable[[], float] = time.monotonic,
        interval: float = None,
        stuck_timeout: float = None,
        execution_timeout: float = None,
        live_fetch_timeout: float = None,
    ):
        self.session_factory = session_factory
        self.gateway_factory = gateway_factory
        self.clock = clock
        self.cache = cache or RouterDataCache(clock=clock)
        self.notifier = notifier or TelegramNotifier()
        self.interval = settings.SYNC_INTERVAL_SECONDS if interval is None else interval
        self.stuck_timeout = settings.SYNC_STUCK_TIMEOUT_SECONDS if stuck_timeout is None else stuck_timeout
        self.execution_timeout = (
            settings.SYNC_EXECUTION_TIMEOUT_SECONDS if execution_timeout is None else execution_timeout
        )
        self.live_fetch_timeout = (
            settings.LIVE_FETCH_TIMEOUT_SECONDS if live_fetch_timeout is None else live_fetch_timeout
        )

        self.is_syncing = False
        self.last_sync_start = 0.0
        self._generation = 0
        self._cycle_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._router_locks = KeyedLock()

    # =========================================================================
    # SCHEDULER
    # =========================================================================

    def tick(self) -> Optional[asyncio.Task]:
        """Start a sync cycle unless one is already running. Returns the cycle task."""
        now = self.clock()
        if self.is_syncing:
            elapsed = now - self.last_sync_start
            if elapsed > self.stuck_timeout:
                logger.critical(f"[SCHEDULER] Sync process stuck for {elapsed:.0f}s. Forcing reset.")
                self.is_syncing = False
            else:
                logger.warning("[SCHEDULER] Sync skipped: previous sync cycle still running")
                return None

        self.is_syncing = True
        self.last_sync_start = now
        self._generation += 1
        self._cycle_task = asyncio.create_task(self._run_cycle(self._generation))
        return self._cycle_task

    async def _run_cycle(self, generation: int):
        try:
            await asyncio.wait_for(self.sync_all_routers(), timeout=self.execution_timeout)
        except asyncio.TimeoutError:
            logger.error(f"[SCHEDULER] Sync cycle exceeded {self.execution_timeout}s and was cancelled")
        except Exception as e:
            logger.error(f"[SCHEDULER] Error during scheduled sync: {e}")
        finally:
            # A superseded cycle must not release the flag of the one that replaced it
            if generation == self._generation:
                self.is_syncing = False

    async def run_forever(self):
        logger.info(f"[SCHEDULER] Usage sync running every {self.interval}s")
        while True:
            self.tick()
            await asyncio.sleep(self.interval)

    def start(self):
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self.run_forever())

    async def stop(self):
        for task in (self._loop_task, self._cycle_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._cycle_task = None

    # =========================================================================
    # SYNC
    # =========================================================================

    @staticmethod
    def _router_payload(router: Router) -> dict:
        info = router_info(router)
        info["telegram_bot_token"] = router.telegram_bot_token
        info["telegram_chat_id"] = router.telegram_chat_id
        return info

    async def sync_all_routers(self):
        async with self.session_factory() as db:
            result = await db.execute(select(Router).where(Router.is_active.is_(True)).order_by(Router.id))
            routers = [self._router_payload(r) for r in result.scalars().all()]

        if not routers:
            logger.debug("[SYNC] No active routers to sync")
            return

        # Sequential on purpose: one DB transaction at a time
        for info in routers:
            try:
                await self.sync_router(info)
            except Exception as e:
                logger.error(f"[SYNC] Error syncing router {info['name']} ({info['host']}): {e}")
                continue

    def _fetch_snapshot_sync(self, info: dict, with_identity: bool = False) -> RouterSnapshot:
        with self.gateway_factory(info) as api:
            return api.fetch_snapshot(with_identity=with_identity)

    def _remove_sessions_sync(self, info: dict, session_ids: List[str]) -> int:
        removed = 0
        with self.gateway_factory(info) as api:
            for session_id in session_ids:
                if api.remove_active_session(session_id):
                    removed += 1
        return removed

    async def sync_router(self, info: dict, with_identity: bool = False) -> Dict[str, Any]:
        router_id = info["id"]
        async with self._router_locks.hold(router_id):
            start = self.clock()
            snapshot = await asyncio.to_thread(self._fetch_snapshot_sync, info, with_identity)

            now = datetime.utcnow()
            async with self.session_factory() as db:
                async with db.begin():
                    rows = (await db.execute(
                        select(PPPUser).where(PPPUser.router_id == router_id)
                    )).scalars().all()
                    rows_by_name = {row.secret_name: row for row in rows}
                    result = reconcile(snapshot, _stored_counters(rows), observed_at=now)
                    await self._persist(db, router_id, rows_by_name, result, now, snapshot.identity)

            users = [serialize_ppp_user(u, rows_by_name.get(u.name)) for u in result.users]
            await self.cache.set(router_id, users)

            if result.orphan_sessions:
                names = sorted({s.name for s in result.orphan_sessions})
                logger.info(f"[SYNC] Disconnecting sessions of removed secrets on {info['name']}: {names}")
                try:
                    await asyncio.to_thread(
                        self._remove_sessions_sync, info, [s.id for s in result.orphan_sessions]
                    )
                except DeviceError as e:
                    logger.warning(f"[SYNC] Could not disconnect removed-secret sessions on {info['name']}: {e}")

            logger.info(
                f"[SYNC] {info['name']}: {len(result.users)} secrets, {result.online_count} online, "
                f"{len(result.logins)} login, {len(result.logouts)} logout, {len(result.deleted)} removed "
                f"in {self.clock() - start:.2f}s"
            )

        await self._send_report(info, result)
        return {
            "router_id": router_id,
            "total_secrets": len(result.users),
            "total_active": result.online_count,
            "logins": sorted(result.logins),
            "logouts": sorted(result.logouts),
            "deleted": sorted(result.deleted),
            "last_sync": now.isoformat(),
        }

    async def _persist(
        self,
        db: AsyncSession,
        router_id: int,
        rows_by_name: Dict[str, PPPUser],
        result: ReconcileResult,
        now: datetime,
        identity: Optional[str] = None,
    ):
        if result.deleted:
            logger.info(f"[SYNC] Removing {len(result.deleted)} defunct secrets for router {router_id}")
            await db.execute(
                delete(PPPUser)
                .where(PPPUser.router_id == router_id, PPPUser.secret_name.in_(result.deleted))
                .execution_options(synchronize_session=False)
            )
            for name in result.deleted:
                rows_by_name.pop(name, None)

        for user in result.users:
            row = rows_by_name.get(user.name)
            if row is None:
                row = PPPUser(
                    router_id=router_id,
                    secret_name=user.name,
                    original_profile=None,
                    latitude=None,
                    longitude=None,
                    accumulated_tx_bytes=0,
                    accumulated_rx_bytes=0,
                )
                db.add(row)
                rows_by_name[user.name] = row
            row.profile = user.profile
            row.comment = user.comment
            # Accumulated totals never move backwards
            row.accumulated_tx_bytes = max(row.accumulated_tx_bytes or 0, user.accumulated_tx)
            row.accumulated_rx_bytes = max(row.accumulated_rx_bytes or 0, user.accumulated_rx)
            row.current_tx_bytes = user.current_tx
            row.current_rx_bytes = user.current_rx
            row.is_online = user.is_online
            if user.is_online:
                row.last_seen_online = now

        await db.flush()

        for record in result.history:
            row = rows_by_name.get(record.name)
            db.add(UsageHistory(
                ppp_user_id=row.id if row else None,
                router_id=router_id,
                secret_name=record.name,
                tx_bytes=record.tx_bytes,
                rx_bytes=record.rx_bytes,
                session_end=now,
            ))
            logger.info(f"[HISTORY] Session total recorded for {record.name}")

        values = {"last_sync": now}
        if identity:
            values["name"] = identity
        await db.execute(update(Router).where(Router.id == router_id).values(**values))

    async def _send_report(self, info: dict, result: ReconcileResult):
        report = SyncReport(
            router_name=info["name"],
            logins=sorted(result.logins),
            logouts=sorted(result.logouts),
            total_secrets=len(result.users),
            total_active=result.online_count,
            disconnected=result.offline_names,
        )
        try:
            await self.notifier.send_sync_report(info.get("telegram_bot_token"), info.get("telegram_chat_id"), report)
        except Exception as e:
            logger.error(f"[TELEGRAM] Error sending report for {info['name']}: {e}")

    async def sync_now(self, router_id: int) -> Dict[str, Any]:
        """Reconcile one router immediately and refresh its name from the system identity."""
        async with self.session_factory() as db:
            router = await get_router_by_id(db, router_id)
            info = self._router_payload(router)
        await self.cache.invalidate(router_id)
        return await self.sync_router(info, with_identity=True)

    # =========================================================================
    # READ PATH
    # =========================================================================

    async def list_subscribers(self, router_id: int) -> List[Dict[str, Any]]:
        cached = await self.cache.get(router_id)
        if cached is not None:
            return cached

        logger.info(f"[CACHE] Cache miss for router {router_id}, fetching from MikroTik...")
        async with self.session_factory() as db:
            router = await get_router_by_id(db, router_id)
            info = router_info(router)
            rows = (await db.execute(select(PPPUser).where(PPPUser.router_id == router_id))).scalars().all()

        try:
            snapshot = await asyncio.wait_for(
                asyncio.to_thread(self._fetch_snapshot_sync, info),
                timeout=self.live_fetch_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"[CACHE] Live fetch for router {router_id} timed out after {self.live_fetch_timeout}s")
            return []
        except DeviceError as e:
            logger.error(f"[CACHE] Live fetch failed for router {router_id}: {e}")
            return []

        rows_by_name = {row.secret_name: row for row in rows}
        result = reconcile(snapshot, _stored_counters(rows), observed_at=datetime.utcnow())
        users = [serialize_ppp_user(u, rows_by_name.get(u.name)) for u in result.users]
        await self.cache.set(router_id, users)
        return users

    async def get_usage_summary(self, router_id: int, secret_name: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as db:
            row = (await db.execute(
                select(PPPUser).where(PPPUser.router_id == router_id, PPPUser.secret_name == secret_name)
            )).scalar_one_or_none()
        if row is None:
            return None

        current_tx = row.current_tx_bytes or 0
        current_rx = row.current_rx_bytes or 0
        return {
            "secret_name": row.secret_name,
            "is_online": bool(row.is_online),
            "current_tx_bytes": current_tx,
            "current_rx_bytes": current_rx,
            "total_tx_bytes": (row.accumulated_tx_bytes or 0) + current_tx,
            "total_rx_bytes": (row.accumulated_rx_bytes or 0) + current_rx,
            "last_seen_online": row.last_seen_online.isoformat() if row.last_seen_online else None,
        }

    async def get_router_usage(self, router_id: int) -> List[Dict[str, Any]]:
        async with self.session_factory() as db:
            await get_router_by_id(db, router_id)
            rows = (await db.execute(
                select(PPPUser).where(PPPUser.router_id == router_id).order_by(PPPUser.secret_name)
            )).scalars().all()

            history_rows = (await db.execute(
                select(UsageHistory)
                .where(UsageHistory.router_id == router_id)
                .order_by(UsageHistory.session_end.desc(), UsageHistory.id.desc())
            )).scalars().all()

        recent: Dict[str, List[UsageHistory]] = {}
        for h in history_rows:
            sessions = recent.setdefault(h.secret_name, [])
            if len(sessions) < RECENT_HISTORY_LIMIT:
                sessions.append(h)

        usage = []
        for row in rows:
            history = recent.get(row.secret_name, [])
            current_tx = row.current_tx_bytes or 0
            current_rx = row.current_rx_bytes or 0
            usage.append({
                "id": row.id,
                "secret_name": row.secret_name,
                "is_online": bool(row.is_online),
                "current_tx_bytes": current_tx,
                "current_rx_bytes": current_rx,
                "stored_tx_bytes": row.accumulated_tx_bytes or 0,
                "stored_rx_bytes": row.accumulated_rx_bytes or 0,
                "total_tx_bytes": (row.accumulated_tx_bytes or 0) + current_tx,
                "total_rx_bytes": (row.accumulated_rx_bytes or 0) + current_rx,
                "last_seen_online": row.last_seen_online.isoformat() if row.last_seen_online else None,
                "recent_history": [
                    {
                        "id": h.id,
                        "tx_bytes": h.tx_bytes,
                        "rx_bytes": h.rx_bytes,
                        "session_end": h.session_end.isoformat() if h.session_end else None,
                    }
                    for h in history
                ],
            })
        return usage
