from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from pppmon.db.models import Router
from pppmon.core.exceptions import NotFound
from pppmon.services.mikrotik_api import MikroTikAPI


async def get_router_by_id(db: AsyncSession, router_id: int) -> Router:
    res = await db.execute(select(Router).where(Router.id == router_id))
    router = res.scalar_one_or_none()
    if router is None:
        raise NotFound(f"Router {router_id} not found")
    return router


def router_info(router: Router) -> dict:
    """Plain-dict copy of the connection fields, safe to hand to worker threads."""
    return {
        "id": router.id,
        "name": router.name or router.host,
        "host": router.host,
        "port": router.port,
        "username": router.username,
        "password": router.password,
    }


def connect_to_router(info: dict, connect_timeout: float = None, timeout: float = None) -> MikroTikAPI:
    """
    Build an unconnected MikroTik API client for a router.

    Callers use it as a context manager so the session is closed on every path:

        with connect_to_router(info) as api:
            api.list_secrets()
    """
    return MikroTikAPI(
        info["host"],
        info["username"],
        info["password"],
        info["port"],
        timeout=timeout,
        connect_timeout=connect_timeout
    )
