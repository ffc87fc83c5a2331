"""Shared test fixtures for the PPPoE usage monitor tests.

Provides an in-memory SQLite database, a scriptable fake RouterOS device
standing in for the MikroTik API client, a controllable monotonic clock and
an async HTTP client bound to the FastAPI app.
"""

import dataclasses
import itertools
import time
from typing import Dict, List, Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from pppmon.core.exceptions import DeviceProtocolError, DeviceUnreachable
from pppmon.db.database import Base, build_engine
from pppmon.db.models import Router
from pppmon.services.mikrotik_api import InterfaceCounters, PPPActive, PPPSecret, RouterSnapshot
from pppmon.services.telegram import SyncReport
from pppmon.services.usage_tracking import UsageTrackingService

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeRouterOS:
    """In-memory router exposing the subset of MikroTikAPI the services use.

    Traffic is given from the subscriber's point of view; the interface
    counters are stored the way the router reports them (rx/tx swapped).
    """

    def __init__(self, identity: str = "MikroTik"):
        self.identity = identity
        self.secrets: Dict[str, PPPSecret] = {}
        self.active: Dict[str, PPPActive] = {}
        self.interfaces: Dict[str, InterfaceCounters] = {}
        self.profiles: List[str] = ["default"]
        self.unreachable = False
        self.fail_set = False
        self.fail_kick = False
        self.fetch_delay = 0.0
        self.connections = 0
        self.disconnects = 0
        self.set_calls: List[tuple] = []
        self._ids = itertools.count(1)

    # -- test scripting ------------------------------------------------------

    def add_secret_entry(self, name: str, profile: str = "default", comment: Optional[str] = None):
        self.secrets[name] = PPPSecret(id=f"*{next(self._ids):X}", name=name, service="pppoe",
                                       profile=profile, comment=comment)
        if profile not in self.profiles:
            self.profiles.append(profile)

    def remove_secret_entry(self, name: str):
        self.secrets.pop(name, None)

    def login(self, name: str, tx: int = 0, rx: int = 0):
        self.active[name] = PPPActive(id=f"*{next(self._ids):X}", name=name, service="pppoe",
                                      caller_id="AA:BB:CC:DD:EE:FF", address="10.10.0.2", uptime="1m")
        self.traffic(name, tx, rx)

    def traffic(self, name: str, tx: int, rx: int):
        self.interfaces[name] = InterfaceCounters(name=f"<pppoe-{name}>", rx_byte=tx, tx_byte=rx,
                                                  rx_bps=tx // 10, tx_bps=rx // 10, running=True)

    def logout(self, name: str):
        self.active.pop(name, None)
        self.interfaces.pop(name, None)

    # -- MikroTikAPI surface -------------------------------------------------

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()

    def connect(self):
        if self.unreachable:
            raise DeviceUnreachable("Connection refused")
        self.connections += 1
        return self

    def disconnect(self):
        self.disconnects += 1

    def fetch_snapshot(self, with_identity: bool = False) -> RouterSnapshot:
        if self.fetch_delay:
            time.sleep(self.fetch_delay)
        return RouterSnapshot(
            secrets=[dataclasses.replace(s) for s in self.secrets.values()],
            active=list(self.active.values()),
            interfaces=list(self.interfaces.values()),
            identity=self.identity if with_identity else None,
        )

    def get_identity(self) -> Optional[str]:
        return self.identity

    def list_profiles(self) -> List[str]:
        return list(self.profiles)

    def find_secret(self, name: str) -> Optional[PPPSecret]:
        secret = self.secrets.get(name)
        return dataclasses.replace(secret) if secret else None

    def find_active_sessions(self, name: str) -> List[PPPActive]:
        if self.fail_kick:
            raise DeviceUnreachable("Connection lost")
        return [s for s in self.active.values() if s.name == name]

    def set_secret_field(self, name: str, field_name: str, value: str) -> bool:
        if self.fail_set:
            raise DeviceProtocolError("failure: device busy")
        secret = self.secrets.get(name)
        if secret is None:
            return False
        setattr(secret, field_name, value)
        self.set_calls.append((name, field_name, value))
        return True

    def remove_active_session(self, session_id: str) -> bool:
        for name, session in list(self.active.items()):
            if session.id == session_id:
                self.logout(name)
                return True
        return False

    def add_secret(self, name: str, password: str, profile: str, service: str = "pppoe", comment: str = ""):
        if name in self.secrets:
            raise DeviceProtocolError("failure: secret with the same name already exists")
        self.add_secret_entry(name, profile=profile, comment=comment or None)


class RecordingNotifier:
    def __init__(self):
        self.reports: List[SyncReport] = []

    async def send_sync_report(self, token, chat_id, report: SyncReport) -> bool:
        self.reports.append(report)
        return True


@pytest.fixture()
async def session_factory():
    """Async session factory over a fresh in-memory database.

    StaticPool keeps a single connection so every session sees the same
    in-memory database.
    """
    engine = build_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest.fixture()
def devices() -> Dict[str, FakeRouterOS]:
    """Fake routers keyed by host."""
    return {"10.0.0.1": FakeRouterOS(identity="Core-RTR")}


@pytest.fixture()
def device(devices) -> FakeRouterOS:
    return devices["10.0.0.1"]


@pytest.fixture()
def gateway_factory(devices):
    def factory(info: dict) -> FakeRouterOS:
        return devices[info["host"]]
    return factory


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def usage_tracking(session_factory, gateway_factory, clock, notifier) -> UsageTrackingService:
    return UsageTrackingService(
        session_factory=session_factory,
        gateway_factory=gateway_factory,
        notifier=notifier,
        clock=clock,
        live_fetch_timeout=0.5,
    )


async def create_router(session_factory, **overrides) -> int:
    """Insert a router row and return its id."""
    values = {
        "name": "Main",
        "host": "10.0.0.1",
        "port": 8728,
        "username": "admin",
        "password": "secret",
        "is_active": True,
    }
    values.update(overrides)
    async with session_factory() as db:
        router = Router(**values)
        db.add(router)
        await db.commit()
        return router.id


@pytest.fixture()
async def router_id(session_factory) -> int:
    return await create_router(session_factory, isolate_profile="isolir")


@pytest.fixture()
async def client(session_factory, gateway_factory, clock, notifier):
    """Async HTTP client for the app with services and DB bound to the fakes."""
    from main import app, init_services
    from pppmon.db.database import get_db

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    init_services(
        app,
        session_factory=session_factory,
        gateway_factory=gateway_factory,
        notifier=notifier,
        clock=clock,
        live_fetch_timeout=0.5,
    )
    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.clear()
