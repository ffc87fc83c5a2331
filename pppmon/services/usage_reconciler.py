"""
PPP Usage Reconciliation
========================

Pure computation over one router's live snapshot and the counters stored for
its subscribers on the previous cycle. Nothing here touches the database or
the network; the sync job feeds it and persists what it returns.

Accumulation rules (per subscriber):
  - online, counter went down since last cycle  -> session restarted, fold the
    previous session's bytes into the accumulated total
  - online -> offline                            -> fold the last session once,
    record it as a history entry, emit LOGOUT
  - offline -> online (or first time seen)       -> emit LOGIN
  - steady online polling never accumulates, the live counter is just adopted

Stored rows whose secret no longer exists on the router are returned for
deletion, along with any active session still running under such a name.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from pppmon.services.mikrotik_api import PPPActive, RouterSnapshot


@dataclass
class StoredCounters:
    current_tx: int = 0
    current_rx: int = 0
    accumulated_tx: int = 0
    accumulated_rx: int = 0
    is_online: bool = False


@dataclass
class ReconciledUser:
    name: str
    secret_id: str = ""
    profile: str = "default"
    service: str = "any"
    comment: Optional[str] = None
    is_online: bool = False
    address: Optional[str] = None
    uptime: Optional[str] = None
    caller_id: Optional[str] = None
    current_tx: int = 0
    current_rx: int = 0
    accumulated_tx: int = 0
    accumulated_rx: int = 0
    tx_rate: int = 0
    rx_rate: int = 0
    last_seen_online: Optional[datetime] = None

    @property
    def total_tx(self) -> int:
        return self.accumulated_tx + self.current_tx

    @property
    def total_rx(self) -> int:
        return self.accumulated_rx + self.current_rx


@dataclass
class SessionRecord:
    name: str
    tx_bytes: int
    rx_bytes: int


@dataclass
class ReconcileResult:
    users: List[ReconciledUser] = field(default_factory=list)
    logins: Set[str] = field(default_factory=set)
    logouts: Set[str] = field(default_factory=set)
    deleted: Set[str] = field(default_factory=set)
    history: List[SessionRecord] = field(default_factory=list)
    orphan_sessions: List[PPPActive] = field(default_factory=list)

    @property
    def online_count(self) -> int:
        return sum(1 for u in self.users if u.is_online)

    @property
    def offline_names(self) -> List[str]:
        return sorted(u.name for u in self.users if not u.is_online)


def reconcile(
    snapshot: RouterSnapshot,
    stored: Dict[str, StoredCounters],
    observed_at: Optional[datetime] = None,
) -> ReconcileResult:
    result = ReconcileResult()
    active_by_name: Dict[str, PPPActive] = {}
    for session in snapshot.active:
        active_by_name.setdefault(session.name, session)
    traffic = snapshot.traffic_by_name()

    seen: Set[str] = set()
    for secret in snapshot.secrets:
        if secret.name in seen:
            continue
        seen.add(secret.name)

        session = active_by_name.get(secret.name)
        is_online = session is not None
        prev = stored.get(secret.name)
        live = traffic.get(secret.name)

        user = ReconciledUser(
            name=secret.name,
            secret_id=secret.id,
            profile=secret.profile,
            service=secret.service,
            comment=secret.comment,
            is_online=is_online,
            address=session.address if session else None,
            uptime=session.uptime if session else None,
            caller_id=session.caller_id if session else None,
            accumulated_tx=prev.accumulated_tx if prev else 0,
            accumulated_rx=prev.accumulated_rx if prev else 0,
            last_seen_online=observed_at if is_online else None,
        )

        if is_online:
            if live is None:
                # Session up but its interface is not listed yet; keep what we had
                # rather than mistake the gap for a counter reset.
                if prev and prev.is_online:
                    user.current_tx, user.current_rx = prev.current_tx, prev.current_rx
            else:
                user.current_tx, user.current_rx = live.tx_bytes, live.rx_bytes
                user.tx_rate, user.rx_rate = live.tx_rate, live.rx_rate
                if prev and _counter_reset(prev, user.current_tx, user.current_rx):
                    user.accumulated_tx += prev.current_tx
                    user.accumulated_rx += prev.current_rx

            if prev is None or not prev.is_online:
                result.logins.add(secret.name)

        elif prev is not None and prev.is_online:
            user.accumulated_tx += prev.current_tx
            user.accumulated_rx += prev.current_rx
            result.logouts.add(secret.name)
            if prev.current_tx > 0 or prev.current_rx > 0:
                result.history.append(SessionRecord(secret.name, prev.current_tx, prev.current_rx))

        result.users.append(user)

    result.deleted = set(stored) - seen
    # Sessions we never stored (RADIUS users, partial listings) are left alone
    result.orphan_sessions = [s for s in snapshot.active if s.name in result.deleted]
    return result


def _counter_reset(prev: StoredCounters, current_tx: int, current_rx: int) -> bool:
    tx_reset = prev.current_tx > 0 and current_tx < prev.current_tx
    rx_reset = prev.current_rx > 0 and current_rx < prev.current_rx
    return tx_reset or rx_reset
