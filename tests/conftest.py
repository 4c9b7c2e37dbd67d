import random
from typing import Any, Dict, List, Optional

import pytest

from fleetsim.charger import Charger
from fleetsim.fleet import FleetCoordinator
from fleetsim.ledger import LedgerError, SessionExistsError, SessionLedger


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemoryLedger(SessionLedger):
    """Ledger double that records every call and can be told to fail."""

    def __init__(self):
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.stops: List[Dict[str, Any]] = []
        self.start_error: Optional[Exception] = None
        self.stop_error: Optional[Exception] = None

    async def reserve_session_start(self, session_id, charger_id, start_ts):
        if self.start_error is not None:
            raise self.start_error
        if session_id in self.sessions:
            raise SessionExistsError(session_id)
        self.sessions[session_id] = {
            "id": session_id,
            "charger_id": charger_id,
            "start_ts": start_ts,
            "status": "STARTED",
        }

    async def fetch_session_start_time(self, session_id):
        row = self.sessions.get(session_id)
        return row["start_ts"] if row else None

    async def record_session_stop(
        self, session_id, stop_ts, energy_kwh, stop_reason,
        duration_seconds, duration_minutes, duration_human, bill_amount,
    ):
        if self.stop_error is not None:
            raise self.stop_error
        stop = {
            "id": session_id,
            "stop_ts": stop_ts,
            "energy_kwh": energy_kwh,
            "stop_reason": stop_reason,
            "duration_seconds": duration_seconds,
            "duration_minutes": duration_minutes,
            "duration_human": duration_human,
            "bill_amount": bill_amount,
        }
        self.stops.append(stop)
        self.sessions[session_id].update(stop, status="STOPPED")

    async def get_session(self, session_id):
        return self.sessions.get(session_id)

    async def list_sessions(self):
        return list(self.sessions.values())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return MemoryLedger()


@pytest.fixture
def charger(ledger, clock):
    return Charger("C1", ledger, interval=1, clock=clock, rng=random.Random(1))


@pytest.fixture
def fleet(ledger, clock):
    return FleetCoordinator(
        ledger,
        grid_limit_kw=10,
        heartbeat_timeout=30,
        telemetry_interval=1,
        run_timers=False,
        clock=clock,
        rng=random.Random(7),
    )


@pytest.fixture
def ledger_down():
    return LedgerError("ledger unavailable")
