import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from .config import (
    IDLE_CURRENT_THRESHOLD_A,
    IDLE_POWER_THRESHOLD_KW,
    IDLE_TIMEOUT_SEC,
    RATE_PER_KWH,
    TELEMETRY_INTERVAL_SEC,
)
from .ledger import SessionExistsError, SessionLedger, session_duration
from .state_machine import (
    THROTTLE_RANGE_A,
    ChargerStatus,
    ChargingMode,
    StartError,
    StopReason,
)

Telemetry = Dict[str, Any]
TelemetryListener = Callable[[Telemetry], None]


class Charger:
    """One simulated charging station.

    Owns the station state machine, the periodic telemetry task and the
    lifetime energy meter. Session start and stop are mirrored into the
    session ledger; stops are finalized on a detached task so callers never
    wait on ledger I/O.
    """

    def __init__(
        self,
        charger_id: str,
        ledger: SessionLedger,
        interval: float = TELEMETRY_INTERVAL_SEC,
        idle_timeout: float = IDLE_TIMEOUT_SEC,
        rate_per_kwh: float = RATE_PER_KWH,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.id = charger_id
        self.ledger = ledger
        self.interval = interval
        self.idle_timeout = idle_timeout
        self.rate_per_kwh = rate_per_kwh
        self.clock = clock
        self.rng = rng or random.Random()
        self.log = logger or logging.getLogger(__name__)

        self.status = ChargerStatus.AVAILABLE
        self.meter_kwh = 0.0
        self.current_session_id: Optional[str] = None
        self.current_limit: Optional[float] = None
        self.charging_mode = ChargingMode.NORMAL
        self.last_power = 0.0
        self.last_heartbeat = clock()
        self.force_idle = False
        self.idle_since: Optional[float] = None
        self.last_fault: Optional[str] = None

        self._listeners: List[TelemetryListener] = []
        self._telemetry_task: Optional[asyncio.Task] = None
        self._finalizers: Set[asyncio.Task] = set()

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self.clock(), timezone.utc).isoformat()

    # -------- telemetry timer --------
    @property
    def telemetry_running(self) -> bool:
        return self._telemetry_task is not None

    def start_telemetry(self) -> None:
        if self._telemetry_task is not None:
            return
        self._telemetry_task = asyncio.get_running_loop().create_task(self._telemetry_loop())
        self.log.info(f"Telemetry started for charger {self.id}")

    def stop_telemetry(self) -> None:
        if self._telemetry_task is None:
            return
        self._telemetry_task.cancel()
        self._telemetry_task = None
        self.log.info(f"Telemetry stopped for charger {self.id}")

    async def _telemetry_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            t = self.generate_telemetry(self.interval)
            if t is not None:
                self.log.debug(f"Telemetry [{self.id}] {t}")

    def on_telemetry(self, cb: TelemetryListener) -> None:
        self._listeners.append(cb)

    def remove_listener(self, cb: TelemetryListener) -> None:
        if cb in self._listeners:
            self._listeners.remove(cb)

    # -------- simulation --------
    def _simulate_current(self) -> float:
        if self.status != ChargerStatus.CHARGING:
            return 0.0
        if self.force_idle:
            return 0.0
        if self.current_limit is not None:
            return round(self.current_limit, 2)
        low, high = ChargingMode.CURRENT_RANGES[self.charging_mode]
        return round(self.rng.uniform(low, high), 2)

    def generate_telemetry(self, interval_seconds: Optional[float] = None) -> Optional[Telemetry]:
        """Run one telemetry tick.

        Returns the emitted record, or None when the tick ended the session
        on idle timeout (the next tick reports the AVAILABLE state).
        """
        if interval_seconds is None:
            interval_seconds = self.interval

        voltage = round(self.rng.uniform(228, 240), 2)
        current = self._simulate_current()
        power_kw = round(voltage * current / 1000, 4)

        # energy (kWh) = power (kW) * hours
        delta_kwh = max(0.0, power_kw * (interval_seconds / 3600))
        self.meter_kwh = round(self.meter_kwh + delta_kwh, 6)
        self.last_power = power_kw

        now = self.clock()
        if self.status == ChargerStatus.CHARGING:
            if current < IDLE_CURRENT_THRESHOLD_A and power_kw < IDLE_POWER_THRESHOLD_KW:
                if self.idle_since is None:
                    self.idle_since = now
                elif now - self.idle_since > self.idle_timeout:
                    self.log.info(
                        f"Charger {self.id} idle for {now - self.idle_since:.0f}s; "
                        f"stopping session {self.current_session_id}"
                    )
                    self.stop_session(StopReason.IDLE_TIMEOUT)
                    return None
            else:
                self.idle_since = None
        else:
            self.idle_since = None

        telemetry = {
            "id": self.id,
            "timestamp": datetime.fromtimestamp(now, timezone.utc).isoformat(),
            "voltage": voltage,
            "current": current,
            "power_kW": power_kw,
            "energy_kWh": self.meter_kwh,
            "status": self.status,
        }
        for cb in list(self._listeners):
            try:
                cb(telemetry)
            except Exception:
                self.log.exception(f"Telemetry listener failed for charger {self.id}")

        self.last_heartbeat = now
        return telemetry

    def throttle_current(self) -> None:
        self.current_limit = round(self.rng.uniform(*THROTTLE_RANGE_A), 2)
        self.log.info(f"[{self.id}] THROTTLED due to GRID LIMIT -> currentLimit={self.current_limit}A")

    def unthrottle(self) -> None:
        if self.current_limit is not None:
            self.current_limit = None
            self.log.info(f"[{self.id}] UNTHROTTLED; restoring normal charging current range")

    def set_mode(self, mode) -> bool:
        parsed = ChargingMode.parse(mode)
        if parsed is None:
            self.log.warning(f"[{self.id}] ignoring unknown charging mode {mode!r}")
            return False
        self.charging_mode = parsed
        self.log.info(f"[{self.id}] charging mode set to {parsed}")
        return True

    def set_force_idle(self, enabled: bool) -> None:
        self.force_idle = bool(enabled)
        self.log.info(f"[{self.id}] force idle {'enabled' if self.force_idle else 'disabled'}")

    # -------- sessions --------
    async def start_session(self, session_id: str) -> Dict[str, Any]:
        if self.status == ChargerStatus.CHARGING:
            self.log.warning(f"Charger {self.id} busy; cannot start session {session_id}")
            return {"ok": False, "error": StartError.CHARGER_BUSY}

        # reserve the id first; a ledger failure other than a duplicate
        # leaves the charger untouched and propagates
        try:
            await self.ledger.reserve_session_start(session_id, self.id, self._now_iso())
        except SessionExistsError:
            self.log.warning(f"Duplicate session {session_id} for charger {self.id}")
            return {"ok": False, "error": StartError.SESSION_EXISTS}

        self.status = ChargerStatus.CHARGING
        self.current_session_id = session_id
        self.idle_since = None
        self.log.info(f"Charger {self.id} started session {session_id}")
        return {"ok": True}

    def stop_session(self, reason: str = StopReason.USER_STOP) -> Optional[str]:
        """Stop the current session and finalize it in the background.

        Returns the reason the session was closed with, or None if there was
        nothing to stop.
        """
        session_id = self.current_session_id
        if self.status == ChargerStatus.CHARGING:
            self.log.info(f"Charger {self.id} stopping session {session_id} ({reason})")
            self.status = ChargerStatus.AVAILABLE
            self.current_session_id = None
        elif self.status == ChargerStatus.FAULTY:
            if session_id:
                self.log.info(f"Charger {self.id} clearing session {session_id} while recovering from FAULTY")
            self.current_session_id = None
            self.status = ChargerStatus.AVAILABLE
            reason = StopReason.FAULT_RECOVERY
            self.log.info(f"Charger {self.id} recovered from FAULTY state")
        else:
            self.log.info(f"Charger {self.id} is {self.status}; no session to stop")
        self.idle_since = None

        if not session_id:
            return None
        task = asyncio.get_running_loop().create_task(
            self._finalize_session(session_id, self._now_iso(), self.meter_kwh, reason)
        )
        self._finalizers.add(task)
        task.add_done_callback(self._finalizers.discard)
        return reason

    async def _finalize_session(self, session_id: str, stop_ts: str, energy_kwh: float, reason: str) -> None:
        try:
            start_ts = await self.ledger.fetch_session_start_time(session_id)
            if not start_ts:
                self.log.error(f"No start time found for session {session_id}")
                return
            seconds, minutes, human = session_duration(start_ts, stop_ts)
            bill_amount = energy_kwh * self.rate_per_kwh
            await self.ledger.record_session_stop(
                session_id, stop_ts, energy_kwh, reason, seconds, minutes, human, bill_amount
            )
            self.log.info(
                f"Session {session_id} closed on {self.id}: reason={reason}, "
                f"duration={human}, energy={energy_kwh}kWh, bill={bill_amount:.2f}"
            )
        except Exception:
            self.log.exception(f"Failed to update session stop for {self.id}")

    @property
    def finalizing(self) -> bool:
        return bool(self._finalizers)

    async def wait_finalized(self) -> None:
        """Wait for every pending session finalization to complete."""
        while self._finalizers:
            await asyncio.gather(*list(self._finalizers))

    # -------- faults & liveness --------
    def inject_fault(self, fault_type: str) -> None:
        self.log.warning(f"[{self.id}] Fault injected: {fault_type}")
        if self.status == ChargerStatus.CHARGING:
            self.stop_session(StopReason.FAULT)
        self.status = ChargerStatus.FAULTY
        self.current_session_id = None
        self.last_fault = fault_type

    def reset(self) -> bool:
        if self.status != ChargerStatus.FAULTY:
            return False
        self.status = ChargerStatus.AVAILABLE
        self.current_session_id = None
        self.last_fault = None
        self.log.info(f"[{self.id}] Reset to AVAILABLE")
        return True

    def mark_offline(self) -> None:
        """Take the charger OFFLINE after a missed heartbeat.

        A session still bound at that point is closed in the ledger with
        reason HEARTBEAT_TIMEOUT, so an OFFLINE charger never holds a
        session and the ledger row does not stay open.
        """
        if self.status == ChargerStatus.CHARGING:
            self.stop_session(StopReason.HEARTBEAT_TIMEOUT)
        self.status = ChargerStatus.OFFLINE
        self.current_session_id = None
        self.log.warning(f"[{self.id}] heartbeat lost; marked OFFLINE")

    def mark_online(self) -> None:
        if self.status == ChargerStatus.OFFLINE:
            self.status = ChargerStatus.AVAILABLE
            self.log.info(f"[{self.id}] heartbeat restored; marked AVAILABLE")

    def snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "currentSessionId": self.current_session_id,
            "meterKWh": self.meter_kwh,
            "chargingMode": self.charging_mode,
            "currentLimit": self.current_limit,
            "lastPower": self.last_power,
            "lastHeartbeat": datetime.fromtimestamp(self.last_heartbeat, timezone.utc).isoformat(),
            "forceIdle": self.force_idle,
            "lastFault": self.last_fault,
            "telemetryRunning": self.telemetry_running,
        }
