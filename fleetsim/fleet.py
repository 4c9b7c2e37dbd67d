"""Fleet coordinator: registry, command dispatch, throttling and liveness."""
import asyncio
import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional

from .charger import Charger, Telemetry, TelemetryListener
from .config import (
    GRID_LIMIT_KW,
    HEARTBEAT_CHECK_SEC,
    HEARTBEAT_TIMEOUT_SEC,
    TELEMETRY_INTERVAL_SEC,
)
from .ledger import SessionLedger
from .state_machine import ChargerStatus, StartError, StopReason

log = logging.getLogger(__name__)


class FleetCoordinator:
    def __init__(
        self,
        ledger: SessionLedger,
        grid_limit_kw: float = GRID_LIMIT_KW,
        heartbeat_timeout: float = HEARTBEAT_TIMEOUT_SEC,
        heartbeat_check_interval: float = HEARTBEAT_CHECK_SEC,
        telemetry_interval: float = TELEMETRY_INTERVAL_SEC,
        run_timers: bool = True,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        self.ledger = ledger
        self.grid_limit_kw = grid_limit_kw
        self.heartbeat_timeout = heartbeat_timeout
        self.heartbeat_check_interval = heartbeat_check_interval
        self.telemetry_interval = telemetry_interval
        # when False, no asyncio timers are started; ticks and heartbeat
        # scans are driven by the caller
        self.run_timers = run_timers
        self.clock = clock
        self.rng = rng

        self.chargers: Dict[str, Charger] = {}
        self.telemetry_handler: Optional[TelemetryListener] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        # chargers deleted while a session finalization was still in flight
        self._detached: List[Charger] = []

    # -------- telemetry fan-in --------
    def set_telemetry_handler(self, cb: Optional[TelemetryListener]) -> None:
        """Install the single external telemetry sink, replacing any previous one."""
        self.telemetry_handler = cb
        log.info(f"Telemetry handler {'installed' if cb else 'cleared'} for {len(self.chargers)} charger(s)")

    def _dispatch_telemetry(self, telemetry: Telemetry) -> None:
        handler = self.telemetry_handler
        if handler is not None:
            try:
                handler(telemetry)
            except Exception:
                log.exception(f"Telemetry handler failed for charger {telemetry.get('id')}")
        self.apply_throttling()

    # -------- throttling --------
    def fleet_power(self) -> float:
        return sum(
            c.last_power for c in self.chargers.values() if c.status == ChargerStatus.CHARGING
        )

    def apply_throttling(self) -> float:
        total = self.fleet_power()
        charging = [c for c in self.chargers.values() if c.status == ChargerStatus.CHARGING]
        if total <= self.grid_limit_kw:
            for c in charging:
                c.unthrottle()
        else:
            log.warning(f"Fleet power {total:.2f}kW exceeds grid limit {self.grid_limit_kw}kW; throttling")
            for c in charging:
                c.throttle_current()
        return total

    # -------- heartbeat supervision --------
    def check_heartbeats(self, now: Optional[float] = None) -> None:
        if now is None:
            now = self.clock()
        for c in list(self.chargers.values()):
            elapsed = now - c.last_heartbeat
            if elapsed > self.heartbeat_timeout:
                if c.status != ChargerStatus.OFFLINE:
                    log.warning(f"Charger {c.id} silent for {elapsed:.0f}s; marking OFFLINE")
                    c.mark_offline()
            elif c.status == ChargerStatus.OFFLINE:
                c.mark_online()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_check_interval)
            self.check_heartbeats()

    def start_heartbeat_monitor(self) -> None:
        if self._heartbeat_task is not None:
            return
        self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat_loop())
        log.info("Heartbeat monitor started")

    def stop_heartbeat_monitor(self) -> None:
        if self._heartbeat_task is None:
            return
        self._heartbeat_task.cancel()
        self._heartbeat_task = None
        log.info("Heartbeat monitor stopped")

    # -------- commands --------
    def _lookup(self, op: str, charger_id: str) -> Optional[Charger]:
        c = self.chargers.get(charger_id)
        if c is None:
            log.warning(f"{op}: charger {charger_id} not found")
        return c

    def spawn_charger(self, charger_id: str) -> Charger:
        c = self.chargers.get(charger_id)
        if c is not None:
            log.info(f"FleetCoordinator: charger {charger_id} already exists")
            return c
        kwargs: Dict[str, Any] = {"interval": self.telemetry_interval, "clock": self.clock}
        if self.rng is not None:
            kwargs["rng"] = self.rng
        c = Charger(charger_id, self.ledger, **kwargs)
        c.on_telemetry(self._dispatch_telemetry)
        self.chargers[charger_id] = c
        if self.run_timers:
            c.start_telemetry()
        log.info(f"FleetCoordinator: spawned charger {charger_id}")
        return c

    async def start_session(self, charger_id: str, session_id: str) -> Dict[str, Any]:
        c = self._lookup("start_session", charger_id)
        if c is None:
            return {"ok": False, "error": StartError.NOT_FOUND}
        return await c.start_session(session_id)

    def stop_session(self, charger_id: str, reason: str = StopReason.USER_STOP) -> bool:
        c = self._lookup("stop_session", charger_id)
        if c is None:
            return False
        c.stop_session(reason)
        return True

    def inject_fault(self, charger_id: str, fault_type: str) -> bool:
        c = self._lookup("inject_fault", charger_id)
        if c is None:
            return False
        c.inject_fault(fault_type)
        return True

    def reset(self, charger_id: str) -> bool:
        c = self._lookup("reset", charger_id)
        if c is None:
            return False
        c.reset()
        return True

    def set_mode(self, charger_id: str, mode: str) -> bool:
        c = self._lookup("set_mode", charger_id)
        if c is None:
            return False
        return c.set_mode(mode)

    def set_force_idle(self, charger_id: str, enabled: bool) -> bool:
        c = self._lookup("set_force_idle", charger_id)
        if c is None:
            return False
        c.set_force_idle(enabled)
        return True

    def pause_telemetry(self, charger_id: str) -> bool:
        c = self._lookup("pause_telemetry", charger_id)
        if c is None:
            return False
        c.stop_telemetry()
        return True

    def resume_telemetry(self, charger_id: str) -> bool:
        c = self._lookup("resume_telemetry", charger_id)
        if c is None:
            return False
        c.start_telemetry()
        return True

    def delete_charger(self, charger_id: str) -> bool:
        c = self._lookup("delete_charger", charger_id)
        if c is None:
            return False
        del self.chargers[charger_id]
        c.stop_telemetry()
        c.remove_listener(self._dispatch_telemetry)
        if c.finalizing:
            self._detached.append(c)
        log.info(f"FleetCoordinator: deleted charger {charger_id}")
        return True

    def get_charger(self, charger_id: str) -> Optional[Charger]:
        return self.chargers.get(charger_id)

    def list_chargers(self) -> List[str]:
        return list(self.chargers.keys())

    # -------- fleet-wide --------
    def stop_all(self, reason: str = StopReason.FLEET_STOP) -> None:
        for charger_id, c in self.chargers.items():
            try:
                c.stop_session(reason)
                log.info(f"Stopped charger {charger_id}")
            except Exception:
                log.exception(f"Error stopping charger {charger_id}")

    def stop_all_telemetry(self) -> None:
        for c in self.chargers.values():
            c.stop_telemetry()

    async def wait_finalized(self) -> None:
        """Drain session finalizations, including those of deleted chargers."""
        for c in list(self.chargers.values()) + self._detached:
            await c.wait_finalized()
        self._detached = [c for c in self._detached if c.finalizing]

    def shutdown(self) -> None:
        self.stop_heartbeat_monitor()
        self.stop_all_telemetry()
