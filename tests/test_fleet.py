import asyncio
import logging

import pytest

from fleetsim.fleet import FleetCoordinator
from fleetsim.state_machine import ChargerStatus


def test_spawn_is_idempotent(fleet):
    first = fleet.spawn_charger("C1")
    first.meter_kwh = 3.5
    second = fleet.spawn_charger("C1")

    assert second is first
    assert second.meter_kwh == 3.5
    assert fleet.list_chargers() == ["C1"]
    assert fleet.get_charger("C1") is first
    assert fleet.get_charger("nope") is None


@pytest.mark.asyncio
async def test_commands_on_unknown_charger_signal_not_found(fleet, caplog):
    with caplog.at_level(logging.WARNING):
        assert await fleet.start_session("X", "S1") == {"ok": False, "error": "NOT_FOUND"}
        assert fleet.stop_session("X") is False
        assert fleet.inject_fault("X", "GroundFailure") is False
        assert fleet.reset("X") is False
        assert fleet.set_mode("X", "fast") is False
        assert fleet.set_force_idle("X", True) is False
        assert fleet.pause_telemetry("X") is False
        assert fleet.resume_telemetry("X") is False
        assert fleet.delete_charger("X") is False
    assert "charger X not found" in caplog.text


@pytest.mark.asyncio
async def test_commands_delegate_to_charger(fleet, ledger):
    c = fleet.spawn_charger("C1")

    assert await fleet.start_session("C1", "S1") == {"ok": True}
    assert await fleet.start_session("C1", "S2") == {"ok": False, "error": "CHARGER_BUSY"}
    assert fleet.set_mode("C1", "SLOW") is True
    assert c.charging_mode == "SLOW"
    assert fleet.set_mode("C1", "warp") is False
    assert fleet.set_force_idle("C1", True) is True
    assert c.force_idle is True

    assert fleet.inject_fault("C1", "OverVoltage") is True
    assert c.status == ChargerStatus.FAULTY
    assert fleet.reset("C1") is True
    assert c.status == ChargerStatus.AVAILABLE
    assert fleet.stop_session("C1") is True

    await fleet.wait_finalized()
    assert [s["stop_reason"] for s in ledger.stops] == ["FAULT"]


def test_fleet_power_ignores_non_charging_chargers(fleet):
    a = fleet.spawn_charger("A")
    b = fleet.spawn_charger("B")
    a.last_power = 7.0
    b.last_power = 9.0
    b.status = ChargerStatus.FAULTY

    assert fleet.fleet_power() == 0
    a.status = ChargerStatus.CHARGING
    assert fleet.fleet_power() == 7.0


@pytest.mark.asyncio
async def test_throttles_all_charging_chargers_above_grid_limit(fleet):
    a = fleet.spawn_charger("A")
    b = fleet.spawn_charger("B")
    idle = fleet.spawn_charger("C")
    await fleet.start_session("A", "S1")
    await fleet.start_session("B", "S2")
    a.last_power = 6.0
    b.last_power = 6.0

    assert fleet.apply_throttling() == 12.0
    for c in (a, b):
        assert 10 <= c.current_limit <= 15
    assert idle.current_limit is None

    a.last_power = 4.0
    b.last_power = 5.0
    assert fleet.apply_throttling() == 9.0
    assert a.current_limit is None
    assert b.current_limit is None


@pytest.mark.asyncio
async def test_telemetry_triggers_throttling(fleet):
    a = fleet.spawn_charger("A")
    b = fleet.spawn_charger("B")
    for cid, sid in (("A", "S1"), ("B", "S2")):
        await fleet.start_session(cid, sid)
        fleet.set_mode(cid, "fast")

    a.generate_telemetry(1)
    assert a.current_limit is None

    # two FAST chargers always draw more than 10 kW together
    b.generate_telemetry(1)
    assert a.current_limit is not None
    assert b.current_limit is not None

    t = a.generate_telemetry(1)
    assert 10 <= t["current"] <= 15


def test_telemetry_handler_receives_events(fleet):
    received = []
    fleet.spawn_charger("A")
    fleet.set_telemetry_handler(received.append)
    fleet.spawn_charger("B")

    fleet.get_charger("A").generate_telemetry(1)
    fleet.get_charger("B").generate_telemetry(1)

    assert [t["id"] for t in received] == ["A", "B"]


def test_replacing_telemetry_handler_does_not_stack(fleet):
    old, new = [], []
    c = fleet.spawn_charger("A")
    fleet.set_telemetry_handler(old.append)
    fleet.set_telemetry_handler(new.append)

    c.generate_telemetry(1)
    c.generate_telemetry(1)

    assert old == []
    assert len(new) == 2


@pytest.mark.asyncio
async def test_failing_handler_still_throttles(fleet, caplog):
    def broken(t):
        raise RuntimeError("socket gone")

    fleet.set_telemetry_handler(broken)
    a = fleet.spawn_charger("A")
    b = fleet.spawn_charger("B")
    await fleet.start_session("A", "S1")
    await fleet.start_session("B", "S2")
    b.last_power = 9.5

    with caplog.at_level(logging.ERROR):
        a.generate_telemetry(1)

    assert a.current_limit is not None
    assert b.current_limit is not None
    assert "Telemetry handler failed for charger A" in caplog.text


def test_heartbeat_expiry_marks_offline_and_recovers(fleet, clock):
    c = fleet.spawn_charger("C1")

    clock.advance(20)
    fleet.check_heartbeats()
    assert c.status == ChargerStatus.AVAILABLE

    clock.advance(11)
    fleet.check_heartbeats()
    assert c.status == ChargerStatus.OFFLINE

    t = c.generate_telemetry(1)
    assert t["status"] == ChargerStatus.OFFLINE
    fleet.check_heartbeats()
    assert c.status == ChargerStatus.AVAILABLE


def test_heartbeat_scan_uses_supplied_time(fleet, clock):
    c = fleet.spawn_charger("C1")
    fleet.check_heartbeats(now=clock.now + 100)
    assert c.status == ChargerStatus.OFFLINE


@pytest.mark.asyncio
async def test_heartbeat_expiry_while_charging_closes_session(fleet, ledger, clock):
    c = fleet.spawn_charger("C1")
    await fleet.start_session("C1", "S1")

    clock.advance(31)
    fleet.check_heartbeats()

    assert c.status == ChargerStatus.OFFLINE
    assert c.current_session_id is None
    await fleet.wait_finalized()
    assert ledger.stops[0]["stop_reason"] == "HEARTBEAT_TIMEOUT"


def test_faulty_charger_also_goes_offline(fleet, clock):
    c = fleet.spawn_charger("C1")
    c.inject_fault("GroundFailure")
    clock.advance(31)
    fleet.check_heartbeats()
    assert c.status == ChargerStatus.OFFLINE


def test_delete_detaches_charger(fleet):
    received = []
    fleet.set_telemetry_handler(received.append)
    c = fleet.spawn_charger("C1")
    c.meter_kwh = 12.0

    assert fleet.delete_charger("C1") is True
    c.generate_telemetry(1)
    assert received == []
    assert fleet.get_charger("C1") is None
    assert fleet.delete_charger("C1") is False

    fresh = fleet.spawn_charger("C1")
    assert fresh is not c
    assert fresh.meter_kwh == 0


@pytest.mark.asyncio
async def test_stop_all(fleet, ledger):
    fleet.spawn_charger("A")
    fleet.spawn_charger("B")
    fleet.spawn_charger("C")
    await fleet.start_session("A", "S1")
    await fleet.start_session("B", "S2")
    fleet.inject_fault("C", "GroundFailure")

    fleet.stop_all()

    assert {c.status for c in fleet.chargers.values()} == {ChargerStatus.AVAILABLE}
    await fleet.wait_finalized()
    assert sorted(s["id"] for s in ledger.stops) == ["S1", "S2"]
    assert {s["stop_reason"] for s in ledger.stops} == {"FLEET_STOP"}


@pytest.mark.asyncio
async def test_pause_and_resume_telemetry_timers(ledger):
    fleet = FleetCoordinator(ledger, telemetry_interval=0.01)
    c = fleet.spawn_charger("C1")
    assert c.telemetry_running

    assert fleet.pause_telemetry("C1") is True
    assert fleet.pause_telemetry("C1") is True
    assert not c.telemetry_running

    assert fleet.resume_telemetry("C1") is True
    assert c.telemetry_running
    await asyncio.sleep(0.05)

    fleet.shutdown()
    assert not c.telemetry_running


@pytest.mark.asyncio
async def test_heartbeat_monitor_runs_on_its_own_timer(ledger, clock):
    fleet = FleetCoordinator(
        ledger, heartbeat_timeout=30, heartbeat_check_interval=0.01, run_timers=False, clock=clock
    )
    c = fleet.spawn_charger("C1")
    fleet.start_heartbeat_monitor()
    fleet.start_heartbeat_monitor()

    clock.advance(31)
    await asyncio.sleep(0.1)
    assert c.status == ChargerStatus.OFFLINE

    fleet.stop_heartbeat_monitor()
    fleet.stop_heartbeat_monitor()


@pytest.mark.asyncio
async def test_deleted_charger_session_is_still_finalized(fleet, ledger, monkeypatch):
    fetch = ledger.fetch_session_start_time

    async def slow_fetch(session_id):
        await asyncio.sleep(0.05)
        return await fetch(session_id)

    monkeypatch.setattr(ledger, "fetch_session_start_time", slow_fetch)
    fleet.spawn_charger("C1")
    await fleet.start_session("C1", "S1")

    fleet.stop_session("C1")
    assert fleet.delete_charger("C1") is True
    fleet.shutdown()
    await fleet.wait_finalized()

    assert ledger.sessions["S1"]["status"] == "STOPPED"
    assert [s["stop_reason"] for s in ledger.stops] == ["USER_STOP"]
    assert fleet._detached == []


def test_delete_unknown_charger_is_logged(fleet, caplog):
    with caplog.at_level(logging.WARNING):
        assert fleet.delete_charger("ghost") is False
    assert "delete_charger: charger ghost not found" in caplog.text
