"""Interactive operator console for an in-process charger fleet.

Commands are read on a daemon thread and executed on the event loop, so
the chargers keep ticking while the operator types.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Sequence

from .config import LEDGER_PATH, LOG_FORMAT, LOG_LEVEL
from .fleet import FleetCoordinator
from .ledger import SqliteSessionLedger

HELP = """Commands:
  spawn <id>          - spawn a charger
  use <id>            - select the charger the commands below act on
  start <sessionId>   - start charging session
  stop                - stop charging session
  fault <type>        - inject a fault
  reset               - clear a fault
  mode <slow|normal|fast>
  idle <on|off>       - force zero current while charging
  pause / resume      - pause or resume telemetry
  status              - show charger status
  list                - list all chargers
  stopall             - stop sessions on all chargers
  stopalltelemetry    - stop telemetry on all chargers
  delete <id>         - delete a charger
  exit                - quit"""


@dataclass
class ShellState:
    charger_id: str = "T1"
    running: bool = True


async def execute(fleet: FleetCoordinator, state: ShellState, line: str) -> str:
    """Run one console command and return the text to print."""
    parts = line.split()
    if not parts:
        return ""
    cmd, args = parts[0].lower(), parts[1:]
    cid = state.charger_id

    if cmd in ("exit", "quit"):
        state.running = False
        return "Bye"
    if cmd == "help":
        return HELP
    if cmd == "spawn":
        if not args:
            return "Usage: spawn <id>"
        fleet.spawn_charger(args[0])
        return f"Spawned charger {args[0]}"
    if cmd == "use":
        if not args:
            return "Usage: use <id>"
        if fleet.get_charger(args[0]) is None:
            return f"Charger {args[0]} not found"
        state.charger_id = args[0]
        return f"Using charger {args[0]}"
    if cmd == "start":
        if not args:
            return "Usage: start <sessionId>"
        result = await fleet.start_session(cid, args[0])
        if result["ok"]:
            return f"Started session {args[0]}"
        return f"Failed to start session: {result['error']}"
    if cmd == "stop":
        return "Stopped session" if fleet.stop_session(cid) else "Failed to stop session"
    if cmd == "fault":
        fault_type = args[0] if args else "UNKNOWN"
        return f"Injected fault {fault_type}" if fleet.inject_fault(cid, fault_type) else "Failed to inject fault"
    if cmd == "reset":
        return "Reset" if fleet.reset(cid) else "Charger not found"
    if cmd == "mode":
        if not args:
            return "Usage: mode <slow|normal|fast>"
        return f"Mode set to {args[0].upper()}" if fleet.set_mode(cid, args[0]) else f"Invalid mode {args[0]}"
    if cmd == "idle":
        if not args or args[0].lower() not in ("on", "off"):
            return "Usage: idle <on|off>"
        enabled = args[0].lower() == "on"
        return f"Force idle {args[0].lower()}" if fleet.set_force_idle(cid, enabled) else "Charger not found"
    if cmd == "pause":
        return "Telemetry paused" if fleet.pause_telemetry(cid) else "Charger not found"
    if cmd == "resume":
        return "Telemetry resumed" if fleet.resume_telemetry(cid) else "Charger not found"
    if cmd == "status":
        c = fleet.get_charger(cid)
        if c is None:
            return "Charger not found"
        return "\n".join(f"{k}: {v}" for k, v in c.snapshot().items())
    if cmd == "list":
        ids = fleet.list_chargers()
        return "Chargers: " + (", ".join(ids) or "(none)")
    if cmd == "stopall":
        fleet.stop_all()
        return "Stopped all sessions"
    if cmd == "stopalltelemetry":
        fleet.stop_all_telemetry()
        return "Stopped telemetry on all chargers"
    if cmd == "delete":
        target = args[0] if args else cid
        return f"Deleted charger {target}" if fleet.delete_charger(target) else f"Charger {target} not found"

    logging.warning(f"Unknown shell command {cmd}")
    return "Unknown command. Type 'help' for a list of commands."


async def run_shell(initial: Sequence[str] = ("T1", "T2", "T3")) -> None:
    ledger = SqliteSessionLedger(LEDGER_PATH)
    fleet = FleetCoordinator(ledger)
    fleet.start_heartbeat_monitor()
    for cid in initial:
        fleet.spawn_charger(cid)
    state = ShellState(charger_id=initial[0] if initial else "T1")

    loop = asyncio.get_running_loop()
    done = asyncio.Event()

    def console_thread():
        print("Control Charger CLI")
        print(HELP)
        while state.running:
            try:
                line = input("> ")
            except EOFError:
                break
            fut = asyncio.run_coroutine_threadsafe(execute(fleet, state, line), loop)
            try:
                out = fut.result()
            except Exception as e:
                out = f"Error: {e}"
            if out:
                print(out)
        loop.call_soon_threadsafe(done.set)

    threading.Thread(target=console_thread, daemon=True).start()
    await done.wait()
    fleet.shutdown()
    await fleet.wait_finalized()
    ledger.close()


def main() -> None:
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    asyncio.run(run_shell())


if __name__ == "__main__":
    main()
