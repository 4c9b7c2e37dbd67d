import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Set

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from .charger import Telemetry
from .config import HTTP_HOST, HTTP_PORT, LEDGER_PATH, LOG_FORMAT, LOG_LEVEL
from .fleet import FleetCoordinator
from .ledger import SessionLedger, SqliteSessionLedger
from .state_machine import StartError, StopReason

log = logging.getLogger(__name__)


class TelemetryBroadcaster:
    """Fan telemetry out to every connected WebSocket client."""

    def __init__(self):
        self.clients: Set[WebSocket] = set()
        self._sends: Set[asyncio.Task] = set()

    async def register(self, ws: WebSocket) -> None:
        await ws.accept()
        self.clients.add(ws)
        log.info(f"Telemetry client connected ({len(self.clients)} total)")

    def unregister(self, ws: WebSocket) -> None:
        if ws in self.clients:
            self.clients.discard(ws)
            log.info(f"Telemetry client disconnected ({len(self.clients)} total)")

    def publish(self, telemetry: Telemetry) -> None:
        if not self.clients:
            return
        loop = asyncio.get_running_loop()
        for ws in list(self.clients):
            task = loop.create_task(self._send(ws, telemetry))
            self._sends.add(task)
            task.add_done_callback(self._sends.discard)

    async def _send(self, ws: WebSocket, telemetry: Telemetry) -> None:
        try:
            await ws.send_json(telemetry)
        except Exception as e:
            log.info(f"Dropping telemetry client: {e}")
            self.unregister(ws)


# -------- request bodies --------
class SpawnReq(BaseModel):
    chargerId: str


class CommandReq(BaseModel):
    id: str
    cmd: str
    sessionId: Optional[str] = None
    type: Optional[str] = None
    mode: Optional[str] = None
    enabled: Optional[bool] = None
    reason: Optional[str] = None


class DeleteReq(BaseModel):
    id: str


def create_app(
    fleet: Optional[FleetCoordinator] = None,
    ledger: Optional[SessionLedger] = None,
) -> FastAPI:
    if ledger is None:
        ledger = fleet.ledger if fleet is not None else SqliteSessionLedger(LEDGER_PATH)
    if fleet is None:
        fleet = FleetCoordinator(ledger)

    broadcaster = TelemetryBroadcaster()
    fleet.set_telemetry_handler(broadcaster.publish)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if fleet.run_timers:
            fleet.start_heartbeat_monitor()
            for c in fleet.chargers.values():
                c.start_telemetry()
        yield
        fleet.shutdown()
        await fleet.wait_finalized()
        ledger.close()

    app = FastAPI(title="ChargeFleet-Sim Control", lifespan=lifespan)
    app.state.fleet = fleet
    app.state.ledger = ledger
    app.state.broadcaster = broadcaster

    @app.get("/ping")
    async def ping():
        return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}

    @app.post("/spawn")
    async def spawn(req: Optional[SpawnReq] = None, chargerId: Optional[str] = None):
        charger_id = chargerId or (req.chargerId if req else None)
        if not charger_id:
            log.warning("POST /spawn missing chargerId")
            raise HTTPException(status_code=400, detail="chargerId is required")
        fleet.spawn_charger(charger_id)
        return {"success": True, "id": charger_id}

    @app.post("/command")
    async def command(req: CommandReq):
        if fleet.get_charger(req.id) is None:
            raise HTTPException(status_code=404, detail=f"charger '{req.id}' not found")

        cmd = req.cmd.lower()
        if cmd == "start":
            if not req.sessionId:
                raise HTTPException(status_code=400, detail="sessionId is required for start")
            try:
                result = await fleet.start_session(req.id, req.sessionId)
            except Exception as e:
                log.exception(f"start {req.id}/{req.sessionId} failed")
                raise HTTPException(status_code=500, detail=str(e))
            if not result["ok"]:
                code = 404 if result["error"] == StartError.NOT_FOUND else 409
                raise HTTPException(status_code=code, detail=result["error"])
        elif cmd == "stop":
            fleet.stop_session(req.id, req.reason or StopReason.USER_STOP)
        elif cmd == "fault":
            if not req.type:
                raise HTTPException(status_code=400, detail="type is required for fault")
            fleet.inject_fault(req.id, req.type)
        elif cmd == "reset":
            fleet.reset(req.id)
        elif cmd == "mode":
            if not fleet.set_mode(req.id, req.mode or ""):
                raise HTTPException(status_code=400, detail=f"unknown mode {req.mode}")
        elif cmd == "idle":
            if req.enabled is None:
                raise HTTPException(status_code=400, detail="enabled is required for idle")
            fleet.set_force_idle(req.id, req.enabled)
        elif cmd == "pause":
            fleet.pause_telemetry(req.id)
        elif cmd == "resume":
            fleet.resume_telemetry(req.id)
        else:
            log.warning(f"POST /command unknown cmd {req.cmd}")
            raise HTTPException(status_code=400, detail=f"unknown cmd {req.cmd}")

        log.info(f"Command {cmd} for {req.id}")
        return {"success": True, "id": req.id, "cmd": cmd}

    @app.post("/delete")
    async def delete(req: DeleteReq):
        if not fleet.delete_charger(req.id):
            return {"success": False, "message": "not found"}
        return {"success": True, "id": req.id}

    @app.get("/chargers")
    async def chargers():
        return {"chargers": [fleet.chargers[cid].snapshot() for cid in fleet.list_chargers()]}

    @app.get("/chargers/{charger_id}")
    async def charger(charger_id: str):
        c = fleet.get_charger(charger_id)
        if c is None:
            raise HTTPException(status_code=404, detail=f"charger '{charger_id}' not found")
        return c.snapshot()

    @app.get("/fleet")
    async def fleet_status():
        return {
            "power_kW": round(fleet.fleet_power(), 4),
            "grid_limit_kW": fleet.grid_limit_kw,
            "chargers": fleet.list_chargers(),
        }

    @app.get("/sessions")
    async def sessions():
        return await ledger.list_sessions()

    @app.get("/sessions/{session_id}")
    async def session(session_id: str):
        row = await ledger.get_session(session_id)
        if row is None:
            raise HTTPException(status_code=404, detail=f"session '{session_id}' not found")
        return row

    @app.websocket("/ws")
    async def telemetry_ws(ws: WebSocket):
        await broadcaster.register(ws)
        try:
            while True:
                # clients only listen; drain anything they send
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.unregister(ws)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        log.info(f"{request.method} {request.url.path} -> {response.status_code}")
        return response

    return app


async def main():
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    app = create_app()
    server = uvicorn.Server(uvicorn.Config(app, host=HTTP_HOST, port=HTTP_PORT, loop="asyncio", log_level="info"))
    log.info(f"ChargeFleet-Sim listening on http://{HTTP_HOST}:{HTTP_PORT} (telemetry at /ws)")
    await server.serve()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
