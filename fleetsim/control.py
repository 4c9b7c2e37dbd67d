import argparse
import asyncio
import json
from typing import Optional

import requests
import websockets

from .config import API_BASE


def _do_json(method: str, url: str, body: Optional[dict] = None) -> requests.Response:
    headers = {
        "Content-Type": "application/json",
        "Connection": "close",
    }
    data = json.dumps(body) if body is not None else None
    resp = requests.request(method, url, data=data, headers=headers, timeout=15)
    print(f"{method} {url} -> {resp.status_code} {resp.reason}")
    print(resp.text)
    return resp


def send_command(api_base: str, charger_id: str, cmd: str, **fields) -> requests.Response:
    payload = {"id": charger_id, "cmd": cmd}
    payload.update({k: v for k, v in fields.items() if v is not None})
    return _do_json("POST", f"{api_base}/command", payload)


def spawn(api_base: str, charger_id: str) -> requests.Response:
    return _do_json("POST", f"{api_base}/spawn", {"chargerId": charger_id})


def delete(api_base: str, charger_id: str) -> requests.Response:
    return _do_json("POST", f"{api_base}/delete", {"id": charger_id})


def ws_url(api_base: str) -> str:
    if api_base.startswith("https://"):
        return "wss://" + api_base[len("https://"):] + "/ws"
    if api_base.startswith("http://"):
        return "ws://" + api_base[len("http://"):] + "/ws"
    return api_base.rstrip("/") + "/ws"


async def watch(api_base: str, charger_id: Optional[str] = None) -> None:
    """Print live telemetry, optionally for one charger only."""
    async with websockets.connect(ws_url(api_base)) as ws:
        async for raw in ws:
            t = json.loads(raw)
            if charger_id and t.get("id") != charger_id:
                continue
            print(
                f"{t['timestamp']} {t['id']:<8} {t['status']:<9} "
                f"{t['voltage']:7.2f}V {t['current']:6.2f}A {t['power_kW']:7.4f}kW {t['energy_kWh']:.6f}kWh"
            )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Control simulated chargers via the HTTP API")
    parser.add_argument("--api", default=API_BASE, help="API base URL")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("spawn", help="spawn a charger")
    p.add_argument("chargerId")

    p = sub.add_parser("start", help="start charging")
    p.add_argument("chargerId")
    p.add_argument("sessionId")

    p = sub.add_parser("stop", help="stop charging")
    p.add_argument("chargerId")
    p.add_argument("--reason", default=None)

    p = sub.add_parser("fault", help="inject a fault")
    p.add_argument("chargerId")
    p.add_argument("type", nargs="?", default="UNKNOWN")

    p = sub.add_parser("reset", help="clear a fault")
    p.add_argument("chargerId")

    p = sub.add_parser("mode", help="set charging mode")
    p.add_argument("chargerId")
    p.add_argument("mode", choices=["slow", "normal", "fast"])

    p = sub.add_parser("idle", help="force idle on or off")
    p.add_argument("chargerId")
    p.add_argument("state", choices=["on", "off"])

    for name, help_text in (("pause", "pause telemetry"), ("resume", "resume telemetry")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("chargerId")

    p = sub.add_parser("delete", help="delete a charger")
    p.add_argument("chargerId")

    sub.add_parser("list", help="list chargers")
    sub.add_parser("sessions", help="list recorded sessions")

    p = sub.add_parser("watch", help="stream telemetry")
    p.add_argument("chargerId", nargs="?", default=None)

    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    api = args.api.rstrip("/")
    if args.cmd == "spawn":
        spawn(api, args.chargerId)
    elif args.cmd == "start":
        send_command(api, args.chargerId, "start", sessionId=args.sessionId)
    elif args.cmd == "stop":
        send_command(api, args.chargerId, "stop", reason=args.reason)
    elif args.cmd == "fault":
        send_command(api, args.chargerId, "fault", type=args.type)
    elif args.cmd == "mode":
        send_command(api, args.chargerId, "mode", mode=args.mode)
    elif args.cmd == "idle":
        send_command(api, args.chargerId, "idle", enabled=args.state == "on")
    elif args.cmd in ("reset", "pause", "resume"):
        send_command(api, args.chargerId, args.cmd)
    elif args.cmd == "delete":
        delete(api, args.chargerId)
    elif args.cmd == "list":
        _do_json("GET", f"{api}/chargers")
    elif args.cmd == "sessions":
        _do_json("GET", f"{api}/sessions")
    elif args.cmd == "watch":
        try:
            asyncio.run(watch(api, args.chargerId))
        except KeyboardInterrupt:
            pass


if __name__ == "__main__":
    main()
