import argparse
import os
from typing import Optional

import requests

API_BASE = os.getenv("EVSESIM_API", "http://127.0.0.1:7071")
DEFAULT_IDTAG = "DEMO_IDTAG"


def _do(method: str, path: str, params: Optional[dict] = None, body: Optional[dict] = None) -> requests.Response:
    url = f"{API_BASE}{path}"
    resp = requests.request(method, url, params=params, json=body, headers={"Connection": "close"}, timeout=15)
    print(f"{method} {url} -> {resp.status_code} {resp.reason}")
    print(resp.text)
    return resp


def plug(connector_id: int, vehicle_id: Optional[str]) -> None:
    params = {"vehicle_id": vehicle_id} if vehicle_id else None
    _do("POST", f"/plug/{connector_id}", params=params)


def unplug(connector_id: int) -> None:
    _do("POST", f"/unplug/{connector_id}")


def start_charge(connector_id: int, id_tag: str) -> None:
    _do("POST", f"/local_start/{connector_id}", params={"id_tag": id_tag})


def stop_charge(connector_id: int) -> None:
    _do("POST", f"/local_stop/{connector_id}")


def show_limits(connector_id: int) -> None:
    _do("GET", f"/limits/{connector_id}")


def set_current(connector_id: int, amps: float) -> None:
    _do("POST", f"/config/{connector_id}", body={"max_current_a": amps})


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive a running evsesim station over its HTTP API")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_plug = sub.add_parser("plug", help="plug a vehicle in")
    p_plug.add_argument("connectorId", type=int)
    p_plug.add_argument("--vehicle", default=None)

    p_unplug = sub.add_parser("unplug", help="unplug the vehicle")
    p_unplug.add_argument("connectorId", type=int)

    p_start = sub.add_parser("start", help="start charging")
    p_start.add_argument("connectorId", type=int)
    p_start.add_argument("idTag", nargs="?", default=DEFAULT_IDTAG)

    p_stop = sub.add_parser("stop", help="stop charging")
    p_stop.add_argument("connectorId", type=int)

    p_limits = sub.add_parser("limits", help="show physical and applied limits")
    p_limits.add_argument("connectorId", type=int)

    p_current = sub.add_parser("current", help="set the operator current cap (A per phase)")
    p_current.add_argument("connectorId", type=int)
    p_current.add_argument("amps", type=float)

    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    if args.cmd == "plug":
        plug(args.connectorId, args.vehicle)
    elif args.cmd == "unplug":
        unplug(args.connectorId)
    elif args.cmd == "start":
        start_charge(args.connectorId, args.idTag)
    elif args.cmd == "stop":
        stop_charge(args.connectorId)
    elif args.cmd == "limits":
        show_limits(args.connectorId)
    elif args.cmd == "current":
        set_current(args.connectorId, args.amps)


if __name__ == "__main__":
    main()
