import asyncio
import dataclasses
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .config import (
    CONNECTORS,
    CPID,
    CSMS_URL,
    HTTP_PORT,
    INITIAL_SOC,
    LOG_LEVEL,
    MAX_CURRENT_A,
    METER_START_WH,
    RECONNECT_DELAY_SEC,
    VEHICLE_ID,
)
from .state_machine import ConnectorSim, EVSEModel
from .station import Station


class ConnectorConfig(BaseModel):
    max_current_a: Optional[float] = Field(None, ge=0)
    vehicle_id: Optional[str] = None
    soc: Optional[float] = Field(None, ge=0, le=100)
    period_sec: Optional[float] = Field(None, gt=0)
    include_energy: Optional[bool] = None
    include_power: Optional[bool] = None
    include_soc: Optional[bool] = None


def create_app(station: Station) -> FastAPI:
    app = FastAPI(title="EVSESim Control")

    def connector(connector_id: int) -> ConnectorSim:
        try:
            return station.model.get(connector_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"unknown connector {connector_id}")

    @app.get("/health")
    async def health():
        return {"ok": True, "connected": station.session.is_open, "boot_accepted": station.boot_accepted}

    @app.get("/connectors/{connector_id}")
    async def get_connector(connector_id: int):
        return connector(connector_id).snapshot()

    # -------- HTTP control for simulating plug/unplug & local start/stop --------
    @app.post("/plug/{connector_id}")
    async def plug(
        connector_id: int,
        vehicle_id: Optional[str] = None,
        auto_start: bool = False,
        id_tag: str = "LOCAL_TAG",
    ):
        connector(connector_id)
        if vehicle_id and vehicle_id not in station.catalog:
            raise HTTPException(status_code=404, detail=f"unknown vehicle {vehicle_id}")
        await station.plug(connector_id, vehicle_id)
        if auto_start:
            await station.start_local(connector_id, id_tag)
        return {"ok": True, "connector": connector_id, "plugged": True}

    @app.post("/unplug/{connector_id}")
    async def unplug(connector_id: int):
        connector(connector_id)
        await station.unplug(connector_id)
        return {"ok": True, "connector": connector_id, "plugged": False}

    @app.post("/local_start/{connector_id}")
    async def local_start(connector_id: int, id_tag: str = "LOCAL_TAG"):
        c = connector(connector_id)
        if not c.plugged:
            return {"ok": False, "error": "not plugged"}
        if c.session_active:
            return {"ok": False, "error": "session already active"}
        if station.is_starting(connector_id):
            return {"ok": False, "error": "start already pending"}
        msg_id = await station.start_local(connector_id, id_tag)
        if msg_id is None:
            return {"ok": False, "error": "not connected"}
        return {"ok": True, "message_id": msg_id}

    @app.post("/local_stop/{connector_id}")
    async def local_stop(connector_id: int):
        c = connector(connector_id)
        if not c.session_active or c.tx_id is None:
            return {"ok": False, "error": "no active session"}
        await station.stop_local(c.tx_id, reason="Local")
        return {"ok": True}

    @app.get("/limits/{connector_id}")
    async def limits(connector_id: int):
        connector(connector_id)
        return dataclasses.asdict(station.limits(connector_id))

    @app.post("/config/{connector_id}")
    async def configure(connector_id: int, body: ConnectorConfig):
        c = connector(connector_id)
        changes = body.model_dump(exclude_unset=True)
        if "vehicle_id" in changes and changes["vehicle_id"] not in station.catalog:
            raise HTTPException(status_code=404, detail=f"unknown vehicle {changes['vehicle_id']}")
        if "max_current_a" in changes:
            c.max_current_a = changes.pop("max_current_a")
        if "vehicle_id" in changes:
            c.vehicle_id = changes.pop("vehicle_id")
        engine = station.engines[connector_id]
        if "soc" in changes:
            c.soc = changes.pop("soc")
            engine.set_initial_state(c.soc, c.meter_wh)
        engine_changes = {k: v for k, v in changes.items() if v is not None}
        if engine_changes:
            engine.set_config(**engine_changes)
        return {"ok": True, "connector": c.snapshot(), "meter_values": dataclasses.asdict(engine.cfg)}

    @app.get("/vehicles")
    async def vehicles():
        return [{"id": v.id, "name": v.name} for v in station.catalog.all()]

    return app


async def main():
    model = EVSEModel(
        connectors=CONNECTORS,
        meter_start_wh=METER_START_WH,
        soc_pct=INITIAL_SOC,
        max_current_a=MAX_CURRENT_A,
        vehicle_id=VEHICLE_ID,
    )
    station = Station(model)
    app = create_app(station)
    # run OCPP client and HTTP API together
    server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=HTTP_PORT, loop="asyncio", log_level="info"))
    api_task = asyncio.create_task(server.serve())
    try:
        await station.run_forever(CSMS_URL, CPID, RECONNECT_DELAY_SEC)
    finally:
        await station.shutdown()
        api_task.cancel()


def run():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s | %(levelname)s | %(message)s")
    asyncio.run(main())


if __name__ == "__main__":
    run()
