"""Station orchestration: connectors, transactions, telemetry and limits.

The station owns one :class:`OCPPSession` and one
:class:`MeterValuesEngine` per connector.  Results of its own calls come
back through ``_on_result``; CSMS calls are routed to
:class:`StationCallHandler`.  Reconnecting is done here, the session
itself never retries.
"""
import asyncio
import functools
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import websockets
from ocpp.v16 import call
from ocpp.v16.enums import Action, AuthorizationStatus, ChargePointErrorCode, RegistrationStatus

from .config import (
    BASE_PHYSICAL_W,
    CONNECTOR_PHASES,
    CP_MODEL,
    CP_SERIAL_NUMBER,
    CP_VENDOR,
    EV_VOLTAGE,
    EVSE_TYPE,
    FIRMWARE_VERSION,
    METER_PERIOD_SEC,
    POWER_JITTER_W,
    SEND_HEARTBEAT_SEC,
    STATION_MAX_W,
)
from .limits import EvseType, LimitInputs, LimitsState, resolve
from .meter_values import EngineOptions, MeterValuesEngine, MVConfig
from .ocpp_handlers import StationCallHandler
from .profiles import ProfileStore
from .session import OCPPSession
from .state_machine import EVSEModel, EVSEState
from .vehicles import VehicleCatalog


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Station:
    def __init__(
        self,
        model: EVSEModel,
        *,
        catalog: Optional[VehicleCatalog] = None,
        profiles: Optional[ProfileStore] = None,
        evse_type: str = EVSE_TYPE,
        connector_phases: Optional[int] = CONNECTOR_PHASES,
        ev_voltage: Optional[float] = EV_VOLTAGE,
        station_max_w: Optional[float] = STATION_MAX_W,
        base_physical_w: float = BASE_PHYSICAL_W,
        power_jitter_w: float = POWER_JITTER_W,
        period_sec: float = METER_PERIOD_SEC,
        heartbeat_sec: float = SEND_HEARTBEAT_SEC,
        connect=websockets.connect,
    ):
        if evse_type not in EvseType.ALL:
            raise ValueError(f"unknown EVSE type {evse_type!r}, expected one of {EvseType.ALL}")
        self.model = model
        self.catalog = catalog or VehicleCatalog()
        self.profiles = profiles or ProfileStore()
        self.evse_type = evse_type
        self.connector_phases = connector_phases
        self.ev_voltage = ev_voltage
        self.station_max_w = station_max_w
        self.heartbeat_sec = heartbeat_sec
        self.boot_accepted = False

        self.handlers = StationCallHandler(self)
        self.session = OCPPSession(
            on_call=self.handlers.dispatch,
            on_result=self._on_result,
            on_error=self._on_error,
            on_close=self._on_close,
            connect=connect,
        )
        self.engines: Dict[int, MeterValuesEngine] = {
            cid: MeterValuesEngine(
                self.session,
                MVConfig(connector_id=cid, period_sec=period_sec),
                EngineOptions(base_physical_w=base_physical_w, power_jitter_w=power_jitter_w),
                limit_fn=functools.partial(self.applied_limit_w, cid),
                on_local_update=functools.partial(self._on_local_update, cid),
            )
            for cid in model.connectors
        }
        # Authorize msgId -> connector waiting to start
        self._authorize_requests: Dict[str, int] = {}
        # StartTransaction msgId -> connector waiting for its transaction id
        self._start_requests: Dict[str, int] = {}

    # -------- limits --------
    def limits(self, connector_id: int) -> LimitsState:
        c = self.model.get(connector_id)
        return resolve(LimitInputs(
            evse_type=self.evse_type,
            vehicle=self.catalog.get(c.vehicle_id),
            soc_pct=c.soc,
            max_current_a=c.max_current_a,
            ev_voltage=self.ev_voltage,
            backend_station_w=self.station_max_w,
            profiles=self.profiles.snapshot(connector_id),
            connector_phases=self.connector_phases,
        ))

    def applied_limit_w(self, connector_id: int) -> Optional[float]:
        applied_kw = self.limits(connector_id).applied_kw
        return None if applied_kw is None else applied_kw * 1000

    # -------- connection --------
    async def connect(self, url: str, identity: str) -> bool:
        if not await self.session.connect(url, identity):
            return False
        await self.send_boot_notification()
        return True

    async def run_forever(self, url: str, identity: str, reconnect_delay: float = 5) -> None:
        while True:
            if await self.connect(url, identity):
                await self.session.wait_closed()
            logging.info(f"Reconnecting to CSMS in {reconnect_delay:g}s...")
            await asyncio.sleep(reconnect_delay)

    async def shutdown(self) -> None:
        for engine in self.engines.values():
            engine.stop()
        await self.session.disconnect()

    async def _on_close(self) -> None:
        self.boot_accepted = False
        for cid in [*self._authorize_requests.values(), *self._start_requests.values()]:
            self.model.get(cid).id_tag = None
        self._authorize_requests.clear()
        self._start_requests.clear()

    # -------- EVSE -> CSMS --------
    async def send_boot_notification(self) -> Optional[str]:
        return await self.session.call(call.BootNotification(
            charge_point_vendor=CP_VENDOR,
            charge_point_model=CP_MODEL,
            charge_point_serial_number=CP_SERIAL_NUMBER,
            firmware_version=FIRMWARE_VERSION,
        ))

    async def send_status(self, connector_id: int) -> Optional[str]:
        st = self.model.get(connector_id).to_status()
        msg_id = await self.session.call(call.StatusNotification(
            connector_id=connector_id,
            error_code=ChargePointErrorCode.no_error,
            status=st,
            timestamp=_now(),
        ))
        logging.info(f"StatusNotification sent: connector={connector_id}, status={st}")
        return msg_id

    # -------- local state transitions --------
    async def plug(self, connector_id: int, vehicle_id: Optional[str] = None) -> None:
        c = self.model.get(connector_id)
        c.plugged = True
        if vehicle_id:
            c.vehicle_id = vehicle_id
        if not c.session_active:
            c.state = EVSEState.PREPARING
        await self.send_status(connector_id)

    async def unplug(self, connector_id: int) -> None:
        c = self.model.get(connector_id)
        if c.session_active and c.tx_id is not None:
            await self.stop_local(c.tx_id, reason="EVDisconnected")
        c.plugged = False
        c.state = EVSEState.AVAILABLE
        c.id_tag = None
        await self.send_status(connector_id)

    def is_starting(self, connector_id: int) -> bool:
        return connector_id in self._authorize_requests.values() or connector_id in self._start_requests.values()

    async def start_local(self, connector_id: int, id_tag: str) -> Optional[str]:
        """Authorize ``id_tag`` and return the Authorize msgId.

        StartTransaction follows once the CSMS accepts the tag, and charging
        begins once it accepts the transaction.
        """
        c = self.model.get(connector_id)
        if not c.plugged or c.session_active or self.is_starting(connector_id):
            logging.warning(f"Cannot start on connector {connector_id}: plugged={c.plugged}, active={c.session_active}")
            return None
        c.id_tag = id_tag
        msg_id = await self.session.call(call.Authorize(id_tag=id_tag))
        if msg_id is not None:
            self._authorize_requests[msg_id] = connector_id
        return msg_id

    async def _send_start_transaction(self, connector_id: int) -> Optional[str]:
        c = self.model.get(connector_id)
        msg_id = await self.session.call(call.StartTransaction(
            connector_id=connector_id,
            id_tag=c.id_tag,
            meter_start=int(round(c.meter_wh)),
            timestamp=_now(),
        ))
        if msg_id is not None:
            self._start_requests[msg_id] = connector_id
        return msg_id

    async def stop_local(self, tx_id: int, reason: Optional[str] = None) -> bool:
        c = self.model.get_by_tx(tx_id)
        if c is None:
            logging.warning(f"No active transaction {tx_id}")
            return False
        engine = self.engines[c.id]
        engine.stop()
        engine.set_transaction_id(None)
        await self.session.call(call.StopTransaction(
            meter_stop=int(round(c.meter_wh)),
            timestamp=_now(),
            transaction_id=tx_id,
            reason=reason,
            id_tag=c.id_tag or None,
        ))
        self.model.clear_tx(tx_id)
        self.profiles.clear_transaction(c.id)
        self.profiles.mark_transaction_stop(c.id)
        c.power_w = 0.0
        c.state = EVSEState.FINISHING
        await self.send_status(c.id)
        c.state = EVSEState.AVAILABLE
        c.id_tag = None
        await self.send_status(c.id)
        logging.info(f"Transaction {tx_id} stopped on connector {c.id} ({reason or 'Local'})")
        return True

    def _begin_charging(self, connector_id: int, tx_id: int) -> None:
        c = self.model.get(connector_id)
        self.model.assign_tx(connector_id, tx_id)
        c.state = EVSEState.CHARGING
        engine = self.engines[connector_id]
        vehicle = self.catalog.get(c.vehicle_id)
        engine.opts = EngineOptions(
            base_physical_w=engine.opts.base_physical_w,
            power_jitter_w=engine.opts.power_jitter_w,
            battery_kwh=vehicle.battery_kwh,
        )
        engine.set_initial_state(c.soc, c.meter_wh)
        engine.set_transaction_id(tx_id)
        self.profiles.mark_transaction_start(connector_id)
        engine.start()

    async def _on_local_update(self, connector_id: int, power_w: float, meter_wh: float, soc: float) -> None:
        c = self.model.get(connector_id)
        c.power_w = power_w
        c.meter_wh = meter_wh
        c.soc = soc
        if soc >= 100 and c.state == EVSEState.CHARGING:
            c.state = EVSEState.SUSPENDED_EV
            await self.send_status(connector_id)

    # -------- results of our calls --------
    async def _on_result(self, action: Optional[str], message_id: str, payload: Dict[str, Any]) -> None:
        if action == Action.boot_notification.value:
            status = payload.get("status")
            if status != RegistrationStatus.accepted.value:
                logging.warning(f"BootNotification not accepted: {status}")
                return
            self.boot_accepted = True
            self.session.start_heartbeat(payload.get("interval") or self.heartbeat_sec)
            for cid in self.model.connectors:
                await self.send_status(cid)
        elif action == Action.authorize.value:
            cid = self._authorize_requests.pop(message_id, None)
            if cid is None:
                return
            c = self.model.get(cid)
            status = (payload.get("idTagInfo") or {}).get("status")
            if status != AuthorizationStatus.accepted.value:
                logging.warning(f"Authorize refused for {c.id_tag} on connector {cid}: {status}")
                c.id_tag = None
                return
            if not c.plugged or c.session_active:
                logging.warning(f"Connector {cid} no longer ready, StartTransaction not sent")
                c.id_tag = None
                return
            logging.info(f"Authorize accepted: connector={cid}, idTag={c.id_tag}")
            await self._send_start_transaction(cid)
        elif action == Action.start_transaction.value:
            cid = self._start_requests.pop(message_id, None)
            if cid is None:
                return
            status = (payload.get("idTagInfo") or {}).get("status")
            tx_id = payload.get("transactionId")
            if status != AuthorizationStatus.accepted.value or tx_id is None:
                logging.warning(f"StartTransaction refused on connector {cid}: {status}")
                self.model.get(cid).id_tag = None
                return
            self._begin_charging(cid, int(tx_id))
            logging.info(f"StartTransaction confirmed: connector={cid}, tx_id={tx_id}")
            await self.send_status(cid)

    async def _on_error(
        self, action: Optional[str], message_id: str, code: str, description: str, details: Any
    ) -> None:
        cid = self._authorize_requests.pop(message_id, None)
        if cid is None:
            cid = self._start_requests.pop(message_id, None)
        if cid is not None:
            logging.warning(f"{action} failed on connector {cid}: {code} {description}")
            self.model.get(cid).id_tag = None
