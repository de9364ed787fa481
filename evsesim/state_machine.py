from typing import Dict, Optional

from ocpp.v16.enums import ChargePointStatus


class EVSEState:
    AVAILABLE = "Available"
    PREPARING = "Preparing"
    CHARGING = "Charging"
    SUSPENDED_EV = "SuspendedEV"
    SUSPENDED_EVSE = "SuspendedEVSE"
    FINISHING = "Finishing"
    FAULTED = "Faulted"


class ConnectorSim:
    def __init__(
        self,
        connector_id: int,
        meter_start_wh: int = 0,
        soc_pct: float = 20.0,
        max_current_a: Optional[float] = None,
        vehicle_id: Optional[str] = None,
    ):
        self.id = connector_id
        self.state = EVSEState.AVAILABLE
        self.plugged = False
        self.session_active = False
        self.id_tag: Optional[str] = None
        self.tx_id: Optional[int] = None
        self.meter_wh: float = meter_start_wh
        self.soc: float = soc_pct
        self.power_w: float = 0.0
        # current cap chosen by the operator (A per phase)
        self.max_current_a = max_current_a
        self.vehicle_id = vehicle_id

    def to_status(self) -> str:
        # map internal -> OCPP status set
        return {
            EVSEState.AVAILABLE: ChargePointStatus.available,
            EVSEState.PREPARING: ChargePointStatus.preparing,
            EVSEState.CHARGING: ChargePointStatus.charging,
            EVSEState.SUSPENDED_EV: ChargePointStatus.suspended_ev,
            EVSEState.SUSPENDED_EVSE: ChargePointStatus.suspended_evse,
            EVSEState.FINISHING: ChargePointStatus.finishing,
            EVSEState.FAULTED: ChargePointStatus.faulted,
        }.get(self.state, ChargePointStatus.available).value

    def snapshot(self) -> dict:
        return {
            "connector_id": self.id,
            "state": self.state,
            "plugged": self.plugged,
            "session_active": self.session_active,
            "id_tag": self.id_tag,
            "transaction_id": self.tx_id,
            "meter_wh": round(self.meter_wh, 2),
            "soc": round(self.soc, 1),
            "power_w": round(self.power_w),
            "max_current_a": self.max_current_a,
            "vehicle_id": self.vehicle_id,
        }


class EVSEModel:
    def __init__(self, connectors=1, meter_start_wh=0, soc_pct=20.0, max_current_a=None, vehicle_id=None):
        self.connectors: Dict[int, ConnectorSim] = {
            i: ConnectorSim(i, meter_start_wh, soc_pct, max_current_a, vehicle_id)
            for i in range(1, connectors + 1)
        }
        # map transaction_id -> connector_id for quick lookup
        self.tx_map: Dict[int, int] = {}

    def get(self, cid: int) -> ConnectorSim:
        return self.connectors[cid]

    def get_by_tx(self, tx_id: int) -> Optional[ConnectorSim]:
        cid = self.tx_map.get(tx_id)
        if cid is None:
            return None
        return self.connectors[cid]

    def assign_tx(self, cid: int, tx_id: int) -> None:
        """Register a transaction for a connector."""
        self.connectors[cid].tx_id = tx_id
        self.connectors[cid].session_active = True
        self.tx_map[tx_id] = cid

    def clear_tx(self, tx_id: int) -> Optional[ConnectorSim]:
        """Remove a transaction mapping and return the connector."""
        cid = self.tx_map.pop(tx_id, None)
        if cid is None:
            return None
        c = self.connectors[cid]
        c.tx_id = None
        c.session_active = False
        return c
