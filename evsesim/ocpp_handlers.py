import functools
import inspect
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List

from ocpp.charge_point import camel_to_snake_case, remove_nones, serialize_as_dict, snake_to_camel_case
from ocpp.exceptions import NotImplementedError as NotImplementedCallError
from ocpp.exceptions import NotSupportedError, OCPPError
from ocpp.messages import Call, validate_payload
from ocpp.routing import create_route_map, on
from ocpp.v16 import call_result
from ocpp.v16.enums import (
    Action,
    ChargingProfilePurposeType,
    ChargingProfileStatus,
    ClearChargingProfileStatus,
    RemoteStartStopStatus,
    UnlockStatus,
)
from pydantic import ValidationError

from .profiles import ChargingProfile

if TYPE_CHECKING:
    from .station import Station

OCPP_VERSION = "1.6"


def _no_route(action: str) -> OCPPError:
    try:
        Action(action)
    except ValueError:
        return NotSupportedError(details={"cause": f"{action} not supported by OCPP{OCPP_VERSION}."})
    return NotImplementedCallError(details={"cause": f"No handler for {action} registered."})


class StationCallHandler:
    """Answers the CALLs a CSMS sends to the station.

    Handlers are routed with ``@on(Action...)`` and get the payload, already
    checked against the OCPP 1.6 JSON schema, as snake_case keyword
    arguments.  Work that must happen after the answer went out (e.g.
    Authorize after RemoteStartTransaction) is queued with ``_after``.
    """

    def __init__(self, station: "Station"):
        self.station = station
        self.route_map = create_route_map(self)
        self._followups: List[Callable[[], Awaitable[Any]]] = []

    def _after(self, followup: Callable[[], Awaitable[Any]]) -> None:
        self._followups.append(followup)

    async def dispatch(self, action: str, message_id: str, payload: Dict[str, Any]) -> None:
        session = self.station.session
        msg = Call(message_id, action, payload)
        try:
            result = await self._handle(msg)
        except Exception as e:
            self._followups.clear()
            if isinstance(e, OCPPError):
                logging.warning(f"→ {action} rejected with {e.code}: {e.description}")
            else:
                logging.exception(f"Handler for {action} failed")
            err = msg.create_call_error(e)
            await session.send_call_error(message_id, err.error_code, err.error_description, err.error_details)
            return

        await session.send_call_result(message_id, result.payload)
        followups, self._followups = self._followups, []
        for followup in followups:
            await followup()

    async def _handle(self, msg: Call):
        handlers = self.route_map.get(msg.action)
        if not handlers or "_on_action" not in handlers:
            raise _no_route(msg.action)
        validate = not handlers.get("_skip_schema_validation", False)
        if validate:
            await validate_payload(msg, OCPP_VERSION)

        response = handlers["_on_action"](**camel_to_snake_case(msg.payload))
        if inspect.isawaitable(response):
            response = await response

        result = msg.create_call_result(snake_to_camel_case(remove_nones(serialize_as_dict(response))))
        if validate:
            await validate_payload(result, OCPP_VERSION)
        return result

    # ====== CSMS -> EVSE ======

    @on(Action.remote_start_transaction)
    async def on_remote_start(self, id_tag, connector_id=None, charging_profile=None, **kwargs):
        cid = connector_id or 1
        model = self.station.model
        if cid not in model.connectors:
            return call_result.RemoteStartTransaction(status=RemoteStartStopStatus.rejected)
        c = model.get(cid)
        # reject when not plugged or already charging
        if not c.plugged or c.session_active or self.station.is_starting(cid):
            return call_result.RemoteStartTransaction(status=RemoteStartStopStatus.rejected)
        if charging_profile is not None:
            try:
                profile = ChargingProfile.model_validate(charging_profile)
            except ValidationError as e:
                logging.warning(f"RemoteStart with invalid chargingProfile: {e}")
                return call_result.RemoteStartTransaction(status=RemoteStartStopStatus.rejected)
            self.station.profiles.set(cid, profile)
        self._after(functools.partial(self.station.start_local, cid, id_tag))
        return call_result.RemoteStartTransaction(status=RemoteStartStopStatus.accepted)

    @on(Action.remote_stop_transaction)
    async def on_remote_stop(self, transaction_id, **kwargs):
        if self.station.model.get_by_tx(transaction_id) is None:
            logging.warning(f"RemoteStop for unknown transaction {transaction_id}")
            return call_result.RemoteStopTransaction(status=RemoteStartStopStatus.rejected)
        self._after(functools.partial(self.station.stop_local, transaction_id, reason="Remote"))
        return call_result.RemoteStopTransaction(status=RemoteStartStopStatus.accepted)

    @on(Action.set_charging_profile)
    async def on_set_charging_profile(self, connector_id, cs_charging_profiles, **kwargs):
        if connector_id != 0 and connector_id not in self.station.model.connectors:
            return call_result.SetChargingProfile(status=ChargingProfileStatus.rejected)
        try:
            profile = ChargingProfile.model_validate(cs_charging_profiles)
        except ValidationError as e:
            logging.warning(f"Invalid csChargingProfiles: {e}")
            return call_result.SetChargingProfile(status=ChargingProfileStatus.rejected)
        if profile.charging_profile_purpose == ChargingProfilePurposeType.tx_profile:
            if connector_id == 0 or not self.station.model.get(connector_id).session_active:
                return call_result.SetChargingProfile(status=ChargingProfileStatus.rejected)
        self.station.profiles.set(connector_id, profile)
        return call_result.SetChargingProfile(status=ChargingProfileStatus.accepted)

    @on(Action.clear_charging_profile)
    async def on_clear_charging_profile(
        self, id=None, connector_id=None, charging_profile_purpose=None, stack_level=None, **kwargs
    ):
        removed = self.station.profiles.clear(
            profile_id=id,
            connector_id=connector_id,
            purpose=charging_profile_purpose,
            stack_level=stack_level,
        )
        if removed:
            return call_result.ClearChargingProfile(status=ClearChargingProfileStatus.accepted)
        return call_result.ClearChargingProfile(status=ClearChargingProfileStatus.unknown)

    @on(Action.unlock_connector)
    async def on_unlock_connector(self, connector_id, **kwargs):
        if connector_id not in self.station.model.connectors:
            return call_result.UnlockConnector(status=UnlockStatus.not_supported)
        c = self.station.model.get(connector_id)
        if c.session_active and c.tx_id is not None:
            self._after(functools.partial(self.station.stop_local, c.tx_id, reason="UnlockCommand"))
        return call_result.UnlockConnector(status=UnlockStatus.unlocked)
