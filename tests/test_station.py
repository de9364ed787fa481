import json
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from evsesim.profiles import ChargingProfile
from evsesim.state_machine import EVSEState

TX_PROFILE = {
    "chargingProfileId": 5,
    "transactionId": 42,
    "stackLevel": 0,
    "chargingProfilePurpose": "TxProfile",
    "chargingProfileKind": "Absolute",
    "chargingSchedule": {
        "chargingRateUnit": "A",
        "chargingSchedulePeriod": [{"startPeriod": 0, "limit": 16}],
    },
}


@pytest_asyncio.fixture
async def online(station, ws):
    assert await station.connect("ws://csms/ocpp", "CP1")
    [boot] = ws.calls("BootNotification")
    await station.session.handle_frame(json.dumps(
        [3, boot[1], {"status": "Accepted", "currentTime": "2024-01-01T00:00:00Z", "interval": 300}]
    ))
    yield station
    await station.shutdown()


async def csms_call(station, ws, message_id, action, payload):
    await station.session.handle_frame(json.dumps([2, message_id, action, payload]))
    return [f for f in ws.sent if f[0] in (3, 4) and f[1] == message_id]


async def answer(station, message_id, payload):
    await station.session.handle_frame(json.dumps([3, message_id, payload]))


async def charging(station, ws, connector_id=1, tx_id=42, vehicle_id="renault_zoe_ze50"):
    await station.plug(connector_id, vehicle_id)
    auth_id = await station.start_local(connector_id, "TAG1")
    await answer(station, auth_id, {"idTagInfo": {"status": "Accepted"}})
    start = ws.calls("StartTransaction")[-1]
    await answer(station, start[1], {"transactionId": tx_id, "idTagInfo": {"status": "Accepted"}})


def statuses(ws, connector_id):
    return [f[3]["status"] for f in ws.calls("StatusNotification") if f[3]["connectorId"] == connector_id]


@pytest.mark.asyncio
async def test_boot_accepted_starts_heartbeat_and_reports_connectors(online, ws):
    [boot] = ws.calls("BootNotification")
    assert boot[3]["chargePointVendor"]
    assert boot[3]["chargePointModel"]
    assert online.boot_accepted
    assert online.session.heartbeat_interval == 300
    assert statuses(ws, 1) == ["Available"]
    assert statuses(ws, 2) == ["Available"]


@pytest.mark.asyncio
async def test_boot_rejected_keeps_station_idle(station, ws):
    await station.connect("ws://csms/ocpp", "CP1")
    [boot] = ws.calls("BootNotification")
    await station.session.handle_frame(json.dumps(
        [3, boot[1], {"status": "Rejected", "currentTime": "2024-01-01T00:00:00Z", "interval": 60}]
    ))
    assert not station.boot_accepted
    assert station.session.heartbeat_interval is None
    await station.shutdown()


@pytest.mark.asyncio
async def test_local_start_accepted_begins_charging(online, ws):
    await charging(online, ws)

    [auth] = ws.calls("Authorize")
    [start] = ws.calls("StartTransaction")
    assert auth[3] == {"idTag": "TAG1"}
    assert ws.sent.index(auth) < ws.sent.index(start)
    assert start[3]["connectorId"] == 1
    assert start[3]["idTag"] == "TAG1"
    assert start[3]["meterStart"] == 0

    c = online.model.get(1)
    assert c.tx_id == 42
    assert c.state == EVSEState.CHARGING
    assert online.model.get_by_tx(42) is c
    assert online.engines[1].running
    assert online.engines[1].opts.battery_kwh == 52
    assert statuses(ws, 1)[-2:] == ["Preparing", "Charging"]


@pytest.mark.asyncio
async def test_start_refused_by_csms(online, ws):
    await online.plug(1)
    auth_id = await online.start_local(1, "TAG1")
    await answer(online, auth_id, {"idTagInfo": {"status": "Accepted"}})
    [start] = ws.calls("StartTransaction")
    await answer(online, start[1], {"transactionId": 9, "idTagInfo": {"status": "Invalid"}})

    c = online.model.get(1)
    assert not c.session_active
    assert c.tx_id is None
    assert c.id_tag is None
    assert not online.engines[1].running


@pytest.mark.asyncio
async def test_rejected_tag_never_starts_transaction(online, ws):
    await online.plug(1)
    auth_id = await online.start_local(1, "BAD")
    assert online.model.get(1).id_tag == "BAD"
    # a second start while the tag is being checked is refused
    assert await online.start_local(1, "BAD") is None

    await answer(online, auth_id, {"idTagInfo": {"status": "Blocked"}})

    assert ws.calls("StartTransaction") == []
    c = online.model.get(1)
    assert c.id_tag is None
    assert c.state == EVSEState.PREPARING
    assert not online.engines[1].running
    assert await online.start_local(1, "TAG1") is not None


@pytest.mark.asyncio
async def test_authorize_error_releases_connector(online, ws):
    await online.plug(1)
    auth_id = await online.start_local(1, "TAG1")
    await online.session.handle_frame(json.dumps([4, auth_id, "InternalError", "db down", {}]))

    assert ws.calls("StartTransaction") == []
    assert online.model.get(1).id_tag is None
    assert not online.is_starting(1)


@pytest.mark.asyncio
async def test_unplug_before_authorize_answer(online, ws):
    await online.plug(1)
    auth_id = await online.start_local(1, "TAG1")
    await online.unplug(1)
    await answer(online, auth_id, {"idTagInfo": {"status": "Accepted"}})
    assert ws.calls("StartTransaction") == []


@pytest.mark.asyncio
async def test_start_needs_plugged_vehicle(online, ws):
    assert await online.start_local(1, "TAG") is None
    assert ws.calls("Authorize") == []
    assert ws.calls("StartTransaction") == []


@pytest.mark.asyncio
async def test_meter_values_follow_applied_limit(online, ws):
    await charging(online, ws)
    engine = online.engines[1]

    # ZOE on 3x32 A: vehicle AC max 22 kW is the tightest ceiling
    assert online.limits(1).applied_kw == 22
    assert await engine.tick() == 22000
    mv = ws.calls("MeterValues")[-1][3]
    assert mv["transactionId"] == 42

    [reply] = await csms_call(online, ws, "srv-1", "SetChargingProfile", {
        "connectorId": 1, "csChargingProfiles": TX_PROFILE,
    })
    assert reply == [3, "srv-1", {"status": "Accepted"}]
    assert online.limits(1).applied_kw == 11.04
    assert await engine.tick() == pytest.approx(11040)
    assert online.model.get(1).power_w == pytest.approx(11040)


@pytest.mark.asyncio
async def test_operator_current_cap_lowers_limit(online, ws):
    await charging(online, ws)
    online.model.get(1).max_current_a = 10
    state = online.limits(1)
    assert state.debug.hardware_kw == 6.9
    assert state.applied_kw == 6.9


@pytest.mark.asyncio
async def test_tx_profile_rejected_without_transaction(online, ws):
    [reply] = await csms_call(online, ws, "srv-1", "SetChargingProfile", {
        "connectorId": 1, "csChargingProfiles": TX_PROFILE,
    })
    assert reply[2] == {"status": "Rejected"}


@pytest.mark.asyncio
async def test_invalid_profile_rejected(online, ws):
    empty = dict(TX_PROFILE, chargingProfilePurpose="TxDefaultProfile",
                 chargingSchedule={"chargingRateUnit": "A", "chargingSchedulePeriod": []})
    [reply] = await csms_call(online, ws, "srv-1", "SetChargingProfile", {
        "connectorId": 1, "csChargingProfiles": empty,
    })
    assert reply[2] == {"status": "Rejected"}

    [reply] = await csms_call(online, ws, "srv-2", "SetChargingProfile", {
        "connectorId": 1, "csChargingProfiles": {"chargingProfileId": 1},
    })
    assert reply[0] == 4
    assert reply[2] == "ProtocolError"
    assert online.profiles.profiles(1) == []


@pytest.mark.asyncio
async def test_profile_schedule_steps_down_over_time(online, ws):
    stepped = {
        "chargingProfileId": 8,
        "stackLevel": 0,
        "chargingProfilePurpose": "TxDefaultProfile",
        "chargingProfileKind": "Absolute",
        "chargingSchedule": {
            "chargingRateUnit": "W",
            "startSchedule": "2024-01-01T08:00:00Z",
            "chargingSchedulePeriod": [{"startPeriod": 0, "limit": 11000}, {"startPeriod": 3600, "limit": 3000}],
        },
    }
    [reply] = await csms_call(online, ws, "srv-1", "SetChargingProfile", {"connectorId": 1, "csChargingProfiles": stepped})
    assert reply[2] == {"status": "Accepted"}

    first = datetime(2024, 1, 1, 8, 10, tzinfo=timezone.utc)
    assert online.profiles.snapshot(1, now=first).tx_default_limit_w == 11000
    assert online.profiles.snapshot(1, now=first + timedelta(hours=1)).tx_default_limit_w == 3000


@pytest.mark.asyncio
async def test_clear_charging_profile(online, ws):
    default = dict(TX_PROFILE, chargingProfilePurpose="TxDefaultProfile")
    del default["transactionId"]
    await csms_call(online, ws, "srv-1", "SetChargingProfile", {"connectorId": 0, "csChargingProfiles": default})
    assert online.profiles.snapshot(2).tx_default_limit_w == 16

    [reply] = await csms_call(online, ws, "srv-2", "ClearChargingProfile", {"id": 5})
    assert reply[2] == {"status": "Accepted"}
    [reply] = await csms_call(online, ws, "srv-3", "ClearChargingProfile", {"id": 5})
    assert reply[2] == {"status": "Unknown"}


@pytest.mark.asyncio
async def test_remote_start_answers_before_authorize(online, ws):
    [reply] = await csms_call(online, ws, "srv-1", "RemoteStartTransaction", {"idTag": "R1", "connectorId": 1})
    assert reply[2] == {"status": "Rejected"}
    assert ws.calls("Authorize") == []

    await online.plug(1)
    [reply] = await csms_call(online, ws, "srv-2", "RemoteStartTransaction", {"idTag": "R1", "connectorId": 1})
    assert reply[2] == {"status": "Accepted"}
    [auth] = ws.calls("Authorize")
    assert ws.sent.index(reply) < ws.sent.index(auth)
    assert auth[3] == {"idTag": "R1"}
    assert ws.calls("StartTransaction") == []

    [reply] = await csms_call(online, ws, "srv-3", "RemoteStartTransaction", {"idTag": "R2", "connectorId": 1})
    assert reply[2] == {"status": "Rejected"}

    await answer(online, auth[1], {"idTagInfo": {"status": "Accepted"}})
    [start] = ws.calls("StartTransaction")
    assert start[3]["idTag"] == "R1"


@pytest.mark.asyncio
async def test_remote_start_with_rejected_tag(online, ws):
    await online.plug(1)
    await csms_call(online, ws, "srv-1", "RemoteStartTransaction", {"idTag": "R9", "connectorId": 1})
    [auth] = ws.calls("Authorize")
    await answer(online, auth[1], {"idTagInfo": {"status": "Invalid"}})
    assert ws.calls("StartTransaction") == []
    assert not online.model.get(1).session_active


@pytest.mark.asyncio
async def test_wrongly_typed_fields_get_type_constraint_violation(online, ws):
    await online.plug(1)
    [reply] = await csms_call(online, ws, "srv-1", "RemoteStartTransaction", {"idTag": 12345, "connectorId": 1})
    assert reply[0] == 4
    assert reply[2] == "TypeConstraintViolation"
    assert ws.calls("Authorize") == []

    [reply] = await csms_call(online, ws, "srv-2", "UnlockConnector", {"connectorId": "abc"})
    assert reply[0] == 4
    assert reply[2] == "TypeConstraintViolation"


@pytest.mark.asyncio
async def test_remote_stop(online, ws):
    await charging(online, ws)
    online.profiles.set(1, ChargingProfile.model_validate(TX_PROFILE))

    [reply] = await csms_call(online, ws, "srv-1", "RemoteStopTransaction", {"transactionId": 99})
    assert reply[2] == {"status": "Rejected"}

    [reply] = await csms_call(online, ws, "srv-2", "RemoteStopTransaction", {"transactionId": 42})
    assert reply[2] == {"status": "Accepted"}
    [stop] = ws.calls("StopTransaction")
    assert stop[3]["transactionId"] == 42
    assert stop[3]["reason"] == "Remote"

    c = online.model.get(1)
    assert c.tx_id is None and not c.session_active
    assert not online.engines[1].running
    assert online.engines[1].transaction_id is None
    assert online.profiles.snapshot(1).tx_profile_limit_w is None
    assert statuses(ws, 1)[-2:] == ["Finishing", "Available"]


@pytest.mark.asyncio
async def test_unlock_stops_running_session(online, ws):
    await charging(online, ws)
    [reply] = await csms_call(online, ws, "srv-1", "UnlockConnector", {"connectorId": 1})
    assert reply[2] == {"status": "Unlocked"}
    [stop] = ws.calls("StopTransaction")
    assert ws.sent.index(reply) < ws.sent.index(stop)
    assert stop[3]["reason"] == "UnlockCommand"
    assert not online.model.get(1).session_active

    [reply] = await csms_call(online, ws, "srv-2", "UnlockConnector", {"connectorId": 7})
    assert reply[2] == {"status": "NotSupported"}


@pytest.mark.asyncio
async def test_unknown_action_gets_not_implemented(online, ws):
    [reply] = await csms_call(online, ws, "srv-1", "ReserveNow", {"connectorId": 1})
    assert reply[0] == 4
    assert reply[2] == "NotImplemented"

    [reply] = await csms_call(online, ws, "srv-2", "FooBar", {})
    assert reply[0] == 4
    assert reply[2] == "NotSupported"


@pytest.mark.asyncio
async def test_incomplete_payload_gets_protocol_error(online, ws):
    [reply] = await csms_call(online, ws, "srv-1", "RemoteStopTransaction", {})
    assert reply[0] == 4
    assert reply[2] == "ProtocolError"


@pytest.mark.asyncio
async def test_full_battery_suspends_connector(online, ws):
    await charging(online, ws)
    c = online.model.get(1)
    engine = online.engines[1]
    engine.set_initial_state(99.99, c.meter_wh)

    await engine.tick()

    assert c.soc == 100
    assert c.state == EVSEState.SUSPENDED_EV
    assert not engine.running
    assert statuses(ws, 1)[-1] == "SuspendedEV"


@pytest.mark.asyncio
async def test_unplug_ends_session(online, ws):
    await charging(online, ws)
    await online.unplug(1)
    [stop] = ws.calls("StopTransaction")
    assert stop[3]["reason"] == "EVDisconnected"
    c = online.model.get(1)
    assert not c.plugged
    assert c.state == EVSEState.AVAILABLE


@pytest.mark.asyncio
async def test_calls_dropped_while_offline(station, ws):
    await station.plug(1)
    assert await station.start_local(1, "TAG") is None
    assert ws.sent == []
    assert station.session.pending == {}
