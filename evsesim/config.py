import os


def _opt_float(name):
    value = os.getenv(name)
    return float(value) if value else None


CSMS_URL = os.getenv("CSMS_URL", "ws://127.0.0.1:9000/ocpp")

CPID = os.getenv("CPID", "TestCP01")
CONNECTORS = int(os.getenv("CONNECTORS", "1"))

# information used in BootNotification to mimic a real charger
CP_VENDOR = os.getenv("CP_VENDOR", "EVSESim")
CP_MODEL = os.getenv("CP_MODEL", "SIM-AC22")
CP_SERIAL_NUMBER = os.getenv("CP_SERIAL_NUMBER", "SIM0000001")
FIRMWARE_VERSION = os.getenv("FIRMWARE_VERSION", "1.0.0")

# electrical side: ac-mono | ac-bi | ac-tri | dc
EVSE_TYPE = os.getenv("EVSE_TYPE", "ac-tri")
CONNECTOR_PHASES = int(os.getenv("CONNECTOR_PHASES", "0")) or None
MAX_CURRENT_A = _opt_float("MAX_CURRENT_A")                    # operator cap, A per phase
EV_VOLTAGE = float(os.getenv("EV_VOLTAGE", "230"))
STATION_MAX_W = _opt_float("STATION_MAX_W")                    # backend station ceiling
VEHICLE_ID = os.getenv("VEHICLE_ID", "generic")

METER_START_WH = int(os.getenv("METER_START_WH", "0"))
INITIAL_SOC = float(os.getenv("INITIAL_SOC", "20"))
BASE_PHYSICAL_W = float(os.getenv("BASE_PHYSICAL_W", "22000"))  # 22 kW
POWER_JITTER_W = float(os.getenv("POWER_JITTER_W", "0"))
METER_PERIOD_SEC = float(os.getenv("METER_PERIOD_SEC", "10"))
SEND_HEARTBEAT_SEC = int(os.getenv("SEND_HEARTBEAT_SEC", "60"))
RECONNECT_DELAY_SEC = float(os.getenv("RECONNECT_DELAY_SEC", "5"))

HTTP_PORT = int(os.getenv("HTTP_PORT", "7071"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
