from typing import Dict, Iterable, List

from .limits import PowerCurveSegment as Seg
from .limits import VehicleProfile

GENERIC_ID = "generic"

_BUILTIN = (
    VehicleProfile(id=GENERIC_ID, name="Generic EV"),
    VehicleProfile(
        id="renault_zoe_ze50",
        name="Renault ZOE ZE50",
        max_power_ac_w=22000,
        max_power_dc_w=46000,
        max_current_ac_a=32,
        phases=3,
        dc_power_curve=(Seg(0, 40, 46), Seg(40, 60, 40), Seg(60, 80, 25), Seg(80, 90, 15), Seg(90, 100, 8)),
        battery_kwh=52,
    ),
    VehicleProfile(
        id="tesla_model3_lr",
        name="Tesla Model 3 Long Range",
        max_power_ac_w=11000,
        max_power_dc_w=250000,
        max_current_ac_a=16,
        phases=3,
        dc_power_curve=(
            Seg(0, 20, 250), Seg(20, 40, 220), Seg(40, 60, 160), Seg(60, 80, 100), Seg(80, 90, 70),
            Seg(90, 100, 40),
        ),
        battery_kwh=75,
    ),
    VehicleProfile(
        id="nissan_leaf_62",
        name="Nissan Leaf 62 kWh",
        max_power_ac_w=7400,
        max_power_dc_w=50000,
        max_current_ac_a=32,
        phases=1,
        dc_power_curve=(Seg(0, 50, 50), Seg(50, 70, 45), Seg(70, 80, 35), Seg(80, 90, 20), Seg(90, 100, 10)),
        battery_kwh=62,
    ),
    VehicleProfile(
        id="bmw_i3",
        name="BMW i3 42 kWh",
        max_power_ac_w=11000,
        max_power_dc_w=50000,
        max_current_ac_a=16,
        phases=3,
        ac_power_curve=(Seg(0, 90, 11), Seg(90, 100, 3.7)),
        dc_power_curve=(Seg(0, 50, 50), Seg(50, 70, 48), Seg(70, 80, 40), Seg(80, 90, 25), Seg(90, 100, 12)),
        battery_kwh=42.2,
    ),
)


class VehicleCatalog:
    """Reference vehicle data, looked up by id."""

    def __init__(self, profiles: Iterable[VehicleProfile] = _BUILTIN):
        self._profiles: Dict[str, VehicleProfile] = {p.id: p for p in profiles}

    def register(self, profile: VehicleProfile) -> None:
        self._profiles[profile.id] = profile

    def get(self, vehicle_id) -> VehicleProfile:
        """Return the vehicle, or the generic one for an unknown/empty id."""
        if vehicle_id and vehicle_id in self._profiles:
            return self._profiles[vehicle_id]
        return self._profiles.get(GENERIC_ID) or VehicleProfile(id=GENERIC_ID, name="Generic EV")

    def __contains__(self, vehicle_id) -> bool:
        return vehicle_id in self._profiles

    def all(self) -> List[VehicleProfile]:
        return list(self._profiles.values())
