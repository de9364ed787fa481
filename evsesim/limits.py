"""Power limit resolution for a simulated connector.

``resolve`` merges what the hardware, the vehicle, the station backend and
the smart charging profiles allow into two figures:

* the physical limit, what the connector could deliver ignoring profiles
* the applied limit, the physical limit further restricted by whichever
  profile currently governs

An unbounded ceiling is ``None`` all the way through, so nothing
non-finite ever reaches a MeterValues payload or the HTTP API.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

DEFAULT_AC_VOLTAGE = 230.0


class EvseType:
    AC_MONO = "ac-mono"
    AC_BI = "ac-bi"
    AC_TRI = "ac-tri"
    DC = "dc"

    ALL = (AC_MONO, AC_BI, AC_TRI, DC)


@dataclass(frozen=True)
class PowerCurveSegment:
    """Vehicle acceptance for SoC in ``[soc_from, soc_to)``."""

    soc_from: float
    soc_to: float
    kw: float


@dataclass(frozen=True)
class VehicleProfile:
    id: str
    name: str
    max_power_ac_w: Optional[float] = None
    max_power_dc_w: Optional[float] = None
    max_current_ac_a: Optional[float] = None  # per phase
    phases: Optional[int] = None
    ac_power_curve: Tuple[PowerCurveSegment, ...] = ()
    dc_power_curve: Tuple[PowerCurveSegment, ...] = ()
    battery_kwh: float = 75.0

    def __post_init__(self):
        if self.battery_kwh <= 0:
            raise ValueError(f"{self.id}: battery_kwh must be positive, got {self.battery_kwh}")


@dataclass(frozen=True)
class ActiveProfiles:
    tx_profile_limit_w: Optional[float] = None
    tx_profile_is_current: bool = False
    tx_default_limit_w: Optional[float] = None
    tx_default_is_current: bool = False
    station_max_limit_w: Optional[float] = None
    station_max_is_current: bool = False


@dataclass(frozen=True)
class LimitInputs:
    evse_type: str
    vehicle: VehicleProfile
    soc_pct: float
    max_current_a: Optional[float] = None
    ev_voltage: Optional[float] = None
    backend_station_w: Optional[float] = None
    profiles: ActiveProfiles = ActiveProfiles()
    connector_phases: Optional[int] = None


@dataclass(frozen=True)
class LimitsDebug:
    vehicle_kw: Optional[float]
    hardware_kw: Optional[float]
    station_kw: Optional[float]
    picked_profile_kw: Optional[float]


@dataclass(frozen=True)
class LimitsState:
    physical_kw: Optional[float]
    applied_kw: Optional[float]
    debug: LimitsDebug


def _round(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(value, 2)


def _min_bounded(*values: Optional[float]) -> Optional[float]:
    bounded = [v for v in values if v is not None]
    return min(bounded) if bounded else None


def _phases(inp: LimitInputs) -> int:
    if inp.connector_phases:
        return inp.connector_phases
    if inp.evse_type == EvseType.AC_TRI:
        return 3
    if inp.evse_type == EvseType.AC_BI:
        return 2
    return 1


def _voltage(inp: LimitInputs) -> float:
    if inp.ev_voltage and inp.ev_voltage > 0:
        return inp.ev_voltage
    return DEFAULT_AC_VOLTAGE


def _curve_kw(curve: Sequence[PowerCurveSegment], soc_pct: float) -> Optional[float]:
    soc = max(0.0, min(100.0, soc_pct))
    for seg in curve:
        if seg.soc_from <= soc < seg.soc_to:
            return seg.kw
    return None


def vehicle_kw(vehicle: VehicleProfile, soc_pct: float, dc: bool) -> Optional[float]:
    curve = vehicle.dc_power_curve if dc else vehicle.ac_power_curve
    if curve:
        kw = _curve_kw(curve, soc_pct)
        if kw is not None:
            return kw
    max_w = vehicle.max_power_dc_w if dc else vehicle.max_power_ac_w
    return None if max_w is None else max_w / 1000


def hardware_kw(inp: LimitInputs) -> Optional[float]:
    if inp.evse_type == EvseType.DC:
        return None
    current_a = _min_bounded(inp.vehicle.max_current_ac_a, inp.max_current_a)
    if current_a is None:
        return None
    return _voltage(inp) * current_a * _phases(inp) / 1000


def station_kw(backend_station_w: Optional[float]) -> Optional[float]:
    if backend_station_w and backend_station_w > 0:
        return backend_station_w / 1000
    return None


def profile_kw(inp: LimitInputs) -> Optional[float]:
    """Limit of the highest priority profile slot holding a positive value."""
    p = inp.profiles
    slots = (
        (p.tx_profile_limit_w, p.tx_profile_is_current),
        (p.tx_default_limit_w, p.tx_default_is_current),
        (p.station_max_limit_w, p.station_max_is_current),
    )
    for value, is_current in slots:
        if not value or value <= 0:
            continue
        if inp.evse_type == EvseType.DC or not is_current:
            return value / 1000
        # A -> W
        return _voltage(inp) * value * _phases(inp) / 1000
    return None


def resolve(inp: LimitInputs) -> LimitsState:
    """Compute physical and applied limits (kW) for one set of inputs."""
    dc = inp.evse_type == EvseType.DC
    veh = vehicle_kw(inp.vehicle, inp.soc_pct, dc)
    hw = hardware_kw(inp)
    station = station_kw(inp.backend_station_w)
    physical = _min_bounded(veh, hw, station)

    picked = profile_kw(inp)
    if picked is None:
        applied = physical
    elif physical is None:
        applied = max(0.0, picked)
    else:
        applied = max(0.0, min(physical, picked))

    return LimitsState(
        physical_kw=_round(physical),
        applied_kw=_round(applied),
        debug=LimitsDebug(
            vehicle_kw=_round(veh),
            hardware_kw=_round(hw),
            station_kw=_round(station),
            picked_profile_kw=_round(picked),
        ),
    )
