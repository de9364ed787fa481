"""In-memory smart charging profiles received through SetChargingProfile.

Per connector the store keeps every profile it was given, except that a new
profile replaces those of the same purpose whose stack level is not above
its own.  For each purpose the highest stack level whose schedule is in
force wins.  Profiles installed on connector 0 apply to every connector.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from ocpp.v16.enums import (
    ChargingProfileKindType,
    ChargingProfilePurposeType,
    ChargingRateUnitType,
    RecurrencyKind,
)
from pydantic import BaseModel, ConfigDict, Field

from .limits import ActiveProfiles

DAY_SEC = 24 * 3600
WEEK_SEC = 7 * DAY_SEC


def _utc(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class ChargingSchedulePeriod(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start_period: int = Field(0, alias="startPeriod", ge=0)
    limit: float
    number_phases: Optional[int] = Field(None, alias="numberPhases", ge=1, le=3)


class ChargingSchedule(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    charging_rate_unit: ChargingRateUnitType = Field(alias="chargingRateUnit")
    charging_schedule_period: List[ChargingSchedulePeriod] = Field(
        alias="chargingSchedulePeriod", min_length=1
    )
    duration: Optional[int] = Field(None, ge=0)
    start_schedule: Optional[datetime] = Field(None, alias="startSchedule")
    min_charging_rate: Optional[float] = Field(None, alias="minChargingRate")


class ChargingProfile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    charging_profile_id: int = Field(alias="chargingProfileId")
    transaction_id: Optional[int] = Field(None, alias="transactionId")
    stack_level: int = Field(0, alias="stackLevel", ge=0)
    charging_profile_purpose: ChargingProfilePurposeType = Field(alias="chargingProfilePurpose")
    charging_profile_kind: ChargingProfileKindType = Field(
        ChargingProfileKindType.absolute, alias="chargingProfileKind"
    )
    recurrency_kind: Optional[RecurrencyKind] = Field(None, alias="recurrencyKind")
    valid_from: Optional[datetime] = Field(None, alias="validFrom")
    valid_to: Optional[datetime] = Field(None, alias="validTo")
    charging_schedule: ChargingSchedule = Field(alias="chargingSchedule")

    @property
    def is_current(self) -> bool:
        return self.charging_schedule.charging_rate_unit == ChargingRateUnitType.amps

    def limit_at(self, now: datetime, started_at: Optional[datetime]) -> Optional[float]:
        """Limit of the schedule period in force at ``now``.

        ``started_at`` anchors Relative schedules and schedules without a
        ``startSchedule``.  Returns ``None`` while the profile is outside
        its validity window or no schedule period covers ``now``.
        """
        if self.valid_from is not None and now < _utc(self.valid_from):
            return None
        if self.valid_to is not None and now > _utc(self.valid_to):
            return None

        schedule = self.charging_schedule
        start = started_at
        if self.charging_profile_kind != ChargingProfileKindType.relative and schedule.start_schedule:
            start = _utc(schedule.start_schedule)
        if start is None or now < start:
            return None

        elapsed = (now - start).total_seconds()
        if self.charging_profile_kind == ChargingProfileKindType.recurring:
            elapsed %= WEEK_SEC if self.recurrency_kind == RecurrencyKind.weekly else DAY_SEC
        if schedule.duration is not None and elapsed > schedule.duration:
            return None

        active = None
        for period in sorted(schedule.charging_schedule_period, key=lambda p: p.start_period):
            if period.start_period > elapsed:
                break
            active = period
        if active is None:
            return None
        if schedule.min_charging_rate is not None:
            return max(active.limit, schedule.min_charging_rate)
        return active.limit


@dataclass
class _Installed:
    profile: ChargingProfile
    installed_at: datetime


class ProfileStore:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._profiles: Dict[int, List[_Installed]] = {}
        self._tx_started: Dict[int, datetime] = {}

    def now(self) -> datetime:
        return self._clock()

    def mark_transaction_start(self, connector_id: int, at: Optional[datetime] = None) -> None:
        self._tx_started[connector_id] = at or self.now()

    def mark_transaction_stop(self, connector_id: int) -> None:
        self._tx_started.pop(connector_id, None)

    def set(self, connector_id: int, profile: ChargingProfile) -> None:
        installed = self._profiles.setdefault(connector_id, [])
        replaced = [
            e for e in installed
            if e.profile.charging_profile_purpose == profile.charging_profile_purpose
            and e.profile.stack_level <= profile.stack_level
        ]
        for e in replaced:
            installed.remove(e)
            logging.info(
                f"Profile #{e.profile.charging_profile_id} replaced by #{profile.charging_profile_id} "
                f"on connector {connector_id}"
            )
        installed.append(_Installed(profile, self.now()))
        schedule = profile.charging_schedule
        logging.info(
            f"Profile #{profile.charging_profile_id} set on connector {connector_id}: "
            f"{profile.charging_profile_purpose.value} stackLevel={profile.stack_level}, "
            f"{len(schedule.charging_schedule_period)} period(s) in {schedule.charging_rate_unit.value}"
        )

    def clear(
        self,
        profile_id: Optional[int] = None,
        connector_id: Optional[int] = None,
        purpose: Optional[str] = None,
        stack_level: Optional[int] = None,
    ) -> int:
        """Remove every profile matching all given criteria; return how many."""
        removed = 0
        for cid, installed in self._profiles.items():
            if connector_id is not None and cid != connector_id:
                continue
            for e in list(installed):
                p = e.profile
                if profile_id is not None and p.charging_profile_id != profile_id:
                    continue
                if purpose is not None and p.charging_profile_purpose != purpose:
                    continue
                if stack_level is not None and p.stack_level != stack_level:
                    continue
                installed.remove(e)
                removed += 1
        if removed:
            logging.info(f"Cleared {removed} charging profile(s)")
        return removed

    def clear_transaction(self, connector_id: int) -> int:
        return self.clear(connector_id=connector_id, purpose=ChargingProfilePurposeType.tx_profile.value)

    def profiles(self, connector_id: int) -> List[ChargingProfile]:
        return [e.profile for e in self._profiles.get(connector_id, [])]

    def active(
        self, connector_id: int, purpose: str, now: Optional[datetime] = None
    ) -> Optional[Tuple[ChargingProfile, float]]:
        """The governing profile of ``purpose`` and its current limit."""
        now = now or self.now()
        tx_started = self._tx_started.get(connector_id)
        scopes = [connector_id] if connector_id == 0 else [connector_id, 0]
        for cid in scopes:
            candidates = [e for e in self._profiles.get(cid, []) if e.profile.charging_profile_purpose == purpose]
            for e in sorted(candidates, key=lambda e: e.profile.stack_level, reverse=True):
                if e.profile.charging_profile_kind == ChargingProfileKindType.relative:
                    started = tx_started
                else:
                    started = tx_started or e.installed_at
                limit = e.profile.limit_at(now, started)
                if limit is not None:
                    return e.profile, limit
        return None

    def snapshot(self, connector_id: int, now: Optional[datetime] = None) -> ActiveProfiles:
        now = now or self.now()
        slots = {}
        for purpose in ChargingProfilePurposeType:
            found = self.active(connector_id, purpose.value, now)
            slots[purpose] = (found[1], found[0].is_current) if found else (None, False)
        tx = slots[ChargingProfilePurposeType.tx_profile]
        default = slots[ChargingProfilePurposeType.tx_default_profile]
        station = slots[ChargingProfilePurposeType.charge_point_max_profile]
        return ActiveProfiles(
            tx_profile_limit_w=tx[0],
            tx_profile_is_current=tx[1],
            tx_default_limit_w=default[0],
            tx_default_is_current=default[1],
            station_max_limit_w=station[0],
            station_max_is_current=station[1],
        )
