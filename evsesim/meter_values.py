import asyncio
import dataclasses
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ocpp.v16 import call
from ocpp.v16.enums import Measurand, ReadingContext, UnitOfMeasure

from ._hooks import invoke
from .session import OCPPSession


@dataclass
class MVConfig:
    connector_id: int = 1
    period_sec: float = 10
    include_energy: bool = True
    include_power: bool = True
    include_soc: bool = True


@dataclass
class EngineOptions:
    base_physical_w: float  # already limited by phases & max current
    power_jitter_w: float = 0.0
    battery_kwh: float = 75.0

    def __post_init__(self):
        if self.battery_kwh <= 0:
            raise ValueError(f"battery_kwh must be positive, got {self.battery_kwh}")


class MeterValuesEngine:
    """Periodic MeterValues for one connector.

    Every ``period_sec`` the engine asks ``limit_fn`` for the applied
    limit in W (``None`` means unbounded), integrates the delivered power
    into energy and SoC and reports the sample through the session.
    """

    def __init__(
        self,
        session: OCPPSession,
        cfg: MVConfig,
        opts: EngineOptions,
        limit_fn: Callable[[], Optional[float]],
        on_local_update: Optional[Callable[[float, float, float], Any]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.session = session
        self.cfg = cfg
        self.opts = dataclasses.replace(opts, base_physical_w=max(0.0, opts.base_physical_w))
        self.limit_fn = limit_fn
        self.on_local_update = on_local_update
        self._rng = rng or random.Random()
        self._task: Optional[asyncio.Task] = None

        self.transaction_id: Optional[int] = None
        self.meter_wh = 0.0
        self.soc = 20.0
        self.current_power_w = 0.0

    @property
    def running(self) -> bool:
        return self._task is not None

    async def __aenter__(self) -> "MeterValuesEngine":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.stop()

    def set_config(self, **changes) -> None:
        old_period = self.cfg.period_sec
        self.cfg = dataclasses.replace(self.cfg, **changes)
        if self.cfg.period_sec != old_period and self.running:
            self.stop()
            self.start()

    def set_transaction_id(self, tx_id: Optional[int]) -> None:
        self.transaction_id = tx_id

    def set_initial_state(self, soc_pct: float, meter_wh: float) -> None:
        self.soc = max(0.0, min(100.0, soc_pct))
        self.meter_wh = max(0.0, meter_wh)

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run())
        logging.info(
            f"MeterValues started: cid={self.cfg.connector_id}, period={self.cfg.period_sec}s"
        )

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if task is not asyncio.current_task():
            task.cancel()
        logging.info(f"MeterValues stopped: cid={self.cfg.connector_id}")

    async def _run(self) -> None:
        me = asyncio.current_task()
        try:
            while self._task is me:
                await asyncio.sleep(self.cfg.period_sec)
                try:
                    await self.tick()
                except Exception:
                    logging.exception(f"MeterValues tick failed on cid={self.cfg.connector_id}")
        finally:
            if self._task is me:
                self._task = None

    async def tick(self) -> float:
        """Advance the simulation by one period and return the delivered W."""
        limit_w = self.limit_fn()
        allowed_w = None if limit_w is None else max(0.0, limit_w)

        power_w = self.opts.base_physical_w
        if self.opts.power_jitter_w > 0:
            jitter = self._rng.uniform(-self.opts.power_jitter_w, self.opts.power_jitter_w)
            power_w = max(0.0, power_w + jitter)
        active_w = power_w if allowed_w is None else min(power_w, allowed_w)

        added_wh = active_w * self.cfg.period_sec / 3600
        self.meter_wh += added_wh
        self.soc = min(100.0, self.soc + (added_wh / 1000) / self.opts.battery_kwh * 100)
        self.current_power_w = active_w

        await self.send_meter_values(active_w)
        await invoke(self.on_local_update, active_w, self.meter_wh, self.soc)

        if self.soc >= 100:
            logging.info(f"SoC reached 100% on cid={self.cfg.connector_id}")
            self.stop()
        return active_w

    def sampled_values(self, active_w: float) -> List[Dict[str, str]]:
        periodic = ReadingContext.sample_periodic.value
        out = []
        if self.cfg.include_energy:
            out.append({
                "value": str(int(round(self.meter_wh))),
                "context": periodic,
                "measurand": Measurand.energy_active_import_register.value,
                "unit": UnitOfMeasure.wh.value,
            })
        if self.cfg.include_power:
            out.append({
                "value": str(int(round(active_w))),
                "context": periodic,
                "measurand": Measurand.power_active_import.value,
                "unit": UnitOfMeasure.w.value,
            })
        if self.cfg.include_soc:
            out.append({
                "value": f"{self.soc:.1f}",
                "context": periodic,
                "measurand": Measurand.soc.value,
                "unit": UnitOfMeasure.percent.value,
            })
        return out

    async def send_meter_values(self, active_w: float) -> Optional[str]:
        if self.transaction_id is None:
            return None
        msg_id = await self.session.call(call.MeterValues(
            connector_id=self.cfg.connector_id,
            transaction_id=self.transaction_id,
            meter_value=[{
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "sampled_value": self.sampled_values(active_w),
            }],
        ))
        logging.info(
            f"MeterValues: cid={self.cfg.connector_id}, energy(Wh)={self.meter_wh:.0f}, "
            f"power(W)={active_w:.0f}, soc={self.soc:.1f}%"
        )
        return msg_id
