"""
FleetPulse Driver Fatigue Monitor

Simulated biorhythm for a driver on duty. The level starts fully alert at
100 and decays by a random amount (0 to FatigueConfig.max_drop_per_tick)
each tick, never below 0. Crossing below the alert threshold fires the
alert callback once; staying below it does not fire again until reset().
"""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Optional
import logging

from ..config import FatigueConfig
from ..errors import FleetPulseError


logger = logging.getLogger(__name__)


FULLY_ALERT = 100.0

FatigueCallback = Callable[[str, float], Awaitable[None]]


class FatigueMonitor:
    """
    Example:
        monitor = FatigueMonitor(driver.id, on_alert=fleet.on_fatigue_alert)
        monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        driver_id: str,
        config: Optional[FatigueConfig] = None,
        on_alert: Optional[FatigueCallback] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._driver_id = driver_id
        self._config = config or FatigueConfig()
        self._on_alert = on_alert
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._level = FULLY_ALERT
        self._task: Optional[asyncio.Task] = None
        self.alerts_raised = 0

    @property
    def level(self) -> float:
        return self._level

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def reset(self) -> None:
        self._level = FULLY_ALERT

    async def tick(self) -> float:
        """Apply one decay step and fire the alert on a threshold crossing."""
        previous = self._level
        drop = self._rng.random() * self._config.max_drop_per_tick
        self._level = max(0.0, previous - drop)

        threshold = self._config.alert_threshold
        if self._level < threshold <= previous:
            self.alerts_raised += 1
            logger.warning(
                f"Driver {self._driver_id} fatigue level {self._level:.1f} "
                f"dropped below {threshold:.0f}"
            )
            if self._on_alert is not None:
                try:
                    await self._on_alert(self._driver_id, self._level)
                except FleetPulseError as e:
                    logger.error(f"Fatigue alert for driver {self._driver_id} not recorded: {e}")
        return self._level

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
            await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Fatigue monitor for driver {self._driver_id} ended with an error: "
                f"{task.exception()!r}"
            )

    async def _run(self) -> None:
        while True:
            await self._sleep(self._config.tick_seconds)
            await self.tick()
