from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .sweeps import SubscriptionSweeper


logger = logging.getLogger(__name__)


class PeriodicJob:
    """Runs `func` every `interval_minutes` on the event loop until stopped."""

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[object]],
        interval_minutes: int,
    ) -> None:
        self.name = name
        self._func = func
        self._interval = max(int(interval_minutes), 0)
        self._task: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return self._interval > 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.enabled and not self.running:
            self._task = asyncio.create_task(self._loop(), name=f"sweep:{self.name}")
            logger.info("%s loop enabled (every %d min)", self.name, self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval * 60)
            try:
                await self._func()
            except Exception:
                logger.exception("%s tick failed", self.name)


class SweepScheduler:
    """Owns the activation, renewal and promotion loops for the app lifespan."""

    def __init__(
        self,
        sweeper: SubscriptionSweeper,
        *,
        activation_interval_minutes: int = 60,
        renewal_interval_minutes: int = 1440,
        promotion_interval_minutes: int = 1440,
    ) -> None:
        self.jobs = [
            PeriodicJob(
                "scheduled_activation",
                sweeper.activate_scheduled_subscriptions,
                activation_interval_minutes,
            ),
            PeriodicJob("renewal", sweeper.renew_or_expire_subscriptions, renewal_interval_minutes),
            PeriodicJob("promotions", sweeper.run_promotion_sweeps, promotion_interval_minutes),
        ]

    def start(self) -> None:
        for job in self.jobs:
            job.start()

    async def stop(self) -> None:
        for job in self.jobs:
            await job.stop()
