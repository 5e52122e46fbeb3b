"""Time triggers that run named async jobs on asyncio tasks.

Triggers only compute fire times. The jobs they drive are plain coroutines,
so the jobs can be tested without a running timer.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Protocol

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[object]]


class Trigger(Protocol):
    name: str

    def next_fire_time(self, now: datetime) -> datetime: ...


@dataclass(frozen=True)
class DailyTrigger:
    """Fires once a day at a fixed wall-clock time in ``tz``."""

    name: str
    hour: int
    minute: int
    tz: tzinfo

    @classmethod
    def at(cls, name: str, clock_time: str, tz: tzinfo) -> "DailyTrigger":
        """Build from an ``HH:MM`` string."""
        parsed = time.fromisoformat(clock_time)
        return cls(name=name, hour=parsed.hour, minute=parsed.minute, tz=tz)

    def next_fire_time(self, now: datetime) -> datetime:
        """First fire time strictly after ``now`` (an aware datetime)."""
        local_now = now.astimezone(self.tz)
        candidate = local_now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= local_now:
            candidate = datetime.combine(
                candidate.date() + timedelta(days=1), time(self.hour, self.minute), tzinfo=self.tz
            )
        return candidate


@dataclass(frozen=True)
class IntervalTrigger:
    """Fires every ``interval``, starting one interval after the runner starts."""

    name: str
    interval: timedelta

    def next_fire_time(self, now: datetime) -> datetime:
        return now + self.interval


class TriggerRunner:
    """Runs each registered job on its own task, sleeping between fire times.

    Fire times come from the wall clock while ``asyncio.sleep`` follows the
    monotonic clock, so a job only runs once the wall clock has reached its
    fire time.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[object]] | None = None,
    ) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep or asyncio.sleep
        self._entries: list[tuple[Trigger, Job]] = []
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def add(self, trigger: Trigger, job: Job) -> None:
        self._entries.append((trigger, job))

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._run(trigger, job), name=f"trigger:{trigger.name}")
            for trigger, job in self._entries
        ]
        logger.info("Started %d scheduler trigger(s)", len(self._tasks))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Stopped scheduler triggers")

    async def _sleep_until(self, trigger: Trigger, fire_at: datetime) -> None:
        while True:
            delay = (fire_at - self._clock()).total_seconds()
            if delay <= 0:
                return
            logger.debug("Trigger %s sleeping %.0fs until %s", trigger.name, delay, fire_at)
            await self._sleep(delay)

    async def _run(self, trigger: Trigger, job: Job) -> None:
        while True:
            fire_at = trigger.next_fire_time(self._clock())
            await self._sleep_until(trigger, fire_at)
            try:
                await job()
            except Exception:
                logger.exception("Scheduled job %s failed", trigger.name)
