"""Fixed-cadence triggers for the pipelines, run on the server's event loop.

Cadences only submit work to the orchestrator; they never wait for a run to
finish, so a slow weekly run cannot delay the next alert sweep.
"""
import asyncio
import logging
from datetime import datetime, timedelta

from neowatch.config import (
    ALERT_SWEEP_INTERVAL_HOURS,
    DAILY_FETCH_HOUR,
    DAILY_FETCH_MINUTE,
    EXPIRY_PURGE_INTERVAL_MINUTES,
    WEEKLY_FETCH_HOUR,
    WEEKLY_FETCH_MINUTE,
    WEEKLY_FETCH_WEEKDAY,
)
from neowatch.models import utc_now
from neowatch.services.pipeline import (
    PIPELINE_DAILY,
    PIPELINE_PURGE,
    PIPELINE_SWEEP,
    PIPELINE_WEEKLY,
    PipelineOrchestrator,
)

logger = logging.getLogger(__name__)


def next_daily(now: datetime, hour: int, minute: int) -> datetime:
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def next_weekly(now: datetime, weekday: int, hour: int, minute: int) -> datetime:
    days = (weekday - now.weekday()) % 7
    candidate = (now + timedelta(days=days)).replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=7)
    return candidate


def next_interval(now: datetime, every: timedelta) -> datetime:
    """Next multiple of ``every`` counted from midnight, like a ``*/N`` cron field."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    steps = (now - midnight) // every + 1
    return midnight + steps * every


class Cadence:
    def __init__(self, name: str, pipeline: str, next_fire, **kwargs):
        self.name = name
        self.pipeline = pipeline
        self.next_fire = next_fire
        self.kwargs = kwargs

    def __repr__(self) -> str:
        return f'Cadence({self.name!r}, pipeline={self.pipeline!r})'


def default_cadences() -> list[Cadence]:
    sweep_every = timedelta(hours=ALERT_SWEEP_INTERVAL_HOURS)
    purge_every = timedelta(minutes=EXPIRY_PURGE_INTERVAL_MINUTES)
    return [
        Cadence(
            'daily-fetch',
            PIPELINE_DAILY,
            lambda now: next_daily(now, DAILY_FETCH_HOUR, DAILY_FETCH_MINUTE),
        ),
        Cadence(
            'weekly-fetch',
            PIPELINE_WEEKLY,
            lambda now: next_weekly(now, WEEKLY_FETCH_WEEKDAY, WEEKLY_FETCH_HOUR, WEEKLY_FETCH_MINUTE),
        ),
        Cadence('alert-sweep', PIPELINE_SWEEP, lambda now: next_interval(now, sweep_every), days_ahead=1),
        Cadence('expiry-purge', PIPELINE_PURGE, lambda now: next_interval(now, purge_every)),
    ]


class PipelineScheduler:
    def __init__(self, orchestrator: PipelineOrchestrator, cadences: list[Cadence] | None = None, clock=utc_now):
        self._orchestrator = orchestrator
        self._cadences = cadences if cadences is not None else default_cadences()
        self._clock = clock
        self._tasks: list[asyncio.Task] = []

    @property
    def cadences(self) -> list[Cadence]:
        return list(self._cadences)

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Must be called from inside the running event loop."""
        if self.is_running:
            return
        self._tasks = [
            asyncio.create_task(self._run_cadence(cadence), name=f'cadence:{cadence.name}')
            for cadence in self._cadences
        ]
        for cadence in self._cadences:
            logger.info('Scheduled %s -> next run %s', cadence.name, cadence.next_fire(self._clock()).isoformat())

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _run_cadence(self, cadence: Cadence) -> None:
        last_fire: datetime | None = None
        while True:
            now = self._clock()
            if last_fire is not None and now < last_fire:
                now = last_fire
            fire_at = cadence.next_fire(now)
            await asyncio.sleep(max(0.0, (fire_at - now).total_seconds()))
            last_fire = fire_at

            logger.info('Cadence %s fired', cadence.name)
            try:
                self._orchestrator.submit(cadence.pipeline, trigger='scheduled', **cadence.kwargs)
            except RuntimeError as exc:
                # Executor already shut down during application teardown.
                logger.warning('Could not submit %s: %s', cadence.name, exc)
                return
