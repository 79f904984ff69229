import logging
import threading
import uuid
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta

from pydantic import BaseModel
from sqlalchemy.orm import Session

from neowatch.config import PIPELINE_WORKERS
from neowatch.db import SessionLocal
from neowatch.models import utc_now
from neowatch.schemas import BatchStats, PipelineReport, SweepResult
from neowatch.services import asteroid_store
from neowatch.services.alert_dispatcher import broadcast_high_risk, check_and_dispatch_alerts, object_summary
from neowatch.services.nasa_client import fetch_neo_feed
from neowatch.services.neo_processing import flatten_feed, normalize_feed_record, to_risk_input
from neowatch.services.notifications import BROADCAST_CHANNEL, NotificationGateway, asteroid_channel, iso
from neowatch.services.risk_engine import calculate_risk

logger = logging.getLogger(__name__)

PIPELINE_DAILY = 'daily'
PIPELINE_WEEKLY = 'weekly'
PIPELINE_SWEEP = 'alert-sweep'
PIPELINE_PURGE = 'purge-expired'
PIPELINES = (PIPELINE_DAILY, PIPELINE_WEEKLY, PIPELINE_SWEEP, PIPELINE_PURGE)

MANUAL_MODES = {'today': PIPELINE_DAILY, 'week': PIPELINE_WEEKLY}

_MAX_TRACKED_RUNS = 100


class PipelineRun:
    """Handle for a submitted pipeline invocation; poll it, wait on it, or ignore it."""

    def __init__(self, pipeline: str, future: Future, trigger: str, submitted_at: datetime):
        self.run_id = uuid.uuid4().hex
        self.pipeline = pipeline
        self.trigger = trigger
        self.submitted_at = submitted_at
        self.future = future

    @property
    def status(self) -> str:
        if not self.future.done():
            return 'running' if self.future.running() else 'pending'
        if self.future.cancelled():
            return 'cancelled'
        if self.future.exception() is not None:
            return 'failed'
        if self.future.result() is None:
            return 'skipped'
        return 'completed'

    def wait(self, timeout: float | None = None):
        return self.future.result(timeout=timeout)

    def to_dict(self) -> dict:
        status = self.status
        payload = {
            'run_id': self.run_id,
            'pipeline': self.pipeline,
            'trigger': self.trigger,
            'submitted_at': iso(self.submitted_at),
            'status': status,
            'result': None,
            'error': None,
        }
        if status == 'completed':
            result = self.future.result()
            payload['result'] = result.model_dump() if isinstance(result, BaseModel) else result
        elif status == 'failed':
            payload['error'] = str(self.future.exception())
        return payload


class PipelineOrchestrator:
    """Runs the ingest/score/store/alert pipelines.

    Each pipeline name holds its own non-blocking lock: a second invocation of
    a pipeline that is still running is skipped rather than queued. Different
    pipelines may still overlap, in which case only the alert dedup window
    keeps users from seeing the same close approach twice.
    """

    def __init__(
        self,
        gateway: NotificationGateway,
        session_factory=None,
        feed_client=None,
        clock=utc_now,
        max_workers: int = PIPELINE_WORKERS,
    ):
        self._gateway = gateway
        self._session_factory = session_factory or SessionLocal
        self._feed_client = feed_client or fetch_neo_feed
        self._clock = clock
        self._locks = {name: threading.Lock() for name in PIPELINES}
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='neo-pipeline')
        self._runs: OrderedDict[str, PipelineRun] = OrderedDict()
        self._runs_lock = threading.Lock()
        self._actions = {
            PIPELINE_DAILY: self.run_daily,
            PIPELINE_WEEKLY: self.run_weekly,
            PIPELINE_SWEEP: self.run_alert_sweep,
            PIPELINE_PURGE: self.purge_expired,
        }

    @property
    def gateway(self) -> NotificationGateway:
        return self._gateway

    def is_running(self, pipeline: str) -> bool:
        return self._locks[pipeline].locked()

    def _exclusive(self, pipeline: str, func, *args):
        lock = self._locks[pipeline]
        if not lock.acquire(blocking=False):
            logger.warning('Pipeline %s is already running; skipping this invocation', pipeline)
            return None
        try:
            return func(*args)
        finally:
            lock.release()

    def process_batch(self, db: Session, raw_records: list[dict], pipeline: str = 'manual') -> BatchStats:
        stats = BatchStats(total=len(raw_records))
        logger.info('Processing %d NEO record(s)...', stats.total)

        for raw in raw_records:
            try:
                record = normalize_feed_record(raw)
                risk = calculate_risk(to_risk_input(record))
                asteroid = asteroid_store.upsert_asteroid(db, record, risk, now=self._clock())
            except Exception as exc:
                # Any record-level failure is counted; the rest of the batch still runs.
                db.rollback()
                stats.errors += 1
                name = raw.get('name') if isinstance(raw, dict) else raw
                logger.error('Failed to process NEO %s: %s', name, exc)
                continue

            stats.processed += 1
            if asteroid.is_potentially_hazardous:
                stats.hazardous += 1
            if risk.category == 'high':
                stats.high_risk += 1
                broadcast_high_risk(self._gateway, asteroid, now=self._clock())
            self._gateway.publish(
                asteroid_channel(asteroid.neo_reference_id),
                'object-updated',
                {**object_summary(asteroid), 'timestamp': iso(self._clock())},
            )

        self._gateway.publish(
            BROADCAST_CHANNEL,
            'batch-complete',
            {
                'pipeline': pipeline,
                'total': stats.total,
                'processed': stats.processed,
                'hazardous': stats.hazardous,
                'highRisk': stats.high_risk,
                'errors': stats.errors,
                'timestamp': iso(self._clock()),
            },
        )
        logger.info(
            'Processed %d/%d | hazardous=%d high_risk=%d errors=%d',
            stats.processed, stats.total, stats.hazardous, stats.high_risk, stats.errors,
        )
        return stats

    def _run_fetch_pipeline(self, pipeline: str, span_days: int, lookahead_days: int) -> PipelineReport:
        start = self._clock().date()
        end = start + timedelta(days=span_days - 1)
        logger.info('=' * 50)
        logger.info('Running %s NEO fetch for %s..%s', pipeline, start, end)
        logger.info('=' * 50)

        feed = self._feed_client(start, end)
        records = flatten_feed(feed.near_earth_objects)
        report = PipelineReport(
            pipeline=pipeline,
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            fetched=len(records),
            feed_ok=feed.success,
        )
        if not records:
            if feed.success:
                logger.warning('No NEOs fetched for %s..%s; nothing to do', start, end)
            else:
                logger.warning('Feed unavailable for %s..%s (%s); nothing to do', start, end, feed.error)
            return report

        db = self._session_factory()
        try:
            report.batch = self.process_batch(db, records, pipeline=pipeline)
            report.sweep = check_and_dispatch_alerts(db, self._gateway, lookahead_days, now=self._clock())
        finally:
            db.close()

        logger.info('%s pipeline complete', pipeline.capitalize())
        return report

    def _run_sweep(self, days_ahead: int) -> SweepResult:
        db = self._session_factory()
        try:
            return check_and_dispatch_alerts(db, self._gateway, days_ahead, now=self._clock())
        finally:
            db.close()

    def _run_purge(self) -> int:
        db = self._session_factory()
        try:
            return asteroid_store.purge_expired(db, now=self._clock())
        finally:
            db.close()

    def run_daily(self) -> PipelineReport | None:
        return self._exclusive(PIPELINE_DAILY, self._run_fetch_pipeline, PIPELINE_DAILY, 1, 1)

    def run_weekly(self) -> PipelineReport | None:
        return self._exclusive(PIPELINE_WEEKLY, self._run_fetch_pipeline, PIPELINE_WEEKLY, 7, 7)

    def run_alert_sweep(self, days_ahead: int = 1) -> SweepResult | None:
        return self._exclusive(PIPELINE_SWEEP, self._run_sweep, days_ahead)

    def purge_expired(self) -> int | None:
        return self._exclusive(PIPELINE_PURGE, self._run_purge)

    def _log_outcome(self, run: PipelineRun) -> None:
        if run.future.cancelled():
            return
        exc = run.future.exception()
        if exc is not None:
            logger.error('Pipeline %s run %s failed', run.pipeline, run.run_id, exc_info=exc)

    def submit(self, pipeline: str, trigger: str = 'scheduled', **kwargs) -> PipelineRun:
        action = self._actions.get(pipeline)
        if action is None:
            raise ValueError(f'unknown pipeline {pipeline!r}')

        future = self._executor.submit(action, **kwargs)
        run = PipelineRun(pipeline, future, trigger, self._clock())
        with self._runs_lock:
            self._runs[run.run_id] = run
            while len(self._runs) > _MAX_TRACKED_RUNS:
                self._runs.popitem(last=False)
        future.add_done_callback(lambda _: self._log_outcome(run))
        return run

    def trigger_manual(self, mode: str = 'today') -> PipelineRun:
        pipeline = MANUAL_MODES.get(mode)
        if pipeline is None:
            raise ValueError(f'unknown fetch mode {mode!r}; expected one of {sorted(MANUAL_MODES)}')
        logger.info('Manual %s fetch triggered', mode)
        return self.submit(pipeline, trigger='manual')

    def get_run(self, run_id: str) -> PipelineRun | None:
        with self._runs_lock:
            return self._runs.get(run_id)

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
