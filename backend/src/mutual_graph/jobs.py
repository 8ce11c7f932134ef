"""
Persistent job queue and the polling scheduler that drives it.

Job lifecycle:
    pending -> in_progress -> completed
                           -> pending (retry after 2^attempts seconds)
                           -> failed (attempts exhausted, or not retryable)
    rate_limited is assigned at creation when the daily quota is spent; such a
    job is never claimed.
"""
import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased, sessionmaker

from .bsky_client import format_handle
from .config import Settings, settings as default_settings
from .errors import AuthenticationError, MutualGraphError, QuotaExceededError
from .models import Job, JobStatus, NETWORK_ANALYSIS, ensure_utc, utc_now
from . import progress as events
from .progress import ProgressBroker, ProgressTracker, ProgressUpdate


logger = logging.getLogger(__name__)

Handler = Callable[[Job, ProgressTracker], Awaitable[dict]]


class JobQueue:
    """All job state transitions go through this class."""

    def __init__(
        self,
        session_factory: sessionmaker,
        config: Settings = None,
        broker: ProgressBroker = None,
        now: Callable[[], datetime] = utc_now,
    ):
        config = config or default_settings
        self.session_factory = session_factory
        self.broker = broker or ProgressBroker()
        self.daily_limit = config.daily_refresh_limit
        self.priority_handle = format_handle(config.priority_handle)
        self.max_attempts = config.max_attempts
        self.max_concurrent_jobs = config.max_concurrent_jobs
        self.stuck_threshold = timedelta(seconds=config.stuck_job_threshold_seconds)
        self.retention = timedelta(days=config.job_retention_days)
        self._now = now

    # ------------------------------------------------------------------
    # Quota
    # ------------------------------------------------------------------

    def start_of_day(self) -> datetime:
        """Midnight UTC of the current day."""
        return self._now().replace(hour=0, minute=0, second=0, microsecond=0)

    def _refresh_count(self, db, handle: str) -> int:
        job = db.query(Job).filter(
            Job.handle == handle,
            Job.last_refresh_date >= self.start_of_day(),
        ).order_by(Job.last_refresh_date.desc()).first()
        return job.refresh_count if job else 0

    def get_refresh_count(self, handle: str) -> int:
        """Refreshes counted for handle since midnight UTC."""
        with self.session_factory() as db:
            return self._refresh_count(db, format_handle(handle))

    def check_quota(self, handle: str, db=None) -> None:
        """Raise QuotaExceededError when handle has used up today's refreshes."""
        handle = format_handle(handle)
        if handle == self.priority_handle:
            return
        if db is None:
            count = self.get_refresh_count(handle)
        else:
            count = self._refresh_count(db, handle)
        if count >= self.daily_limit:
            raise QuotaExceededError(handle, self.daily_limit)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_job(
        self,
        handle: str,
        payload: dict = None,
        priority: int = 0,
        job_type: str = NETWORK_ANALYSIS,
    ) -> Job:
        """
        Enqueue work for handle.

        An active job for the same handle is returned instead of a duplicate; with
        force it is first reset to a fresh pending state. A spent quota yields a job
        that is already rate_limited.
        """
        handle = format_handle(handle)
        payload = dict(payload or {})
        force = bool(payload.get("force"))
        now = self._now()

        with self.session_factory() as db:
            existing = self._current_job(db, handle)
            if existing is not None:
                if force and existing.status == JobStatus.PENDING:
                    existing.attempts = 0
                    existing.next_attempt_at = None
                    existing.error = None
                    existing.priority = max(existing.priority, 1)
                    existing.payload_json = json.dumps(payload)
                    existing.progress_json = json.dumps(ProgressUpdate.initial().to_dict())
                    existing.updated_at = now
                    db.commit()
                    logger.info(f"Reset job {existing.id} for {handle} (forced)")
                    self.broker.publish(existing.id, events.CREATED, existing.to_status())
                elif force:
                    logger.info(f"Job {existing.id} for {handle} is already running, not resetting")
                return existing

            try:
                self.check_quota(handle, db)
            except QuotaExceededError as e:
                job = Job(
                    job_type=job_type,
                    handle=handle,
                    status=JobStatus.RATE_LIMITED,
                    priority=priority,
                    payload_json=json.dumps(payload),
                    error=str(e),
                    max_attempts=self.max_attempts,
                    created_at=now,
                    updated_at=now,
                    completed_at=now,
                )
                db.add(job)
                db.commit()
                logger.warning(f"Job {job.id} rate limited: {e}")
                self.broker.publish(job.id, events.RATE_LIMITED, job.to_status())
                return job

            if handle == self.priority_handle:
                priority = sys.maxsize
            elif force:
                priority = max(priority, 1)

            job = Job(
                job_type=job_type,
                handle=handle,
                status=JobStatus.PENDING,
                priority=priority,
                payload_json=json.dumps(payload),
                progress_json=json.dumps(ProgressUpdate.initial().to_dict()),
                max_attempts=self.max_attempts,
                created_at=now,
                updated_at=now,
            )
            db.add(job)
            db.commit()

        logger.info(f"Created job {job.id} for {handle} (priority {priority})")
        self.broker.publish(job.id, events.CREATED, job.to_status())
        return job

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def count_in_progress(self) -> int:
        with self.session_factory() as db:
            return db.query(func.count(Job.id)).filter(
                Job.status == JobStatus.IN_PROGRESS
            ).scalar()

    def get_next_job(self, exclude: Iterable[int] = ()) -> Optional[Job]:
        """
        Claim the next runnable job, or None.

        Order: the priority handle first, then priority descending, then oldest
        first. At most one job is claimed per call.
        """
        if self.count_in_progress() >= self.max_concurrent_jobs:
            return None

        now = self._now()
        running = aliased(Job)
        busy_handles = select(running.handle).where(running.status == JobStatus.IN_PROGRESS)

        with self.session_factory() as db:
            query = db.query(Job).filter(
                Job.status == JobStatus.PENDING,
                or_(Job.next_attempt_at.is_(None), Job.next_attempt_at <= now),
                Job.handle.not_in(busy_handles),
            )
            exclude = list(exclude)
            if exclude:
                query = query.filter(Job.id.not_in(exclude))
            candidates = query.order_by(
                case((Job.handle == self.priority_handle, 0), else_=1),
                Job.priority.desc(),
                Job.created_at.asc(),
                Job.id.asc(),
            ).limit(10).all()

            for candidate in candidates:
                job = self._claim(db, candidate, now)
                if job is not None:
                    return job
        return None

    def claim(self, job_id: int) -> Optional[Job]:
        """Claim a specific pending job; None when it is not claimable right now."""
        now = self._now()
        with self.session_factory() as db:
            job = db.get(Job, job_id)
            if job is None or job.status != JobStatus.PENDING:
                return None
            if job.next_attempt_at is not None and ensure_utc(job.next_attempt_at) > now:
                return None
            return self._claim(db, job, now)

    def _claim(self, db, job: Job, now: datetime) -> Optional[Job]:
        values = {
            Job.status: JobStatus.IN_PROGRESS,
            Job.attempts: Job.attempts + 1,
            Job.started_at: now,
            Job.updated_at: now,
        }
        if job.attempts == 0:
            # A refresh is counted once per run, not per retry
            values[Job.refresh_count] = self._refresh_count(db, job.handle) + 1
            values[Job.last_refresh_date] = now

        claimed = db.query(Job).filter(
            Job.id == job.id,
            Job.status == JobStatus.PENDING,
        ).update(values, synchronize_session=False)
        db.commit()
        if claimed != 1:
            return None

        db.refresh(job)
        logger.info(f"Claimed job {job.id} for {job.handle} (attempt {job.attempts})")
        self.broker.publish(job.id, events.STARTED, job.to_status())
        return job

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def save_progress(self, job_id: int, progress: dict) -> None:
        with self.session_factory() as db:
            db.query(Job).filter(Job.id == job_id).update(
                {Job.progress_json: json.dumps(progress), Job.updated_at: self._now()},
                synchronize_session=False,
            )
            db.commit()

    def complete(self, job_id: int, result: dict = None) -> Job:
        now = self._now()
        with self.session_factory() as db:
            job = db.get(Job, job_id)
            job.status = JobStatus.COMPLETED
            job.result_json = json.dumps(result) if result is not None else None
            job.error = None
            job.next_attempt_at = None
            job.completed_at = now
            job.updated_at = now
            db.commit()
        logger.info(f"Job {job_id} completed")
        self.broker.publish(job_id, events.COMPLETED, job.to_status())
        return job

    def fail_or_retry(self, job_id: int, error: str, retryable: bool = True) -> Job:
        """Reschedule with 2^attempts seconds of backoff, or fail terminally."""
        now = self._now()
        with self.session_factory() as db:
            job = db.get(Job, job_id)
            job.error = error
            job.updated_at = now
            if retryable and job.attempts < job.max_attempts:
                delay = 2 ** job.attempts
                job.status = JobStatus.PENDING
                job.next_attempt_at = now + timedelta(seconds=delay)
                db.commit()
                logger.warning(
                    f"Job {job_id} attempt {job.attempts} failed, retrying in {delay}s: {error}"
                )
                self.broker.publish(
                    job_id, events.RETRYING, {**job.to_status(), "retryInSeconds": delay}
                )
            else:
                job.status = JobStatus.FAILED
                job.completed_at = now
                db.commit()
                logger.error(f"Job {job_id} failed after {job.attempts} attempts: {error}")
                self.broker.publish(job_id, events.FAILED, job.to_status())
        return job

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def recover_stuck_jobs(self, exclude: Iterable[int] = ()) -> int:
        """Reset in_progress jobs older than the staleness threshold to pending."""
        cutoff = self._now() - self.stuck_threshold
        with self.session_factory() as db:
            query = db.query(Job).filter(
                Job.status == JobStatus.IN_PROGRESS,
                Job.started_at < cutoff,
            )
            exclude = list(exclude)
            if exclude:
                query = query.filter(Job.id.not_in(exclude))
            recovered = query.update(
                {
                    Job.status: JobStatus.PENDING,
                    Job.next_attempt_at: None,
                    Job.updated_at: self._now(),
                },
                synchronize_session=False,
            )
            db.commit()
        if recovered:
            logger.warning(f"Recovered {recovered} stuck jobs")
        return recovered

    def cleanup_old_jobs(self, retention: timedelta = None) -> int:
        """Delete terminal jobs older than the retention period."""
        cutoff = self._now() - (retention or self.retention)
        with self.session_factory() as db:
            deleted = db.query(Job).filter(
                or_(
                    (Job.status.in_((JobStatus.COMPLETED, JobStatus.FAILED)))
                    & (Job.completed_at < cutoff),
                    (Job.status == JobStatus.RATE_LIMITED) & (Job.created_at < cutoff),
                )
            ).delete(synchronize_session=False)
            db.commit()
        if deleted:
            logger.info(f"Deleted {deleted} old jobs")
        return deleted

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _current_job(self, db, handle: str) -> Optional[Job]:
        return db.query(Job).filter(
            Job.handle == handle,
            Job.status.in_(JobStatus.ACTIVE),
        ).order_by(Job.created_at.desc(), Job.id.desc()).first()

    def get(self, job_id: int) -> Optional[Job]:
        with self.session_factory() as db:
            return db.get(Job, job_id)

    def get_current_job(self, handle: str) -> Optional[Job]:
        with self.session_factory() as db:
            return self._current_job(db, format_handle(handle))

    def get_latest_completed(self, handle: str) -> Optional[Job]:
        with self.session_factory() as db:
            return db.query(Job).filter(
                Job.handle == format_handle(handle),
                Job.status == JobStatus.COMPLETED,
            ).order_by(Job.completed_at.desc(), Job.id.desc()).first()

    def list_jobs(self, handle: str = None, limit: int = 20) -> list[Job]:
        with self.session_factory() as db:
            query = db.query(Job)
            if handle:
                query = query.filter(Job.handle == format_handle(handle))
            return query.order_by(Job.created_at.desc(), Job.id.desc()).limit(limit).all()

    def stats(self) -> dict[str, int]:
        with self.session_factory() as db:
            rows = db.query(Job.status, func.count(Job.id)).group_by(Job.status).all()
        return {status: count for status, count in rows}


class JobScheduler:
    """Polling worker loop.

    Each tick claims at most one job and runs it as its own task, so up to
    max_concurrent_jobs run at once. Job ids in ``processing`` are never claimed
    or recovered by this process while their task is alive.
    """

    def __init__(
        self,
        queue: JobQueue,
        config: Settings = None,
        sleep=asyncio.sleep,
        clock: Callable[[], float] = None,
    ):
        config = config or default_settings
        self.queue = queue
        self.broker = queue.broker
        self.poll_interval = config.poll_interval_seconds
        self.stuck_sweep_interval = config.stuck_sweep_interval_seconds
        self.max_concurrent_jobs = config.max_concurrent_jobs
        self.handlers: dict[str, Handler] = {}
        self.processing: set[int] = set()
        self._tasks: set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False
        self._sleep = sleep
        self._clock = clock or (lambda: asyncio.get_running_loop().time())
        self._last_sweep: Optional[float] = None

    def register_handler(self, job_type: str, handler: Handler) -> None:
        self.handlers[job_type] = handler

    @property
    def is_running(self) -> bool:
        return self._running

    async def process_job(self, job: Job) -> Job:
        """Run the handler for a claimed job; every failure is handled here."""
        self.processing.add(job.id)
        tracker = ProgressTracker(job.id, self.queue, self.broker, last=job.progress)
        try:
            handler = self.handlers.get(job.job_type)
            if handler is None:
                raise MutualGraphError(f"No handler registered for job type: {job.job_type}")
            result = await handler(job, tracker)
        except Exception as e:
            logger.error(f"Job {job.id} ({job.handle}) attempt {job.attempts} failed: {e}")
            tracker.error(str(e))
            return self.queue.fail_or_retry(
                job.id, str(e), retryable=not isinstance(e, AuthenticationError)
            )
        else:
            return self.queue.complete(job.id, result)
        finally:
            self.processing.discard(job.id)

    def _sweep_if_due(self) -> None:
        now = self._clock()
        if self._last_sweep is None or now - self._last_sweep >= self.stuck_sweep_interval:
            self._last_sweep = now
            self.queue.recover_stuck_jobs(exclude=self.processing)

    async def tick(self) -> Optional[asyncio.Task]:
        """Claim one job if capacity allows and start processing it."""
        self._sweep_if_due()
        if len(self.processing) >= self.max_concurrent_jobs:
            return None

        job = self.queue.get_next_job(exclude=self.processing)
        if job is None:
            return None

        self.processing.add(job.id)
        task = asyncio.create_task(self.process_job(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(self) -> None:
        logger.info("Job scheduler started")
        while self._running:
            try:
                await self.tick()
            except SQLAlchemyError as e:
                logger.error(f"Error in job scheduler tick: {e}")
            await self._sleep(self.poll_interval)

    def start(self) -> None:
        if self._loop_task is not None:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self.run())

    async def stop(self, wait: bool = False) -> None:
        """Stop polling; in-flight jobs finish when wait is set, else they are abandoned."""
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if wait and self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        else:
            for task in list(self._tasks):
                task.cancel()
        logger.info("Job scheduler stopped")

    async def run_job(self, job_id: int) -> Job:
        """Drive one job to a final state in-process, waiting out retry delays."""
        while True:
            job = self.queue.get(job_id)
            if job.status not in JobStatus.ACTIVE:
                return job
            if job.status == JobStatus.IN_PROGRESS:
                await self._sleep(self.poll_interval)
                continue

            claimed = self.queue.claim(job_id)
            if claimed is None:
                await self._sleep(self.poll_interval)
                continue
            await self.process_job(claimed)
