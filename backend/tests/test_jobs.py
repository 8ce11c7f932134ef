"""Test the job queue and scheduler."""
import sys
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from mutual_graph.errors import AuthenticationError, QuotaExceededError, TransportError
from mutual_graph.jobs import JobQueue, JobScheduler
from mutual_graph.models import Job, JobStatus, ensure_utc
from mutual_graph import progress as events


@pytest.fixture
def queue(session_factory, config, clock):
    return JobQueue(session_factory, config, now=clock)


@pytest.fixture
def scheduler(queue, config):
    return JobScheduler(queue, config, sleep=AsyncMock())


def add_refreshes(session_factory, handle, count, when):
    """Record a job that used `count` refreshes at `when`."""
    with session_factory() as db:
        db.add(Job(
            handle=handle,
            status=JobStatus.COMPLETED,
            refresh_count=count,
            last_refresh_date=when,
            created_at=when,
            completed_at=when,
        ))
        db.commit()


class TestCreateJob:

    def test_new_job_is_pending(self, queue):
        job = queue.create_job("alice.test")

        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.priority == 0
        assert job.to_status()["progress"]["stage"] == "initializing"

    def test_short_handle_is_expanded(self, queue):
        assert queue.create_job("alice").handle == "alice.bsky.social"

    def test_active_job_is_reused(self, queue):
        first = queue.create_job("alice.test")
        second = queue.create_job("alice.test")

        assert second.id == first.id
        assert len(queue.list_jobs("alice.test")) == 1

    def test_force_resets_pending_job(self, queue, clock):
        job = queue.create_job("alice.test")
        queue.get_next_job()
        queue.fail_or_retry(job.id, "boom")

        reset = queue.create_job("alice.test", {"force": True})

        assert reset.id == job.id
        assert reset.attempts == 0
        assert reset.next_attempt_at is None
        assert reset.priority == 1
        assert reset.error is None

    def test_force_does_not_touch_running_job(self, queue):
        job = queue.create_job("alice.test")
        queue.get_next_job()

        again = queue.create_job("alice.test", {"force": True})

        assert again.id == job.id
        assert again.status == JobStatus.IN_PROGRESS
        assert again.attempts == 1

    def test_forced_new_job_gets_priority(self, queue):
        assert queue.create_job("alice.test", {"force": True}).priority == 1


class TestQuota:

    def test_limit_reached_today(self, queue, session_factory, clock):
        add_refreshes(session_factory, "alice.test", 5, clock.now.replace(hour=9))

        with pytest.raises(QuotaExceededError):
            queue.check_quota("alice.test")

        job = queue.create_job("alice.test")
        assert job.status == JobStatus.RATE_LIMITED
        assert "Daily refresh limit exceeded" in job.error
        assert queue.get_next_job() is None

    def test_below_limit(self, queue, session_factory, clock):
        add_refreshes(session_factory, "alice.test", 4, clock.now.replace(hour=9))

        job = queue.create_job("alice.test")
        assert job.status == JobStatus.PENDING

        claimed = queue.get_next_job()
        assert claimed.refresh_count == 5
        assert queue.get_refresh_count("alice.test") == 5

    def test_midnight_utc_counts_as_today(self, queue, session_factory, clock):
        midnight = clock.now.replace(hour=0, minute=0, second=0, microsecond=0)
        add_refreshes(session_factory, "alice.test", 5, midnight)

        assert queue.get_refresh_count("alice.test") == 5

    def test_rollover_resets_count(self, queue, session_factory, clock):
        add_refreshes(session_factory, "alice.test", 5, clock.now.replace(hour=23, minute=59, second=59))
        clock.now = datetime(2024, 3, 11, 0, 0, 0, tzinfo=timezone.utc)

        assert queue.get_refresh_count("alice.test") == 0
        assert queue.create_job("alice.test").status == JobStatus.PENDING

    def test_priority_handle_bypasses_quota(self, queue, session_factory, clock):
        add_refreshes(session_factory, "p.example", 99, clock.now)

        job = queue.create_job("p.example")

        assert job.status == JobStatus.PENDING
        assert job.priority == sys.maxsize

    def test_retries_do_not_count_again(self, queue, clock):
        job = queue.create_job("alice.test")
        queue.get_next_job()
        queue.fail_or_retry(job.id, "boom")
        clock.advance(seconds=2)
        queue.get_next_job()

        assert queue.get_refresh_count("alice.test") == 1


class TestClaiming:

    def test_priority_then_age(self, queue, clock):
        old_low = queue.create_job("old.test")
        clock.advance(seconds=1)
        high = queue.create_job("high.test", priority=5)
        clock.advance(seconds=1)
        new_low = queue.create_job("new.test")

        order = [queue.get_next_job().id for _ in range(3)]

        assert order == [high.id, old_low.id, new_low.id]

    def test_priority_handle_always_first(self, queue, clock):
        queue.create_job("a.test", priority=3)
        clock.advance(minutes=1)
        queue.create_job("b.test", priority=sys.maxsize)
        clock.advance(minutes=1)
        queue.create_job("c.test", {"force": True})
        clock.advance(minutes=1)
        priority_job = queue.create_job("p.example")

        assert queue.get_next_job().id == priority_job.id

    def test_claim_is_exclusive(self, queue):
        job = queue.create_job("alice.test")

        claimed = queue.get_next_job()

        assert claimed.id == job.id
        assert claimed.status == JobStatus.IN_PROGRESS
        assert claimed.attempts == 1
        assert queue.get_next_job() is None
        assert queue.claim(job.id) is None

    def test_excluded_ids_are_skipped(self, queue):
        first = queue.create_job("a.test")
        second = queue.create_job("b.test")

        assert queue.get_next_job(exclude={first.id}).id == second.id

    def test_concurrency_cap(self, session_factory, config, clock):
        config.max_concurrent_jobs = 1
        queue = JobQueue(session_factory, config, now=clock)
        queue.create_job("a.test")
        queue.create_job("b.test")

        assert queue.get_next_job() is not None
        assert queue.get_next_job() is None

    def test_backoff_delays_claim(self, queue, clock):
        job = queue.create_job("alice.test")
        queue.get_next_job()
        queue.fail_or_retry(job.id, "boom")

        assert queue.get_next_job() is None
        assert queue.claim(job.id) is None
        clock.advance(seconds=2)
        assert queue.claim(job.id).attempts == 2


class TestOutcomes:

    @pytest.mark.asyncio
    async def test_two_failures_then_success(self, queue, scheduler, clock):
        handler = AsyncMock(side_effect=[
            TransportError(503, "unavailable"),
            TransportError(503, "unavailable"),
            {"subjectId": "did:plc:alice"},
        ])
        scheduler.register_handler("network_analysis", handler)
        retrying = queue.broker.subscribe()
        job = queue.create_job("alice.test")

        delays = []
        for _ in range(3):
            claimed = queue.get_next_job()
            assert claimed is not None
            result = await scheduler.process_job(claimed)
            if result.status == JobStatus.PENDING:
                delay = ensure_utc(result.next_attempt_at) - clock.now
                delays.append(delay)
                clock.advance(seconds=delay.total_seconds())

        final = queue.get(job.id)
        assert delays == [timedelta(seconds=2), timedelta(seconds=4)]
        assert final.status == JobStatus.COMPLETED
        assert final.attempts == 3
        assert final.result == {"subjectId": "did:plc:alice"}

        types = []
        while not retrying.empty():
            types.append(retrying.get_nowait()["type"])
        assert types.count(events.RETRYING) == 2
        assert types[-1] == events.COMPLETED

    @pytest.mark.asyncio
    async def test_fails_after_max_attempts(self, queue, scheduler, clock):
        scheduler.register_handler("network_analysis", AsyncMock(side_effect=TransportError(0, "down")))
        job = queue.create_job("alice.test")

        for _ in range(3):
            await scheduler.process_job(queue.get_next_job())
            clock.advance(minutes=1)

        final = queue.get(job.id)
        assert final.status == JobStatus.FAILED
        assert final.attempts == 3
        assert "down" in final.error
        assert final.progress["stage"] == "error"
        assert queue.get_next_job() is None

    @pytest.mark.asyncio
    async def test_authentication_error_is_not_retried(self, queue, scheduler):
        scheduler.register_handler(
            "network_analysis", AsyncMock(side_effect=AuthenticationError(401, "bad password"))
        )
        job = queue.create_job("alice.test")

        result = await scheduler.process_job(queue.get_next_job())

        assert result.status == JobStatus.FAILED
        assert queue.get(job.id).attempts == 1

    @pytest.mark.asyncio
    async def test_missing_handler_schedules_a_retry(self, queue, scheduler):
        queue.create_job("alice.test")

        result = await scheduler.process_job(queue.get_next_job())

        assert result.status == JobStatus.PENDING
        assert "No handler registered" in result.error

    @pytest.mark.asyncio
    async def test_retry_progress_never_goes_backwards(self, queue, scheduler, clock):
        calls = []

        async def handler(job, tracker):
            calls.append(job.attempts)
            stages = ["initializing", "collecting", "analyzing", "processing", "completed"]
            if len(calls) == 1:
                for step, stage in enumerate(stages[:3]):
                    tracker.update(stage, step, stage)
                raise TransportError(503, "unavailable")
            for step, stage in enumerate(stages):
                tracker.update(stage, step, stage)
            return {"ok": True}

        scheduler.register_handler("network_analysis", handler)
        job = queue.create_job("alice.test")
        job_events = queue.broker.subscribe(str(job.id))

        await scheduler.process_job(queue.get_next_job())
        clock.advance(seconds=2)
        await scheduler.process_job(queue.get_next_job())

        currents = []
        while not job_events.empty():
            event = job_events.get_nowait()
            if event["type"] == events.PROGRESS:
                currents.append(event["data"]["current"])

        assert calls == [1, 2]
        assert currents == [0, 1, 2, 2, 2, 2, 2, 3, 4]
        assert queue.get(job.id).status == JobStatus.COMPLETED


class TestMaintenance:

    def test_stuck_jobs_are_recovered(self, queue, clock):
        job = queue.create_job("alice.test")
        queue.get_next_job()

        clock.advance(seconds=299)
        assert queue.recover_stuck_jobs() == 0
        clock.advance(seconds=2)
        assert queue.recover_stuck_jobs(exclude={job.id}) == 0
        assert queue.recover_stuck_jobs() == 1

        recovered = queue.get(job.id)
        assert recovered.status == JobStatus.PENDING
        assert queue.get_next_job().id == job.id

    def test_cleanup_old_jobs(self, queue, session_factory, clock):
        add_refreshes(session_factory, "old.test", 1, clock.now)
        pending = queue.create_job("alice.test")

        clock.advance(days=31)
        assert queue.cleanup_old_jobs() == 1
        assert queue.get(pending.id) is not None

    def test_queries(self, queue, clock):
        job = queue.create_job("alice.test")
        assert queue.get_current_job("alice.test").id == job.id

        queue.get_next_job()
        queue.complete(job.id, {"ok": True})

        assert queue.get_current_job("alice.test") is None
        assert queue.get_latest_completed("alice.test").id == job.id
        assert queue.stats() == {JobStatus.COMPLETED: 1}


class TestScheduler:

    @pytest.mark.asyncio
    async def test_tick_runs_one_job(self, queue, scheduler):
        scheduler.register_handler("network_analysis", AsyncMock(return_value={"ok": True}))
        first = queue.create_job("a.test")
        second = queue.create_job("b.test")

        task = await scheduler.tick()
        await task

        assert queue.get(first.id).status == JobStatus.COMPLETED
        assert queue.get(second.id).status == JobStatus.PENDING
        assert scheduler.processing == set()

    @pytest.mark.asyncio
    async def test_tick_without_work(self, scheduler):
        assert await scheduler.tick() is None

    @pytest.mark.asyncio
    async def test_run_job_waits_out_retries(self, queue, scheduler, clock):
        handler = AsyncMock(side_effect=[TransportError(500, "oops"), {"ok": True}])
        scheduler.register_handler("network_analysis", handler)

        async def fake_sleep(seconds):
            clock.advance(seconds=1)

        scheduler._sleep = fake_sleep
        job = queue.create_job("alice.test")

        final = await scheduler.run_job(job.id)

        assert final.status == JobStatus.COMPLETED
        assert final.attempts == 2

    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler):
        scheduler.start()
        assert scheduler.is_running
        await scheduler.stop()
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_tick_sweeps_stuck_jobs_on_interval(self, queue, config, clock, timer):
        handler = AsyncMock(return_value={"ok": True})
        scheduler = JobScheduler(queue, config, sleep=AsyncMock(), clock=timer.clock)
        scheduler.register_handler("network_analysis", handler)
        job = queue.create_job("alice.test")
        queue.get_next_job()

        assert await scheduler.tick() is None

        clock.advance(seconds=301)
        timer.time = config.stuck_sweep_interval_seconds / 2
        assert await scheduler.tick() is None
        assert queue.get(job.id).status == JobStatus.IN_PROGRESS

        timer.time = config.stuck_sweep_interval_seconds
        task = await scheduler.tick()
        await task

        handler.assert_awaited_once()
        recovered = queue.get(job.id)
        assert recovered.status == JobStatus.COMPLETED
        assert recovered.attempts == 2

    @pytest.mark.asyncio
    async def test_sweep_skips_jobs_being_processed(self, queue, config, clock, timer):
        scheduler = JobScheduler(queue, config, sleep=AsyncMock(), clock=timer.clock)
        job = queue.create_job("alice.test")
        queue.get_next_job()
        scheduler.processing.add(job.id)

        clock.advance(seconds=301)

        assert await scheduler.tick() is None
        assert queue.get(job.id).status == JobStatus.IN_PROGRESS
