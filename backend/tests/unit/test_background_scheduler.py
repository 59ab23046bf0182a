"""
Unit tests for BackgroundScheduler.

Tests the ambient sweep job and the janitor.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock, patch

import crud
import pytest
from background_scheduler import BackgroundScheduler, jittered_interval_trigger
from domain.enums import LeaseStatus
from orchestration import ConversationThreadService, RateLimitGate

from utils.cache import TTLCache
from utils.timeutils import utcnow


def make_scheduler(session_maker=None, **kwargs):
    turn_scheduler = Mock()
    turn_scheduler.tick_all = AsyncMock(return_value=0)
    return BackgroundScheduler(turn_scheduler, session_maker or Mock(), **kwargs)


class TestBackgroundSchedulerInit:
    """Tests for BackgroundScheduler initialization."""

    def test_init(self):
        """Test initialization."""
        scheduler = make_scheduler(tick_interval_seconds=120, tick_jitter_seconds=10)

        assert scheduler.tick_interval_seconds == 120
        assert scheduler.tick_jitter_seconds == 10
        assert scheduler.janitor_interval_seconds == 60
        assert scheduler.is_running is False
        assert scheduler.scheduler is not None


class TestBackgroundSchedulerStart:
    """Tests for start method."""

    def test_start_scheduler(self):
        """Test starting the scheduler."""
        scheduler = make_scheduler()

        with (
            patch.object(scheduler.scheduler, "start") as mock_start,
            patch.object(scheduler.scheduler, "add_job") as mock_add_job,
        ):
            scheduler.start()

            # Should add two jobs (ambient sweep + janitor) and start scheduler
            assert mock_add_job.call_count == 2
            job_ids = {call.kwargs["id"] for call in mock_add_job.call_args_list}
            assert job_ids == {"channel_ticks", "janitor"}
            mock_start.assert_called_once()

            assert scheduler.is_running is True

    def test_sweep_job_never_overlaps(self):
        scheduler = make_scheduler()

        with patch.object(scheduler.scheduler, "start"), patch.object(scheduler.scheduler, "add_job") as mock_add_job:
            scheduler.start()

        sweep = next(c for c in mock_add_job.call_args_list if c.kwargs["id"] == "channel_ticks")
        assert sweep.kwargs["max_instances"] == 1
        assert sweep.kwargs["coalesce"] is True

    def test_sweep_trigger_uses_jittered_interval(self):
        scheduler = make_scheduler(tick_interval_seconds=100, tick_jitter_seconds=20)

        with patch.object(scheduler.scheduler, "start"), patch.object(scheduler.scheduler, "add_job") as mock_add_job:
            scheduler.start()

        sweep = next(c for c in mock_add_job.call_args_list if c.kwargs["id"] == "channel_ticks")
        trigger = sweep.args[1]
        assert trigger.interval == timedelta(seconds=80)
        assert trigger.jitter == 40


class TestJitteredIntervalTrigger:
    """Tests for jittered_interval_trigger."""

    def test_gaps_fall_on_both_sides_of_interval(self):
        trigger = jittered_interval_trigger(100, 50)
        previous = datetime(2026, 1, 1, tzinfo=timezone.utc)

        gaps = [
            (trigger.get_next_fire_time(previous, previous) - previous).total_seconds() for _ in range(500)
        ]

        assert all(50 <= gap <= 150 for gap in gaps)
        assert min(gaps) < 100 < max(gaps)

    def test_jitter_capped_at_half_interval(self):
        trigger = jittered_interval_trigger(10, 60)

        assert trigger.interval == timedelta(seconds=5)
        assert trigger.jitter == 10

    def test_no_jitter(self):
        trigger = jittered_interval_trigger(30, 0)

        assert trigger.interval == timedelta(seconds=30)
        assert trigger.jitter is None

    def test_start_scheduler_already_running(self):
        """Test that starting already-running scheduler is idempotent."""
        scheduler = make_scheduler()
        scheduler.is_running = True

        with (
            patch.object(scheduler.scheduler, "start") as mock_start,
            patch.object(scheduler.scheduler, "add_job") as mock_add_job,
        ):
            scheduler.start()

            mock_add_job.assert_not_called()
            mock_start.assert_not_called()


class TestBackgroundSchedulerStop:
    """Tests for stop method."""

    def test_stop_scheduler(self):
        """Test stopping the scheduler."""
        scheduler = make_scheduler()
        scheduler.is_running = True

        with patch.object(scheduler.scheduler, "shutdown") as mock_shutdown:
            scheduler.stop()

            mock_shutdown.assert_called_once()
            assert scheduler.is_running is False

    def test_stop_scheduler_not_running(self):
        """Test that stopping a stopped scheduler is a no-op."""
        scheduler = make_scheduler()

        with patch.object(scheduler.scheduler, "shutdown") as mock_shutdown:
            scheduler.stop()

            mock_shutdown.assert_not_called()


class TestRunChannelTicks:
    """Tests for the ambient sweep job."""

    @pytest.mark.asyncio
    async def test_runs_sweep(self):
        scheduler = make_scheduler()
        scheduler.turn_scheduler.tick_all.return_value = 3

        await scheduler._run_channel_ticks()

        scheduler.turn_scheduler.tick_all.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sweep_errors_are_swallowed(self):
        scheduler = make_scheduler()
        scheduler.turn_scheduler.tick_all.side_effect = RuntimeError("store unavailable")

        # Should not raise into APScheduler
        await scheduler._run_channel_ticks()


class TestRunJanitor:
    """Tests for the janitor job."""

    @pytest.mark.asyncio
    async def test_janitor_reclaims_store_state(self, session_maker, db):
        past = utcnow() - timedelta(hours=48)
        await crud.acquire_lock(db, "c1", "a", ttl_ms=1_000, now=past)
        await crud.try_lease(db, "c1", "a", 1, ttl_ms=1_000, now=utcnow() - timedelta(minutes=5))
        await crud.try_lease(db, "c1", "b", 1, now=past)
        await crud.complete_lease(db, "c1", "b", 1)
        await crud.set_affinity(db, "c1", "u1", "a", ttl_ms=1_000, now=past)
        await crud.upsert_conversation_session(db, "c1", "u1", "a", now=past)

        scheduler = make_scheduler(session_maker)
        await scheduler._run_janitor()

        async with session_maker() as fresh:
            assert await crud.acquire_lock(fresh, "c1", "a", ttl_ms=5_000) is True
        stale = await crud.get_lease(db, "c1", "a", 1)
        await db.refresh(stale)
        assert stale.status == LeaseStatus.FAILED.value
        assert await crud.get_lease(db, "c1", "b", 1) is None
        assert await crud.get_affinity(db, "c1", "u1") is None
        assert await crud.get_conversation_session(db, "c1", "u1") is None

    @pytest.mark.asyncio
    async def test_janitor_prunes_in_memory_state(self, session_maker):
        clock = Mock(return_value=0.0)
        threads = ConversationThreadService(ttl_ms=1_000, clock=clock)
        threads.start_thread("c1", ["a", "b"])
        gate = RateLimitGate(clock=clock)
        gate.record_response("c1", "a", "m1")
        cache = TTLCache(clock=clock)
        cache.set("speakers:c1", [], ttl_seconds=1)
        clock.return_value = 10_000.0

        scheduler = make_scheduler(session_maker, threads=threads, gate=gate, cache=cache)
        await scheduler._run_janitor()

        assert threads.get_active_threads("c1") == []
        assert gate.responders_for("c1", "m1") == set()
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_store_errors_do_not_stop_cleanup(self):
        failing = Mock(side_effect=RuntimeError("no database"))
        gate = Mock()

        scheduler = make_scheduler(failing, gate=gate, cache=TTLCache())
        await scheduler._run_janitor()

        gate.cleanup.assert_called_once()
