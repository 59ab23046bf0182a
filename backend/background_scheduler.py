"""
Background scheduler for ambient turns and store housekeeping.

This module runs the periodic ambient sweep and the janitor that reclaims
expired locks and leases left behind by crashed holders.
"""

import asyncio
import logging
from typing import Optional

import crud
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from orchestration import ConversationThreadService, RateLimitGate, TurnScheduler
from sqlalchemy.ext.asyncio import async_sessionmaker

from utils.cache import TTLCache, get_cache

logger = logging.getLogger("BackgroundScheduler")

# Suppress noisy APScheduler "max instances reached" warnings
# These are expected during heavy load and not actionable
logging.getLogger("apscheduler.scheduler").setLevel(logging.ERROR)


def jittered_interval_trigger(interval_seconds: float, jitter_seconds: float) -> IntervalTrigger:
    """
    Interval trigger whose gap between runs is uniform in interval +/- jitter.

    IntervalTrigger only delays a run by up to ``jitter`` and chains the next
    run from the jittered fire time, so the base interval is shortened by the
    jitter and the jitter window doubled. Jitter is capped at half the
    interval to keep the base interval positive.
    """
    jitter = max(0.0, min(jitter_seconds or 0.0, interval_seconds / 2))
    return IntervalTrigger(seconds=interval_seconds - jitter, jitter=2 * jitter or None)


class BackgroundScheduler:
    """Manages the ambient sweep and janitor jobs."""

    def __init__(
        self,
        turn_scheduler: TurnScheduler,
        session_maker: async_sessionmaker,
        tick_interval_seconds: float = 3600,
        tick_jitter_seconds: float = 300,
        janitor_interval_seconds: float = 60,
        lease_retention_hours: int = 24,
        session_ttl_minutes: int = 30,
        threads: Optional[ConversationThreadService] = None,
        gate: Optional[RateLimitGate] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.scheduler = AsyncIOScheduler()
        self.turn_scheduler = turn_scheduler
        self.session_maker = session_maker
        self.tick_interval_seconds = tick_interval_seconds
        self.tick_jitter_seconds = tick_jitter_seconds
        self.janitor_interval_seconds = janitor_interval_seconds
        self.lease_retention_hours = lease_retention_hours
        self.session_ttl_minutes = session_ttl_minutes
        self.threads = threads
        self.gate = gate
        self.cache = cache
        self.is_running = False

    def start(self):
        """Start the background scheduler."""
        if not self.is_running:
            self.scheduler.add_job(
                self._run_channel_ticks,
                jittered_interval_trigger(self.tick_interval_seconds, self.tick_jitter_seconds),
                id="channel_ticks",
                replace_existing=True,
                max_instances=1,  # Only one sweep at a time
                coalesce=True,  # Skip missed runs if previous sweep still running
                misfire_grace_time=None,
            )

            self.scheduler.add_job(
                self._run_janitor,
                "interval",
                seconds=self.janitor_interval_seconds,
                id="janitor",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

            self.scheduler.start()
            self.is_running = True
            logger.info(
                f"🚀 Background scheduler started - ambient sweep every {self.tick_interval_seconds:.0f}s "
                f"(±{self.tick_jitter_seconds:.0f}s), janitor every {self.janitor_interval_seconds:.0f}s"
            )

    def stop(self):
        """Stop the background scheduler."""
        if self.is_running:
            self.scheduler.shutdown()
            self.is_running = False
            logger.info("🛑 Background scheduler stopped")

    async def _run_channel_ticks(self):
        """Run one ambient sweep. Errors are logged, never raised into APScheduler."""
        try:
            taken = await self.turn_scheduler.tick_all()
            if taken:
                logger.info(f"🔄 Ambient sweep took {taken} turn(s)")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"💥 Error in ambient sweep: {e}")

    async def _run_janitor(self):
        """
        Reclaim resources left behind by crashed or finished holders.

        - Expired response locks are deleted
        - Pending leases past their TTL are marked failed
        - Terminal leases past the retention window are deleted
        - Expired affinities and stale conversation sessions are deleted
        - Expired threads, quiet responder sets and cache entries are dropped
        """
        try:
            async with self.session_maker() as db:
                locks = await crud.delete_expired_locks(db)
                expired = await crud.expire_stale_leases(db)
                purged = await crud.delete_old_leases(db, self.lease_retention_hours)
                await crud.delete_expired_affinities(db)
                await crud.delete_stale_sessions(db, self.session_ttl_minutes)
            if locks or expired or purged:
                logger.info(f"🧹 Janitor: {locks} lock(s) released, {expired} lease(s) expired, {purged} purged")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error during janitor run: {e}")

        if self.threads is not None:
            self.threads.prune_expired()
        if self.gate is not None:
            self.gate.cleanup()
        self._cleanup_cache()

    def _cleanup_cache(self):
        """Clean up expired cache entries."""
        try:
            cache = self.cache or get_cache()
            cache.cleanup_expired()
            cache.log_stats()
        except Exception as e:
            logger.error(f"Error during cache cleanup: {e}")
