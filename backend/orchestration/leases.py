"""
Tick counters, turn leases and response locks.

All three are thin session-per-call wrappers over the store primitives in
``crud``; exclusivity comes from the database's unique constraints.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import crud
import models
from domain.enums import LeaseMode
from sqlalchemy.ext.asyncio import async_sessionmaker

logger = logging.getLogger("Leases")


class TickCounter:
    """Per-channel monotonic epoch counter."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def advance(self, channel_id: str) -> int:
        """Open a new epoch for the channel and return its id."""
        async with self.session_maker() as db:
            return await crud.advance_tick(db, channel_id)

    async def peek(self, channel_id: str) -> int:
        """Current epoch id, without advancing."""
        async with self.session_maker() as db:
            return await crud.peek_tick(db, channel_id)


class TurnLeaseRegistry:
    """At most one lease per (channel, avatar, tick)."""

    def __init__(self, session_maker: async_sessionmaker, ttl_ms: int = 90_000):
        self.session_maker = session_maker
        self.ttl_ms = ttl_ms

    async def try_lease(
        self,
        channel_id: str,
        avatar_id: str,
        tick_id: int,
        mode: LeaseMode = LeaseMode.AMBIENT,
        message_id: Optional[str] = None,
        author_id: Optional[str] = None,
    ) -> bool:
        async with self.session_maker() as db:
            ok = await crud.try_lease(
                db,
                channel_id,
                avatar_id,
                tick_id,
                mode=mode,
                ttl_ms=self.ttl_ms,
                message_id=message_id,
                author_id=author_id,
            )
        if not ok:
            logger.debug(f"Lease taken already: channel={channel_id} avatar={avatar_id} tick={tick_id}")
        return ok

    async def complete(self, channel_id: str, avatar_id: str, tick_id: int) -> bool:
        async with self.session_maker() as db:
            return await crud.complete_lease(db, channel_id, avatar_id, tick_id)

    async def fail(self, channel_id: str, avatar_id: str, tick_id: int, error: Optional[object] = None) -> bool:
        async with self.session_maker() as db:
            return await crud.fail_lease(db, channel_id, avatar_id, tick_id, error)

    async def get(self, channel_id: str, avatar_id: str, tick_id: int) -> Optional[models.TurnLease]:
        async with self.session_maker() as db:
            return await crud.get_lease(db, channel_id, avatar_id, tick_id)

    @asynccontextmanager
    async def held(self, channel_id: str, avatar_id: str, tick_id: int):
        """
        Settle an already-taken lease when the block exits.

        The lease is marked completed on a normal exit, or failed when the
        block raised, was cancelled or called ``hold.fail(error)``. Exceptions
        still propagate.

        Example:
            async with leases.held(channel_id, avatar_id, tick_id) as hold:
                if not await lock.acquire(channel_id, avatar_id):
                    hold.fail("response lock held")
                    return
                ...
        """
        hold = LeaseHold()
        error = None
        try:
            yield hold
        except asyncio.CancelledError:
            error = "cancelled"
            raise
        except Exception as e:
            error = e
            raise
        else:
            error = hold.error
        finally:
            await self._settle(channel_id, avatar_id, tick_id, error)

    async def _settle(self, channel_id: str, avatar_id: str, tick_id: int, error: Optional[object]) -> None:
        try:
            if error is None:
                await self.complete(channel_id, avatar_id, tick_id)
            else:
                await self.fail(channel_id, avatar_id, tick_id, error)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Left pending; the janitor fails it once the TTL passes
            logger.error(f"❌ Failed to settle lease {channel_id}/{avatar_id}/{tick_id}: {e}")


class LeaseHold:
    """Handle yielded by ``TurnLeaseRegistry.held``."""

    def __init__(self):
        self.error: Optional[object] = None

    def fail(self, error: object) -> None:
        self.error = error


class ResponseLock:
    """Short-TTL in-flight mutex per (channel, avatar)."""

    def __init__(self, session_maker: async_sessionmaker, ttl_ms: int = 5_000):
        self.session_maker = session_maker
        self.ttl_ms = ttl_ms

    async def acquire(self, channel_id: str, avatar_id: str) -> bool:
        async with self.session_maker() as db:
            return await crud.acquire_lock(db, channel_id, avatar_id, ttl_ms=self.ttl_ms)

    async def release(self, channel_id: str, avatar_id: str) -> None:
        async with self.session_maker() as db:
            await crud.release_lock(db, channel_id, avatar_id)

    @asynccontextmanager
    async def held(self, channel_id: str, avatar_id: str):
        """
        Try to take the lock for the duration of the block.

        Yields True when acquired. The lock is released on exit only if this
        block acquired it.

        Example:
            async with lock.held(channel_id, avatar_id) as acquired:
                if not acquired:
                    return
                ...
        """
        acquired = await self.acquire(channel_id, avatar_id)
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await self.release(channel_id, avatar_id)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    # The janitor reclaims the row once it expires
                    logger.error(f"❌ Failed to release lock {channel_id}/{avatar_id}: {e}")
