"""
Ambient turn scheduling and the human-message fast lane.

The ambient sweep opens a new epoch per channel and leases up to K avatars
into it; the fast lane joins the channel's current epoch, so an avatar that
already holds an ambient lease for this epoch is not scheduled twice.
"""

import asyncio
import logging
import math
from datetime import timedelta
from typing import Optional

import crud
from domain.collaborators import IdentityStore
from domain.contexts import Avatar, IncomingMessage, ResponseOptions
from domain.enums import LeaseMode, PresenceState
from sqlalchemy.ext.asyncio import async_sessionmaker

from utils.timeutils import utcnow

from .leases import ResponseLock, TickCounter, TurnLeaseRegistry
from .mentions import find_mentioned_avatars
from .presence import PresenceService
from .response_generator import ResponseGenerator

logger = logging.getLogger("TurnScheduler")

LOCK_HELD_ERROR = "response lock held"


class TurnScheduler:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        presence: PresenceService,
        ticks: TickCounter,
        leases: TurnLeaseRegistry,
        response_lock: ResponseLock,
        generator: ResponseGenerator,
        identity: IdentityStore,
        global_budget: int = 6,
        max_k: int = 3,
        channel_limit: int = 50,
        active_humans_window_min: int = 10,
        human_suppression_ms: int = 60_000,
    ):
        self.session_maker = session_maker
        self.presence = presence
        self.ticks = ticks
        self.leases = leases
        self.response_lock = response_lock
        self.generator = generator
        self.identity = identity
        self.global_budget = global_budget
        self.max_k = max_k
        self.channel_limit = channel_limit
        self.active_humans_window_min = active_humans_window_min
        self.human_suppression_ms = human_suppression_ms

    def compute_k(self, active_humans: int) -> int:
        """One ambient turn per five active humans, at least 1 and at most max_k."""
        return max(1, min(self.max_k, math.ceil((active_humans or 0) / 5)))

    async def tick_all(self) -> int:
        """
        Run one ambient sweep over the most recently active channels.

        Returns:
            Total turns taken, never more than the global budget
        """
        async with self.session_maker() as db:
            channels = await crud.get_active_channels(db, limit=self.channel_limit)

        budget_left = self.global_budget
        for channel_id in channels:
            if budget_left <= 0:
                break
            try:
                taken = await self.on_channel_tick(channel_id, budget_left)
                budget_left -= taken
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"⚠️ Tick for channel {channel_id} failed: {e}")

        used = self.global_budget - budget_left
        logger.debug(f"Ambient sweep used {used}/{self.global_budget} budget across {len(channels)} channels")
        return used

    async def on_channel_tick(self, channel_id: str, budget: Optional[int] = None) -> int:
        """
        Open a new epoch in the channel and take up to K ambient turns.

        Args:
            channel_id: Channel to tick
            budget: Remaining global budget (None for unbounded)

        Returns:
            Number of turns taken
        """
        if await self._recently_human_active(channel_id):
            logger.debug(f"Ambient suppressed in {channel_id}: recent human message")
            return 0

        avatars = await self.identity.get_avatars_in_channel(channel_id)
        by_id = {str(av.id): av for av in avatars or []}
        await self.presence.ensure_many(channel_id, by_id.keys())

        tick_id = await self.ticks.advance(channel_id)
        present = await self.presence.list_present(channel_id)
        if not present:
            return 0

        async with self.session_maker() as db:
            since = utcnow() - timedelta(minutes=self.active_humans_window_min)
            active_humans = await crud.count_active_humans(db, channel_id, since)

        k = self.compute_k(active_humans)
        if budget is not None:
            k = min(k, max(0, budget))
        if k <= 0:
            return 0

        eligible = [
            record
            for record in present
            if record.state == PresenceState.PRESENT.value and not self.presence.cooldown_active(record)
        ]
        taken = 0
        for record, score in self.presence.rank(eligible):
            if taken >= k:
                break
            avatar_id = record.avatar_id
            if not await self.leases.try_lease(channel_id, avatar_id, tick_id, mode=LeaseMode.AMBIENT):
                continue

            avatar = by_id.get(avatar_id) or await self._resolve_avatar(avatar_id)
            if avatar is None:
                await self.leases.complete(channel_id, avatar_id, tick_id)
                continue

            options = ResponseOptions(trigger_key=f"tick:{tick_id}:{avatar_id}")
            if await self._take_turn(channel_id, avatar, None, tick_id, options):
                taken += 1
                logger.info(f"🌿 Ambient turn for {avatar.name} in {channel_id} (tick {tick_id}, score {score:.2f})")
        return taken

    async def on_human_message(self, channel_id: str, message: IncomingMessage) -> bool:
        """
        Fast lane: let an avatar named in a human message answer right away.

        Returns:
            True if an avatar responded
        """
        if message.author_is_bot:
            return False

        async with self.session_maker() as db:
            await crud.record_channel_message(
                db,
                channel_id=channel_id,
                message_id=message.id,
                author_id=message.author_id,
                author_name=message.author_name,
                is_bot=False,
                reply_to_message_id=message.reply_to_message_id,
            )

        avatars = await self.identity.get_avatars_in_channel(channel_id)
        candidates = find_mentioned_avatars(message.content, avatars or [])
        if not candidates:
            return False

        tick_id = await self.ticks.peek(channel_id)
        for avatar in candidates:
            await self.presence.ensure_presence(channel_id, str(avatar.id))
            await self.presence.record_mention(channel_id, str(avatar.id))

        for avatar in candidates:
            avatar_id = str(avatar.id)
            leased = await self.leases.try_lease(
                channel_id,
                avatar_id,
                tick_id,
                mode=LeaseMode.FASTLANE,
                message_id=message.id,
                author_id=message.author_id,
            )
            if not leased:
                continue
            if await self._take_turn(channel_id, avatar, message, tick_id, ResponseOptions(trigger_key=message.id)):
                logger.info(f"⚡ Fast-lane reply from {avatar.name} in {channel_id}")
                return True
        return False

    async def _take_turn(
        self,
        channel_id: str,
        avatar: Avatar,
        message: Optional[IncomingMessage],
        tick_id: int,
        options: ResponseOptions,
    ) -> bool:
        """
        Generate under the response lock while holding the lease.

        The lease always reaches a terminal state: completed when generation
        returned (sent or not), failed when it raised, was cancelled or the
        lock was held.
        """
        avatar_id = str(avatar.id)
        async with self.leases.held(channel_id, avatar_id, tick_id) as lease:
            async with self.response_lock.held(channel_id, avatar_id) as acquired:
                if not acquired:
                    lease.fail(LOCK_HELD_ERROR)
                    return False
                try:
                    response = await self.generator.respond(channel_id, avatar, message, options)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"⚠️ Response failed for {avatar.name} in {channel_id}: {e}")
                    lease.fail(e)
                    return False

        if response is None:
            return False
        await self.presence.record_turn(channel_id, avatar_id)
        return True

    async def _recently_human_active(self, channel_id: str) -> bool:
        if self.human_suppression_ms <= 0:
            return False
        async with self.session_maker() as db:
            activity = await crud.get_channel_activity(db, channel_id)
        if activity is None or activity.last_human_message_at is None:
            return False
        return utcnow() - activity.last_human_message_at < timedelta(milliseconds=self.human_suppression_ms)

    async def _resolve_avatar(self, avatar_id: str) -> Optional[Avatar]:
        try:
            return await self.identity.get_avatar_by_id(avatar_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"⚠️ Could not resolve avatar {avatar_id}: {e}")
            return None
