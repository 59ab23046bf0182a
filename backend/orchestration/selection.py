"""
Responder selection cascade.

Each tier is a strategy object. ``select`` returns None to fall through to
the next tier, or a ``Selection`` to stop the cascade (an empty selection
means "nobody speaks"). Tiers are evaluated strictly in order.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

import crud
from domain.collaborators import AffinityStore, DecisionPredicate, IdentityStore, Transport
from domain.contexts import Avatar, IncomingMessage, RankedAvatar, Selection, Trigger
from domain.enums import SelectionTier, TriggerType
from sqlalchemy.ext.asyncio import async_sessionmaker

from .mentions import extract_speaker_aliases, find_mentioned_avatars, get_avatar_aliases
from .presence import PresenceService
from .speaker_cache import SpeakerCache
from .threads import ConversationThreadService

logger = logging.getLogger("ResponderSelection")

DECISION_FALLBACK_CANDIDATES = 3
RECENT_SPEAKER_WINDOW = 3


@dataclass
class SelectionContext:
    channel_id: str
    message: Optional[IncomingMessage]
    trigger: Trigger
    avatars: List[Avatar]
    guild_id: Optional[str] = None
    ranked: Optional[List[RankedAvatar]] = None

    @property
    def from_human(self) -> bool:
        return self.message is not None and not self.message.author_is_bot

    def find(self, avatar_id) -> Optional[Avatar]:
        for avatar in self.avatars:
            if str(avatar.id) == str(avatar_id):
                return avatar
        return None

    async def get_ranked(self, presence: PresenceService) -> List[RankedAvatar]:
        if self.ranked is None:
            self.ranked = await presence.rank_avatars(self.channel_id, self.avatars)
        return self.ranked


async def _ask(decision: DecisionPredicate, ctx: SelectionContext, avatar: Avatar) -> bool:
    """Decision predicate with collaborator errors treated as a 'no'."""
    try:
        return bool(await decision.should_respond(ctx.channel_id, avatar, ctx.message))
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning(f"⚠️ should_respond failed for {avatar.name}: {e}")
        return False


class SelectionStrategy:
    tier: SelectionTier

    async def select(self, ctx: SelectionContext) -> Optional[Selection]:
        raise NotImplementedError

    def _pick(self, avatars: List[Avatar], **kwargs) -> Selection:
        return Selection(avatars=avatars, tier=self.tier, **kwargs)


class DirectReplyStrategy(SelectionStrategy):
    """Tier 0: a reply to a message an avatar sent goes to that avatar, cooldown or not."""

    tier = SelectionTier.DIRECT_REPLY

    def __init__(self, session_maker: async_sessionmaker, identity: IdentityStore, transport: Transport):
        self.session_maker = session_maker
        self.identity = identity
        self.transport = transport

    async def select(self, ctx: SelectionContext) -> Optional[Selection]:
        if ctx.message is None or not ctx.message.reply_to_message_id:
            return None

        async with self.session_maker() as db:
            avatar_id = await crud.find_message_avatar(db, ctx.message.reply_to_message_id)
        if not avatar_id:
            return None

        avatar = ctx.find(avatar_id)
        if avatar is None:
            try:
                avatar = await self.identity.get_avatar_by_id(avatar_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"⚠️ Could not resolve replied-to avatar {avatar_id}: {e}")
                return None
            if avatar is None:
                return None
            try:
                await self.transport.relocate_avatar(avatar, ctx.channel_id)
                logger.info(f"🚚 Relocated {avatar.name} to {ctx.channel_id} for a direct reply")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"⚠️ Relocation of {avatar.name} failed, replying anyway: {e}")

        logger.info(f"↩️ Direct reply: {avatar.name}")
        return self._pick([avatar], override_cooldown=True)


class ThreadContinuationStrategy(SelectionStrategy):
    """Tier 1: keep an open avatar thread going with the participant who did not speak last."""

    tier = SelectionTier.THREAD_CONTINUATION

    def __init__(self, threads: ConversationThreadService):
        self.threads = threads

    async def select(self, ctx: SelectionContext) -> Optional[Selection]:
        eligible_ids = [str(av.id) for av in ctx.avatars]
        for thread in self.threads.get_active_threads(ctx.channel_id):
            next_id = self.threads.next_participant(thread, eligible_ids)
            if next_id is None:
                continue
            avatar = ctx.find(next_id)
            logger.info(f"🧵 Thread continuation: {avatar.name} (thread {thread.id})")
            return self._pick([avatar], thread_id=thread.id)
        return None


class PrioritySummonStrategy(SelectionStrategy):
    """Tier 2: a freshly summoned avatar spends one of its guaranteed turns."""

    tier = SelectionTier.PRIORITY_SUMMON

    def __init__(self, presence: PresenceService, identity: IdentityStore):
        self.presence = presence
        self.identity = identity

    async def select(self, ctx: SelectionContext) -> Optional[Selection]:
        if ctx.trigger.type not in (TriggerType.MENTION, TriggerType.HUMAN_MESSAGE):
            return None

        try:
            record = await self.presence.find_priority_summon(ctx.channel_id)
            if record is None:
                return None
            avatar = ctx.find(record.avatar_id) or await self.identity.get_avatar_by_id(record.avatar_id)
            if avatar is None:
                return None
            if not await self.presence.consume_new_summon_turn(ctx.channel_id, record.avatar_id):
                # Another trigger spent the last turn first
                return None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"⚠️ Priority summon check failed: {e}")
            return None

        logger.info(f"🎟️ Priority summon: {avatar.name}")
        return self._pick([avatar])


class StickyAffinityStrategy(SelectionStrategy):
    """Tier 3: a human who has been talking to one avatar keeps talking to it."""

    tier = SelectionTier.STICKY_AFFINITY

    def __init__(self, affinity: AffinityStore, decision: DecisionPredicate, ttl_ms: int, enabled: bool = True):
        self.affinity = affinity
        self.decision = decision
        self.ttl_ms = ttl_ms
        self.enabled = enabled

    async def select(self, ctx: SelectionContext) -> Optional[Selection]:
        if not self.enabled or not ctx.from_human:
            return None

        user_id = ctx.message.author_id
        try:
            avatar_id = await self.affinity.get_affinity(ctx.channel_id, user_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"⚠️ Affinity lookup failed: {e}")
            return None

        avatar = ctx.find(avatar_id) if avatar_id else None
        if avatar is None or not await _ask(self.decision, ctx, avatar):
            return None

        try:
            await self.affinity.set_affinity(ctx.channel_id, user_id, str(avatar.id), self.ttl_ms)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"⚠️ Affinity refresh failed: {e}")

        logger.info(f"📌 Sticky affinity: {avatar.name}")
        return self._pick([avatar])


class DirectMentionStrategy(SelectionStrategy):
    """Tier 4: the first avatar named (or emoji'd) in the message content."""

    tier = SelectionTier.DIRECT_MENTION

    def __init__(self, affinity: AffinityStore, ttl_ms: int):
        self.affinity = affinity
        self.ttl_ms = ttl_ms

    async def select(self, ctx: SelectionContext) -> Optional[Selection]:
        if ctx.message is None or not ctx.message.content:
            return None

        mentioned = find_mentioned_avatars(ctx.message.content, ctx.avatars, exclude_id=ctx.message.author_id)
        if not mentioned:
            return None
        avatar = mentioned[0]

        if ctx.from_human:
            try:
                await self.affinity.set_affinity(ctx.channel_id, ctx.message.author_id, str(avatar.id), self.ttl_ms)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"⚠️ Recording affinity for {avatar.name} failed: {e}")

        logger.info(f"📣 Direct mention: {avatar.name}")
        return self._pick([avatar])


class ActiveSpeakerStrategy(SelectionStrategy):
    """Tier 5: the flagged active speaker, else whoever has waited longest for a turn."""

    tier = SelectionTier.ACTIVE_SPEAKER

    def __init__(self, presence: PresenceService, decision: DecisionPredicate, enabled: bool = True):
        self.presence = presence
        self.decision = decision
        self.enabled = enabled

    async def select(self, ctx: SelectionContext) -> Optional[Selection]:
        if not self.enabled or ctx.message is None:
            return None

        try:
            avatar = await self._active_speaker(ctx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"⚠️ Active speaker lookup failed: {e}")
            return None

        if avatar is None or not await _ask(self.decision, ctx, avatar):
            return None
        logger.info(f"🎙️ Active speaker: {avatar.name}")
        return self._pick([avatar])

    async def _active_speaker(self, ctx: SelectionContext) -> Optional[Avatar]:
        record = await self.presence.find_active_speaker(ctx.channel_id)
        if record is not None:
            avatar = ctx.find(record.avatar_id)
            if avatar is not None:
                return avatar

        records = await self.presence.get_many(ctx.channel_id, [str(av.id) for av in ctx.avatars])
        if not records:
            return None
        records.sort(key=lambda r: (r.last_turn_at is not None, r.last_turn_at or 0, r.avatar_id))
        return ctx.find(records[0].avatar_id)


class PresenceRankedStrategy(SelectionStrategy):
    """
    Tier 6: initiative ranking.

    For ambient triggers this tier always ends the cascade: it prefers avatars
    outside the last few speakers and off cooldown, then falls back on score
    thresholds, and never repeats the immediate last speaker.
    Other triggers pass through to the decision fallback.
    """

    tier = SelectionTier.PRESENCE_RANKED

    def __init__(
        self,
        presence: PresenceService,
        speaker_cache: SpeakerCache,
        primary_threshold: float = 0.5,
        secondary_threshold: float = 0.3,
    ):
        self.presence = presence
        self.speaker_cache = speaker_cache
        self.primary_threshold = primary_threshold
        self.secondary_threshold = secondary_threshold

    async def select(self, ctx: SelectionContext) -> Optional[Selection]:
        ranked = await ctx.get_ranked(self.presence)
        if ctx.trigger.type != TriggerType.AMBIENT:
            return None

        recent = await self.speaker_cache.recent_speakers(ctx.channel_id, RECENT_SPEAKER_WINDOW)
        recent_aliases = set()
        for message in recent:
            recent_aliases |= extract_speaker_aliases(message)
        last_aliases = extract_speaker_aliases(recent[0]) if recent else set()

        eligible = [
            r
            for r in ranked
            if not (get_avatar_aliases(r.avatar) & recent_aliases) and not self.presence.cooldown_active(r.presence)
        ]
        if eligible:
            chosen = eligible[0]
            logger.info(f"🌿 Ambient selected: {chosen.avatar.name} (score: {chosen.score:.2f})")
            return self._pick([chosen.avatar])

        fallback = self._fallback(ranked, last_aliases)
        if fallback is None:
            logger.debug(f"No eligible avatars for ambient response in {ctx.channel_id}")
            return self._pick([])
        logger.warning(f"⚠️ Ambient fallback: {fallback.avatar.name} (score: {fallback.score:.2f})")
        return self._pick([fallback.avatar])

    def _fallback(self, ranked: List[RankedAvatar], last_aliases: set) -> Optional[RankedAvatar]:
        # Only the top-ranked avatar is ever considered here
        if not ranked or get_avatar_aliases(ranked[0].avatar) & last_aliases:
            return None
        top = ranked[0]
        for threshold in (self.primary_threshold, self.secondary_threshold):
            if top.score > threshold:
                return top
        return None


class DecisionFallbackStrategy(SelectionStrategy):
    """Tier 7: ask the external decision predicate about the top-ranked avatars."""

    tier = SelectionTier.DECISION_FALLBACK

    def __init__(self, presence: PresenceService, decision: DecisionPredicate):
        self.presence = presence
        self.decision = decision

    async def select(self, ctx: SelectionContext) -> Optional[Selection]:
        ranked = await ctx.get_ranked(self.presence)
        for r in ranked[:DECISION_FALLBACK_CANDIDATES]:
            if await _ask(self.decision, ctx, r.avatar):
                logger.info(f"🤔 Decision fallback selected: {r.avatar.name}")
                return self._pick([r.avatar])
        return None


async def run_cascade(strategies: Iterable[SelectionStrategy], ctx: SelectionContext) -> Selection:
    """Evaluate tiers in order; the first non-None result wins."""
    for strategy in strategies:
        selection = await strategy.select(ctx)
        if selection is not None:
            return selection
    return Selection(avatars=[])
