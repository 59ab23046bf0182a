"""
Presence tracking and initiative scoring.

The scorer is policy: anything exposing ``score`` and ``cooldown_active`` can
be handed to ``PresenceService`` in place of ``InitiativeScorer``.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Protocol

import crud
import models
from domain.contexts import Avatar, RankedAvatar, ScoringContext
from domain.enums import ConversationRole, PresenceState
from sqlalchemy.ext.asyncio import async_sessionmaker

from utils.timeutils import minutes_since, utcnow

logger = logging.getLogger("PresenceService")

MENTION_HALF_LIFE_MIN = 10
SUMMON_FULL_WINDOW_MIN = 10
SUMMON_ZERO_WINDOW_MIN = 30


def _clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


class Scorer(Protocol):
    def score(self, record: models.Presence, ctx: ScoringContext, now: Optional[datetime] = None) -> float: ...

    def cooldown_active(self, record: models.Presence, now: Optional[datetime] = None) -> bool: ...


class InitiativeScorer:
    """
    Default initiative heuristic.

    Weighted sum of mention boost, summon recency, hunger, topic overlap, pins
    and social balance, minus cooldown and fatigue penalties, clamped to [0, 1].
    """

    def __init__(self, turn_min_interval_sec: float = 90, target_cadence_min: float = 12):
        self.turn_min_interval_sec = turn_min_interval_sec
        self.target_cadence_min = target_cadence_min

    def cooldown_active(self, record: models.Presence, now: Optional[datetime] = None) -> bool:
        if record is None or record.last_turn_at is None:
            return False
        now = now or utcnow()
        return minutes_since(record.last_turn_at, now) * 60 < self.turn_min_interval_sec

    def score(self, record: models.Presence, ctx: ScoringContext, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        ctx = ctx or ScoringContext()

        mention_boost = 0.0
        if record.avatar_id in ctx.mentioned_ids:
            age = minutes_since(record.last_mentioned_at, now)
            mention_boost = 0.0 if age == float("inf") else 0.5 ** (age / MENTION_HALF_LIFE_MIN)

        summon_age = minutes_since(record.last_summoned_at, now)
        if summon_age <= SUMMON_FULL_WINDOW_MIN:
            summon_recency = 1.0
        elif summon_age >= SUMMON_ZERO_WINDOW_MIN:
            summon_recency = 0.0
        else:
            summon_recency = 1 - (summon_age - SUMMON_FULL_WINDOW_MIN) / (SUMMON_ZERO_WINDOW_MIN - SUMMON_FULL_WINDOW_MIN)

        hunger = _clamp01(minutes_since(record.last_turn_at, now) / self.target_cadence_min)

        overlap = len(set(record.topic_tags or []) & set(ctx.topic_tags or []))
        topic_match = _clamp01(overlap / 3)

        pins = _clamp01(record.priority_pins or 0)
        social_balance = _clamp01(ctx.social_balance_lift or 0)
        cooldown_penalty = 1.0 if self.cooldown_active(record, now) else 0.0
        fatigue_penalty = _clamp01(record.fatigue or 0)

        score = (
            0.45 * mention_boost
            + 0.25 * summon_recency
            + 0.15 * hunger
            + 0.07 * topic_match
            + 0.05 * pins
            + 0.03 * social_balance
            - 0.20 * cooldown_penalty
            - 0.10 * fatigue_penalty
        )
        return _clamp01(score)


def _desc_time(dt: Optional[datetime]) -> float:
    return -(dt.timestamp() if dt else 0.0)


def _asc_time(dt: Optional[datetime]) -> float:
    return dt.timestamp() if dt else 0.0


def rank_records(
    records: Iterable[models.Presence],
    scorer: Scorer,
    ctx: Optional[ScoringContext] = None,
    now: Optional[datetime] = None,
) -> List[tuple[models.Presence, float]]:
    """
    Score and order presence records.

    Order: score desc, priority pins desc, most recent mention first, oldest
    last turn first (never-spoken first), avatar id ascending.
    """
    now = now or utcnow()
    ctx = ctx or ScoringContext()
    scored = [(r, scorer.score(r, ctx, now)) for r in records]
    scored.sort(
        key=lambda item: (
            -item[1],
            -(item[0].priority_pins or 0),
            _desc_time(item[0].last_mentioned_at),
            _asc_time(item[0].last_turn_at),
            str(item[0].avatar_id),
        )
    )
    return scored


class PresenceService:
    """Session-per-call wrapper over the presence store plus the active scorer."""

    def __init__(self, session_maker: async_sessionmaker, scorer: Optional[Scorer] = None):
        self.session_maker = session_maker
        self.scorer = scorer or InitiativeScorer()

    def score(self, record: models.Presence, ctx: Optional[ScoringContext] = None, now=None) -> float:
        return self.scorer.score(record, ctx or ScoringContext(), now)

    def cooldown_active(self, record: models.Presence, now=None) -> bool:
        return self.scorer.cooldown_active(record, now)

    def rank(self, records, ctx: Optional[ScoringContext] = None, now=None):
        return rank_records(records, self.scorer, ctx, now)

    async def rank_avatars(
        self, channel_id: str, avatars: Iterable[Avatar], ctx: Optional[ScoringContext] = None
    ) -> List[RankedAvatar]:
        """Rank avatars by initiative, creating missing presence records on the way."""
        by_id = {str(av.id): av for av in avatars}
        await self.ensure_many(channel_id, by_id.keys())
        records = await self.get_many(channel_id, by_id.keys())
        return [
            RankedAvatar(avatar=by_id[record.avatar_id], presence=record, score=score)
            for record, score in self.rank(records, ctx)
            if record.avatar_id in by_id
        ]

    async def ensure_presence(self, channel_id: str, avatar_id: str) -> models.Presence:
        async with self.session_maker() as db:
            return await crud.ensure_presence(db, channel_id, avatar_id)

    async def ensure_many(self, channel_id: str, avatar_ids: Iterable[str]) -> None:
        for avatar_id in avatar_ids:
            await self.ensure_presence(channel_id, avatar_id)

    async def get(self, channel_id: str, avatar_id: str) -> Optional[models.Presence]:
        async with self.session_maker() as db:
            return await crud.get_presence(db, channel_id, avatar_id)

    async def get_many(self, channel_id: str, avatar_ids: Iterable[str]) -> List[models.Presence]:
        async with self.session_maker() as db:
            return await crud.get_presence_records(db, channel_id, avatar_ids)

    async def start_session(self, channel_id: str, avatar_id: str) -> models.Presence:
        async with self.session_maker() as db:
            return await crud.start_session(db, channel_id, avatar_id)

    async def focus_ping(self, channel_id: str, avatar_id: str) -> None:
        async with self.session_maker() as db:
            await crud.focus_ping(db, channel_id, avatar_id)

    async def record_mention(self, channel_id: str, avatar_id: str) -> None:
        async with self.session_maker() as db:
            await crud.record_mention(db, channel_id, avatar_id)

    async def record_turn(self, channel_id: str, avatar_id: str) -> None:
        async with self.session_maker() as db:
            await crud.record_turn(db, channel_id, avatar_id)

    async def set_state(self, channel_id: str, avatar_id: str, state: PresenceState) -> None:
        async with self.session_maker() as db:
            await crud.set_state(db, channel_id, avatar_id, state)

    async def set_active_speaker(self, channel_id: str, avatar_id: str) -> None:
        async with self.session_maker() as db:
            await crud.set_conversation_role(db, channel_id, avatar_id, ConversationRole.ACTIVE_SPEAKER)

    async def list_present(self, channel_id: str) -> List[models.Presence]:
        async with self.session_maker() as db:
            return await crud.list_present(db, channel_id)

    async def grant_new_summon_turns(self, channel_id: str, avatar_id: str, turns: int = 2) -> None:
        async with self.session_maker() as db:
            await crud.grant_new_summon_turns(db, channel_id, avatar_id, turns)
        logger.info(f"🎟️ Granted {turns} summon turn(s) to {avatar_id} in {channel_id}")

    async def consume_new_summon_turn(self, channel_id: str, avatar_id: str) -> bool:
        async with self.session_maker() as db:
            return await crud.consume_new_summon_turn(db, channel_id, avatar_id)

    async def find_priority_summon(self, channel_id: str) -> Optional[models.Presence]:
        async with self.session_maker() as db:
            return await crud.find_priority_summon(db, channel_id)

    async def find_active_speaker(self, channel_id: str) -> Optional[models.Presence]:
        async with self.session_maker() as db:
            return await crud.find_active_speaker(db, channel_id)
