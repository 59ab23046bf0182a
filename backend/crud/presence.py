"""
CRUD operations for Presence entities.
"""

import uuid
from datetime import datetime
from typing import Iterable, List, Optional

import models
from domain.enums import ConversationRole, PresenceState
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from utils.timeutils import utcnow

from .helpers import dialect_insert


async def ensure_presence(
    db: AsyncSession, channel_id: str, avatar_id: str, now: Optional[datetime] = None
) -> models.Presence:
    """
    Create the presence record on first sighting; otherwise only touch updated_at.

    Safe to call concurrently: the insert is a no-op when the row exists.
    """
    now = now or utcnow()
    stmt = (
        dialect_insert(db, models.Presence)
        .values(
            channel_id=channel_id,
            avatar_id=avatar_id,
            state=PresenceState.PRESENT.value,
            session_id=str(uuid.uuid4()),
            new_summon_turns_remaining=0,
            priority_pins=0,
            topic_tags=[],
            fatigue=0.0,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_update(
            index_elements=[models.Presence.channel_id, models.Presence.avatar_id],
            set_={"updated_at": now},
        )
    )
    await db.execute(stmt)
    await db.commit()
    return await get_presence(db, channel_id, avatar_id)


async def get_presence(db: AsyncSession, channel_id: str, avatar_id: str) -> Optional[models.Presence]:
    result = await db.execute(
        select(models.Presence)
        .where(models.Presence.channel_id == channel_id, models.Presence.avatar_id == avatar_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def start_session(db: AsyncSession, channel_id: str, avatar_id: str) -> models.Presence:
    """Mark the avatar present with a fresh session id and a summon timestamp."""
    now = utcnow()
    await ensure_presence(db, channel_id, avatar_id, now=now)
    await db.execute(
        update(models.Presence)
        .where(models.Presence.channel_id == channel_id, models.Presence.avatar_id == avatar_id)
        .values(
            session_id=str(uuid.uuid4()),
            state=PresenceState.PRESENT.value,
            last_summoned_at=now,
            updated_at=now,
        )
    )
    await db.commit()
    return await get_presence(db, channel_id, avatar_id)


async def focus_ping(db: AsyncSession, channel_id: str, avatar_id: str) -> None:
    now = utcnow()
    await db.execute(
        update(models.Presence)
        .where(
            models.Presence.channel_id == channel_id,
            models.Presence.avatar_id == avatar_id,
            models.Presence.state == PresenceState.PRESENT.value,
        )
        .values(last_summoned_at=now, updated_at=now)
    )
    await db.commit()


async def record_mention(db: AsyncSession, channel_id: str, avatar_id: str, now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    await ensure_presence(db, channel_id, avatar_id, now=now)
    await db.execute(
        update(models.Presence)
        .where(models.Presence.channel_id == channel_id, models.Presence.avatar_id == avatar_id)
        .values(last_mentioned_at=now, updated_at=now)
    )
    await db.commit()


async def record_turn(db: AsyncSession, channel_id: str, avatar_id: str, now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    await db.execute(
        update(models.Presence)
        .where(models.Presence.channel_id == channel_id, models.Presence.avatar_id == avatar_id)
        .values(last_turn_at=now, updated_at=now)
    )
    await db.commit()


async def set_state(db: AsyncSession, channel_id: str, avatar_id: str, state: PresenceState) -> None:
    await db.execute(
        update(models.Presence)
        .where(models.Presence.channel_id == channel_id, models.Presence.avatar_id == avatar_id)
        .values(state=PresenceState(state).value, updated_at=utcnow())
    )
    await db.commit()


async def set_conversation_role(
    db: AsyncSession, channel_id: str, avatar_id: str, role: Optional[ConversationRole]
) -> None:
    """Set (or clear with None) the avatar's conversation role in the channel."""
    now = utcnow()
    if role == ConversationRole.ACTIVE_SPEAKER:
        # Only one active speaker per channel
        await db.execute(
            update(models.Presence)
            .where(
                models.Presence.channel_id == channel_id,
                models.Presence.conversation_role == ConversationRole.ACTIVE_SPEAKER.value,
            )
            .values(conversation_role=None, updated_at=now)
        )
    await db.execute(
        update(models.Presence)
        .where(models.Presence.channel_id == channel_id, models.Presence.avatar_id == avatar_id)
        .values(conversation_role=role.value if role else None, updated_at=now)
    )
    await db.commit()


async def list_present(db: AsyncSession, channel_id: str) -> List[models.Presence]:
    result = await db.execute(
        select(models.Presence).where(
            models.Presence.channel_id == channel_id,
            models.Presence.state == PresenceState.PRESENT.value,
        )
    )
    return list(result.scalars().all())


async def get_presence_records(db: AsyncSession, channel_id: str, avatar_ids: Iterable[str]) -> List[models.Presence]:
    ids = [str(a) for a in avatar_ids]
    if not ids:
        return []
    result = await db.execute(
        select(models.Presence).where(models.Presence.channel_id == channel_id, models.Presence.avatar_id.in_(ids))
    )
    return list(result.scalars().all())


async def grant_new_summon_turns(db: AsyncSession, channel_id: str, avatar_id: str, turns: int = 2) -> None:
    """Grant a limited number of guaranteed early turns to a freshly summoned avatar."""
    now = utcnow()
    await ensure_presence(db, channel_id, avatar_id, now=now)
    await db.execute(
        update(models.Presence)
        .where(models.Presence.channel_id == channel_id, models.Presence.avatar_id == avatar_id)
        .values(new_summon_turns_remaining=turns, last_summoned_at=now, updated_at=now)
    )
    await db.commit()


async def consume_new_summon_turn(db: AsyncSession, channel_id: str, avatar_id: str) -> bool:
    """
    Atomically take one summon turn.

    Returns:
        True if a turn was available and consumed, False otherwise
    """
    result = await db.execute(
        update(models.Presence)
        .where(
            models.Presence.channel_id == channel_id,
            models.Presence.avatar_id == avatar_id,
            models.Presence.new_summon_turns_remaining > 0,
        )
        .values(
            new_summon_turns_remaining=models.Presence.new_summon_turns_remaining - 1,
            updated_at=utcnow(),
        )
    )
    await db.commit()
    return result.rowcount > 0


async def find_priority_summon(db: AsyncSession, channel_id: str) -> Optional[models.Presence]:
    """Most recently summoned avatar that still holds guaranteed turns in the channel."""
    result = await db.execute(
        select(models.Presence)
        .where(
            models.Presence.channel_id == channel_id,
            models.Presence.new_summon_turns_remaining > 0,
        )
        .order_by(models.Presence.last_summoned_at.desc().nulls_last())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_active_speaker(db: AsyncSession, channel_id: str) -> Optional[models.Presence]:
    result = await db.execute(
        select(models.Presence)
        .where(
            models.Presence.channel_id == channel_id,
            models.Presence.conversation_role == ConversationRole.ACTIVE_SPEAKER.value,
            models.Presence.state == PresenceState.PRESENT.value,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()
