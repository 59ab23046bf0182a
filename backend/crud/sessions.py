"""
CRUD operations for conversation sessions and sticky affinities.
"""

from datetime import datetime, timedelta
from typing import Optional

import models
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from utils.timeutils import after_ms, utcnow

from .helpers import dialect_insert


async def upsert_conversation_session(
    db: AsyncSession, channel_id: str, user_id: str, avatar_id: str, now: Optional[datetime] = None
) -> None:
    """Point the (channel, user) session at avatar_id and count the interaction."""
    now = now or utcnow()
    stmt = dialect_insert(db, models.ConversationSession).values(
        channel_id=channel_id,
        user_id=user_id,
        avatar_id=avatar_id,
        message_count=1,
        started_at=now,
        last_interaction_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[models.ConversationSession.channel_id, models.ConversationSession.user_id],
        set_={
            "avatar_id": avatar_id,
            "message_count": models.ConversationSession.message_count + 1,
            "last_interaction_at": now,
            "updated_at": now,
        },
    )
    await db.execute(stmt)
    await db.commit()


async def get_conversation_session(
    db: AsyncSession, channel_id: str, user_id: str
) -> Optional[models.ConversationSession]:
    result = await db.execute(
        select(models.ConversationSession)
        .where(
            models.ConversationSession.channel_id == channel_id,
            models.ConversationSession.user_id == user_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def delete_conversation_session(db: AsyncSession, channel_id: str, user_id: str) -> None:
    await db.execute(
        delete(models.ConversationSession).where(
            models.ConversationSession.channel_id == channel_id,
            models.ConversationSession.user_id == user_id,
        )
    )
    await db.commit()


async def delete_stale_sessions(db: AsyncSession, ttl_minutes: int, now: Optional[datetime] = None) -> int:
    cutoff = (now or utcnow()) - timedelta(minutes=ttl_minutes)
    result = await db.execute(
        delete(models.ConversationSession).where(models.ConversationSession.last_interaction_at < cutoff)
    )
    await db.commit()
    return result.rowcount


async def get_affinity(
    db: AsyncSession, channel_id: str, user_id: str, now: Optional[datetime] = None
) -> Optional[str]:
    """Avatar id the user is pinned to in this channel, ignoring expired pins."""
    now = now or utcnow()
    result = await db.execute(
        select(models.UserAffinity.avatar_id).where(
            models.UserAffinity.channel_id == channel_id,
            models.UserAffinity.user_id == user_id,
            models.UserAffinity.expires_at > now,
        )
    )
    return result.scalar_one_or_none()


async def set_affinity(
    db: AsyncSession, channel_id: str, user_id: str, avatar_id: str, ttl_ms: int, now: Optional[datetime] = None
) -> None:
    now = now or utcnow()
    expires_at = after_ms(now, ttl_ms)
    stmt = dialect_insert(db, models.UserAffinity).values(
        channel_id=channel_id, user_id=user_id, avatar_id=avatar_id, expires_at=expires_at, updated_at=now
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[models.UserAffinity.channel_id, models.UserAffinity.user_id],
        set_={"avatar_id": avatar_id, "expires_at": expires_at, "updated_at": now},
    )
    await db.execute(stmt)
    await db.commit()


async def delete_expired_affinities(db: AsyncSession, now: Optional[datetime] = None) -> int:
    result = await db.execute(delete(models.UserAffinity).where(models.UserAffinity.expires_at <= (now or utcnow())))
    await db.commit()
    return result.rowcount
