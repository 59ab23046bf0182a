"""
CRUD operations for channel activity and the message log.
"""

from datetime import datetime
from typing import List, Optional

import models
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from utils.timeutils import utcnow

from .helpers import dialect_insert


async def record_channel_message(
    db: AsyncSession,
    channel_id: str,
    message_id: str,
    author_id: Optional[str],
    is_bot: bool,
    author_name: Optional[str] = None,
    avatar_id: Optional[str] = None,
    reply_to_message_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """
    Log a channel message and bump the channel's activity timestamps.

    Idempotent on message_id, so the fast lane and the coordinator may both
    record the same incoming message.
    """
    now = now or utcnow()
    await db.execute(
        dialect_insert(db, models.ChannelMessage)
        .values(
            message_id=message_id,
            channel_id=channel_id,
            author_id=author_id,
            author_name=author_name,
            is_bot=is_bot,
            avatar_id=avatar_id,
            reply_to_message_id=reply_to_message_id,
            created_at=now,
        )
        .on_conflict_do_nothing(index_elements=[models.ChannelMessage.message_id])
    )

    activity_values = {"channel_id": channel_id, "last_activity_at": now}
    update_values = {"last_activity_at": now}
    if not is_bot:
        activity_values["last_human_message_at"] = now
        update_values["last_human_message_at"] = now
    await db.execute(
        dialect_insert(db, models.ChannelActivity)
        .values(**activity_values)
        .on_conflict_do_update(index_elements=[models.ChannelActivity.channel_id], set_=update_values)
    )
    await db.commit()


async def get_active_channels(db: AsyncSession, limit: int = 50) -> List[str]:
    """Channel ids ordered by most recent activity."""
    result = await db.execute(
        select(models.ChannelActivity.channel_id)
        .order_by(models.ChannelActivity.last_activity_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_channel_activity(db: AsyncSession, channel_id: str) -> Optional[models.ChannelActivity]:
    return await db.get(models.ChannelActivity, channel_id, populate_existing=True)


async def count_active_humans(db: AsyncSession, channel_id: str, since: datetime) -> int:
    """Distinct human authors in the channel since the given time."""
    result = await db.execute(
        select(func.count(func.distinct(models.ChannelMessage.author_id))).where(
            models.ChannelMessage.channel_id == channel_id,
            models.ChannelMessage.is_bot == False,  # noqa: E712
            models.ChannelMessage.created_at > since,
        )
    )
    return result.scalar() or 0


async def find_message_avatar(db: AsyncSession, message_id: str) -> Optional[str]:
    """Avatar id that authored message_id, if it was sent through the engine."""
    result = await db.execute(
        select(models.ChannelMessage.avatar_id).where(models.ChannelMessage.message_id == message_id)
    )
    return result.scalar_one_or_none()
