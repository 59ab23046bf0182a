"""
CRUD operations for per-channel tick counters.
"""

from datetime import datetime
from typing import Optional

import models
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from utils.timeutils import utcnow

from .helpers import dialect_insert


async def advance_tick(db: AsyncSession, channel_id: str, now: Optional[datetime] = None) -> int:
    """
    Atomically increment the channel's tick counter and return the new value.

    A missing counter is created at 0 and advanced in the same statement, so
    the first call returns 1.
    """
    now = now or utcnow()
    stmt = dialect_insert(db, models.ChannelTick).values(channel_id=channel_id, tick_id=1, last_tick_at=now)
    stmt = stmt.on_conflict_do_update(
        index_elements=[models.ChannelTick.channel_id],
        set_={"tick_id": models.ChannelTick.tick_id + 1, "last_tick_at": now},
    ).returning(models.ChannelTick.tick_id)
    result = await db.execute(stmt)
    tick_id = result.scalar_one()
    await db.commit()
    return int(tick_id)


async def peek_tick(db: AsyncSession, channel_id: str, now: Optional[datetime] = None) -> int:
    """Return the current tick id, initializing the counter to 0 if absent."""
    now = now or utcnow()
    stmt = (
        dialect_insert(db, models.ChannelTick)
        .values(channel_id=channel_id, tick_id=0, last_tick_at=now)
        .on_conflict_do_nothing(index_elements=[models.ChannelTick.channel_id])
    )
    await db.execute(stmt)
    await db.commit()

    result = await db.execute(select(models.ChannelTick.tick_id).where(models.ChannelTick.channel_id == channel_id))
    return int(result.scalar_one())
