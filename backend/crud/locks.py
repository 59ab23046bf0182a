"""
CRUD operations for ResponseLock entities.
"""

from datetime import datetime
from typing import Optional

import models
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from utils.timeutils import after_ms, utcnow

from .helpers import is_duplicate_key


async def acquire_lock(
    db: AsyncSession, channel_id: str, avatar_id: str, ttl_ms: int = 5_000, now: Optional[datetime] = None
) -> bool:
    """
    Insert the lock row for (channel, avatar).

    An existing row means another generation owns the avatar in this channel,
    even if its TTL has passed; only the janitor reclaims expired rows.
    """
    now = now or utcnow()
    db.add(
        models.ResponseLock(
            channel_id=channel_id,
            avatar_id=avatar_id,
            acquired_at=now,
            expires_at=after_ms(now, ttl_ms),
        )
    )
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        if not is_duplicate_key(e):
            raise
        return False
    return True


async def release_lock(db: AsyncSession, channel_id: str, avatar_id: str) -> None:
    await db.execute(
        delete(models.ResponseLock).where(
            models.ResponseLock.channel_id == channel_id,
            models.ResponseLock.avatar_id == avatar_id,
        )
    )
    await db.commit()


async def delete_expired_locks(db: AsyncSession, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    result = await db.execute(delete(models.ResponseLock).where(models.ResponseLock.expires_at < now))
    await db.commit()
    return result.rowcount
