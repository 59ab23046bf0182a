"""
CRUD operations for TurnLease entities.
"""

from datetime import datetime, timedelta
from typing import Optional

import models
from domain.enums import LeaseMode, LeaseStatus
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from utils.timeutils import after_ms, utcnow

from .helpers import is_duplicate_key, logger


async def try_lease(
    db: AsyncSession,
    channel_id: str,
    avatar_id: str,
    tick_id: int,
    mode: LeaseMode = LeaseMode.AMBIENT,
    ttl_ms: int = 90_000,
    message_id: Optional[str] = None,
    author_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Conditionally insert a pending lease for (channel, avatar, tick).

    Returns:
        True if the lease was created, False if one already exists for the key
    """
    now = now or utcnow()
    lease = models.TurnLease(
        channel_id=channel_id,
        avatar_id=avatar_id,
        tick_id=tick_id,
        status=LeaseStatus.PENDING.value,
        mode=LeaseMode(mode).value,
        created_at=now,
        lease_expires_at=after_ms(now, ttl_ms),
        message_id=message_id,
        author_id=author_id,
    )
    db.add(lease)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        if not is_duplicate_key(e):
            raise
        return False
    return True


async def complete_lease(db: AsyncSession, channel_id: str, avatar_id: str, tick_id: int) -> bool:
    """Move a pending lease to completed. Terminal leases are left untouched."""
    result = await db.execute(
        update(models.TurnLease)
        .where(
            models.TurnLease.channel_id == channel_id,
            models.TurnLease.avatar_id == avatar_id,
            models.TurnLease.tick_id == tick_id,
            models.TurnLease.status == LeaseStatus.PENDING.value,
        )
        .values(status=LeaseStatus.COMPLETED.value, completed_at=utcnow())
    )
    await db.commit()
    return result.rowcount > 0


async def fail_lease(
    db: AsyncSession, channel_id: str, avatar_id: str, tick_id: int, error: Optional[object] = None
) -> bool:
    """Move a pending lease to failed, recording the error text."""
    result = await db.execute(
        update(models.TurnLease)
        .where(
            models.TurnLease.channel_id == channel_id,
            models.TurnLease.avatar_id == avatar_id,
            models.TurnLease.tick_id == tick_id,
            models.TurnLease.status == LeaseStatus.PENDING.value,
        )
        .values(status=LeaseStatus.FAILED.value, failed_at=utcnow(), error=str(error or "unknown")[:2000])
    )
    await db.commit()
    return result.rowcount > 0


async def get_lease(db: AsyncSession, channel_id: str, avatar_id: str, tick_id: int) -> Optional[models.TurnLease]:
    result = await db.execute(
        select(models.TurnLease).where(
            models.TurnLease.channel_id == channel_id,
            models.TurnLease.avatar_id == avatar_id,
            models.TurnLease.tick_id == tick_id,
        )
    )
    return result.scalar_one_or_none()


async def expire_stale_leases(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Mark pending leases past their TTL as failed (crashed holders)."""
    now = now or utcnow()
    result = await db.execute(
        update(models.TurnLease)
        .where(
            models.TurnLease.status == LeaseStatus.PENDING.value,
            models.TurnLease.lease_expires_at < now,
        )
        .values(status=LeaseStatus.FAILED.value, failed_at=now, error="lease expired")
    )
    await db.commit()
    if result.rowcount:
        logger.info(f"Expired {result.rowcount} stale pending lease(s)")
    return result.rowcount


async def delete_old_leases(db: AsyncSession, retention_hours: int, now: Optional[datetime] = None) -> int:
    """Delete terminal leases whose TTL ran out more than retention_hours ago."""
    now = now or utcnow()
    cutoff = now - timedelta(hours=retention_hours)
    result = await db.execute(
        delete(models.TurnLease).where(
            models.TurnLease.status != LeaseStatus.PENDING.value,
            models.TurnLease.lease_expires_at < cutoff,
        )
    )
    await db.commit()
    return result.rowcount
