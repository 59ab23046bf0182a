"""
Store-backed sticky affinity, used when no external affinity store is supplied.
"""

from typing import Optional

import crud
from sqlalchemy.ext.asyncio import async_sessionmaker


class SqlAffinityStore:
    """(channel, user) -> avatar pins with a TTL, kept in the user_affinities table."""

    def __init__(self, session_maker: async_sessionmaker, default_ttl_ms: int = 600_000):
        self.session_maker = session_maker
        self.default_ttl_ms = default_ttl_ms

    async def get_affinity(self, channel_id: str, user_id: str) -> Optional[str]:
        async with self.session_maker() as db:
            return await crud.get_affinity(db, channel_id, user_id)

    async def set_affinity(self, channel_id: str, user_id: str, avatar_id: str, ttl_ms: Optional[int] = None) -> None:
        async with self.session_maker() as db:
            await crud.set_affinity(db, channel_id, user_id, avatar_id, ttl_ms or self.default_ttl_ms)
