"""
Recent avatar speakers per channel, for ambient diversity.
"""

import asyncio
import logging
from typing import List, Optional

from domain.collaborators import Transport
from domain.contexts import ChannelMessageView

from utils.cache import TTLCache, get_cache, speakers_key

logger = logging.getLogger("SpeakerCache")

FETCH_LIMIT = 20
CACHED_SPEAKERS = 10


class SpeakerCache:
    def __init__(self, transport: Transport, ttl_ms: int = 30_000, cache: Optional[TTLCache] = None):
        self.transport = transport
        self.ttl_seconds = ttl_ms / 1000
        self.cache = cache or get_cache()

    async def recent_speakers(self, channel_id: str, limit: int = 3) -> List[ChannelMessageView]:
        """
        Most recent bot/webhook-authored messages in the channel, newest first.

        Transport errors degrade to an empty list.
        """
        key = speakers_key(channel_id)
        cached = self.cache.get(key)
        if cached is None:
            try:
                messages = await self.transport.fetch_recent_messages(channel_id, limit=FETCH_LIMIT)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"⚠️ Could not fetch recent speakers for {channel_id}: {e}")
                return []
            cached = [m for m in messages or [] if m.author_is_bot or m.webhook_id][:CACHED_SPEAKERS]
            self.cache.set(key, cached, ttl_seconds=self.ttl_seconds)
        return list(cached[:limit])

    def invalidate(self, channel_id: str) -> None:
        self.cache.invalidate(speakers_key(channel_id))
