"""
Final admission check applied right before generation.
"""

import logging
import time
from typing import Callable, Dict, Optional, Set, Tuple

logger = logging.getLogger("RateLimitGate")

# Responder sets older than this are dropped by cleanup()
TRIGGER_RETENTION_SEC = 600


class RateLimitGate:
    """
    Per-channel cooldowns plus per-trigger responder bookkeeping.

    Checks, in order:
        1. bot-reply and channel cooldowns (skipped when override_cooldown)
        2. distinct responders for the trigger below the cap
        3. the avatar has not already answered the trigger
    """

    def __init__(
        self,
        channel_cooldown_ms: int = 5_000,
        bot_reply_cooldown_ms: int = 10_000,
        max_responders_per_trigger: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.channel_cooldown = channel_cooldown_ms / 1000
        self.bot_reply_cooldown = bot_reply_cooldown_ms / 1000
        self.max_responders_per_trigger = max_responders_per_trigger
        self._clock = clock
        self._last_output: Dict[str, float] = {}
        self._responders: Dict[Tuple[str, str], Tuple[float, Set[str]]] = {}

    def admit(self, channel_id: str, avatar_id: str, trigger_key: str, override_cooldown: bool = False) -> bool:
        now = self._clock()

        if not override_cooldown:
            last_output = self._last_output.get(channel_id)
            elapsed = float("inf") if last_output is None else now - last_output
            if elapsed < self.bot_reply_cooldown:
                remaining = self.bot_reply_cooldown - elapsed
                logger.info(f"⏳ {avatar_id} blocked by bot reply cooldown in {channel_id} ({remaining:.1f}s left)")
                return False
            if elapsed < self.channel_cooldown:
                logger.debug(f"{avatar_id} blocked by channel cooldown in {channel_id}")
                return False

        responders = self.responders_for(channel_id, trigger_key)
        if len(responders) >= self.max_responders_per_trigger:
            logger.debug(f"{avatar_id} blocked: {channel_id} reached {len(responders)} responders for {trigger_key}")
            return False
        if avatar_id in responders:
            logger.debug(f"{avatar_id} already responded to {trigger_key} in {channel_id}")
            return False
        return True

    def record_response(self, channel_id: str, avatar_id: str, trigger_key: str) -> None:
        now = self._clock()
        self._last_output[channel_id] = now
        key = (channel_id, trigger_key)
        _, responders = self._responders.get(key, (now, set()))
        responders.add(avatar_id)
        self._responders[key] = (now, responders)

    def responders_for(self, channel_id: str, trigger_key: str) -> Set[str]:
        entry = self._responders.get((channel_id, trigger_key))
        return set(entry[1]) if entry else set()

    def cleanup(self, retention_sec: Optional[float] = None) -> int:
        """Drop responder sets for triggers that have gone quiet."""
        retention = TRIGGER_RETENTION_SEC if retention_sec is None else retention_sec
        cutoff = self._clock() - retention
        stale = [key for key, (touched, _) in self._responders.items() if touched < cutoff]
        for key in stale:
            del self._responders[key]
        return len(stale)
