"""
Short-lived multi-turn conversation threads between avatars.

Threads live in process memory: they are a conversational nicety for tier-1
selection, not a correctness mechanism, so losing them on restart is fine.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set

logger = logging.getLogger("ConversationThreads")

DEFAULT_THREAD_MODE = "mention"


@dataclass
class ConversationThread:
    id: str
    channel_id: str
    participants: Set[str]
    started_at: float
    last_activity_at: float
    expires_at: float
    max_turns: int
    turn_count: int = 0
    mode: str = DEFAULT_THREAD_MODE
    last_speaker_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def is_active(self, now: float) -> bool:
        if self.max_turns and self.turn_count >= self.max_turns:
            return False
        return now < self.expires_at


class ConversationThreadService:
    def __init__(
        self,
        ttl_ms: int = 180_000,
        max_turns: int = 6,
        extend_on_activity: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl_ms / 1000
        self.max_turns = max_turns
        self.extend_on_activity = extend_on_activity
        self._clock = clock
        self._threads: Dict[str, List[ConversationThread]] = {}

    def start_thread(
        self,
        channel_id: str,
        participants: Iterable[str],
        mode: str = DEFAULT_THREAD_MODE,
        last_speaker_id: Optional[str] = None,
        ttl_ms: Optional[int] = None,
        max_turns: Optional[int] = None,
        force_new: bool = False,
    ) -> ConversationThread:
        """
        Open a thread, or refresh an active one with the same participants and mode.

        Raises:
            ValueError: If no participants are given
        """
        ids = {str(p) for p in participants if p}
        if not ids:
            raise ValueError("At least one participant is required to start a thread")

        now = self._clock()
        duration = (ttl_ms / 1000) if ttl_ms else self.ttl
        threads = self._threads.setdefault(channel_id, [])

        if not force_new:
            for thread in threads:
                if thread.mode == mode and thread.participants == ids and thread.is_active(now):
                    thread.expires_at = now + duration
                    thread.last_activity_at = now
                    return thread

        thread = ConversationThread(
            id=str(uuid.uuid4()),
            channel_id=channel_id,
            participants=ids,
            started_at=now,
            last_activity_at=now,
            expires_at=now + duration,
            max_turns=max_turns or self.max_turns,
            mode=mode,
            last_speaker_id=str(last_speaker_id) if last_speaker_id else None,
        )
        threads.append(thread)
        logger.debug(f"🧵 Thread {thread.id} started in {channel_id} with {sorted(ids)}")
        return thread

    def get_thread(self, channel_id: str, thread_id: str) -> Optional[ConversationThread]:
        for thread in self._threads.get(channel_id, []):
            if thread.id == thread_id:
                return thread
        return None

    def get_active_threads(self, channel_id: str) -> List[ConversationThread]:
        self.prune_expired()
        now = self._clock()
        return [t for t in self._threads.get(channel_id, []) if t.is_active(now)]

    def next_participant(self, thread: ConversationThread, eligible_ids: Iterable[str]) -> Optional[str]:
        """First eligible participant who did not speak last, in stable id order."""
        eligible = {str(e) for e in eligible_ids}
        for participant in sorted(thread.participants):
            if participant in eligible and participant != thread.last_speaker_id:
                return participant
        return None

    def record_turn(self, channel_id: str, avatar_id: str, thread_id: str) -> Optional[ConversationThread]:
        thread = self.get_thread(channel_id, thread_id)
        if thread is None:
            return None

        now = self._clock()
        thread.turn_count += 1
        thread.last_activity_at = now
        thread.last_speaker_id = str(avatar_id)
        if self.extend_on_activity:
            thread.expires_at = now + (self.ttl / 2 or self.ttl)

        if not thread.is_active(now):
            self.end_thread(channel_id, thread_id, reason="turn_limit_reached")
        return thread

    def end_thread(self, channel_id: str, thread_id: str, reason: str = "manual") -> bool:
        threads = self._threads.get(channel_id, [])
        for idx, thread in enumerate(threads):
            if thread.id == thread_id:
                threads.pop(idx)
                if not threads:
                    self._threads.pop(channel_id, None)
                logger.debug(f"🧵 Thread {thread_id} in {channel_id} ended ({reason})")
                return True
        return False

    def prune_expired(self) -> int:
        now = self._clock()
        removed = 0
        for channel_id in list(self._threads):
            active = [t for t in self._threads[channel_id] if t.is_active(now)]
            removed += len(self._threads[channel_id]) - len(active)
            if active:
                self._threads[channel_id] = active
            else:
                del self._threads[channel_id]
        return removed
