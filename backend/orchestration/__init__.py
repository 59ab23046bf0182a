"""
Turn scheduling and response coordination.

This module provides the ambient scheduler, the message-triggered coordinator
and the pieces they share: initiative scoring, leases and locks, the
rate-limit gate, conversation threads, the speaker cache and the mention
cascade.
"""

from .affinity import SqlAffinityStore
from .coordinator import ResponseCoordinator
from .leases import ResponseLock, TickCounter, TurnLeaseRegistry
from .mentions import (
    MentionCascade,
    extract_speaker_aliases,
    find_mentioned_avatars,
    get_avatar_aliases,
    name_mentioned,
    strip_emojis,
)
from .presence import InitiativeScorer, PresenceService, rank_records
from .rate_limit import RateLimitGate
from .response_generator import ResponseGenerator
from .selection import SelectionContext, SelectionStrategy, run_cascade
from .speaker_cache import SpeakerCache
from .threads import ConversationThread, ConversationThreadService
from .turn_scheduler import TurnScheduler

__all__ = [
    "ConversationThread",
    "ConversationThreadService",
    "InitiativeScorer",
    "MentionCascade",
    "PresenceService",
    "RateLimitGate",
    "ResponseCoordinator",
    "ResponseGenerator",
    "ResponseLock",
    "SelectionContext",
    "SelectionStrategy",
    "SpeakerCache",
    "SqlAffinityStore",
    "TickCounter",
    "TurnLeaseRegistry",
    "TurnScheduler",
    "extract_speaker_aliases",
    "find_mentioned_avatars",
    "get_avatar_aliases",
    "name_mentioned",
    "rank_records",
    "run_cascade",
    "strip_emojis",
]
