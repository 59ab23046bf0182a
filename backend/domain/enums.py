"""
Domain enums for type-safe constants.
"""

from enum import Enum


class PresenceState(str, Enum):
    """Whether an avatar is currently taking part in a channel."""

    PRESENT = "present"
    ABSENT = "absent"

    def __str__(self) -> str:
        return self.value


class LeaseStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


class LeaseMode(str, Enum):
    """Which scheduling path took the lease."""

    AMBIENT = "ambient"
    PRIORITY = "priority"
    FASTLANE = "fastlane"

    def __str__(self) -> str:
        return self.value


class TriggerType(str, Enum):
    MENTION = "mention"
    HUMAN_MESSAGE = "human_message"
    BOT_MESSAGE = "bot_message"
    AMBIENT = "ambient"

    def __str__(self) -> str:
        return self.value


class TriggerPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    def __str__(self) -> str:
        return self.value


class ConversationRole(str, Enum):
    ACTIVE_SPEAKER = "active_speaker"

    def __str__(self) -> str:
        return self.value


class SelectionTier(str, Enum):
    """Tiers of the responder selection cascade, in evaluation order."""

    DIRECT_REPLY = "direct_reply"
    THREAD_CONTINUATION = "thread_continuation"
    PRIORITY_SUMMON = "priority_summon"
    STICKY_AFFINITY = "sticky_affinity"
    DIRECT_MENTION = "direct_mention"
    ACTIVE_SPEAKER = "active_speaker"
    PRESENCE_RANKED = "presence_ranked"
    DECISION_FALLBACK = "decision_fallback"

    def __str__(self) -> str:
        return self.value
