"""
Domain layer for internal business logic data structures.

This package contains dataclasses, enums and collaborator contracts used for
clean parameter passing between the scheduler, the coordinator and the stores.
"""

from .collaborators import AffinityStore, DecisionPredicate, GenerationService, IdentityStore, Transport
from .contexts import (
    Avatar,
    ChannelMessageView,
    CoordinationContext,
    GeneratedResponse,
    IncomingMessage,
    RankedAvatar,
    ResponseOptions,
    ScoringContext,
    Selection,
    SentMessage,
    Trigger,
)
from .enums import (
    ConversationRole,
    LeaseMode,
    LeaseStatus,
    PresenceState,
    SelectionTier,
    TriggerPriority,
    TriggerType,
)

__all__ = [
    "Avatar",
    "ChannelMessageView",
    "CoordinationContext",
    "GeneratedResponse",
    "IncomingMessage",
    "RankedAvatar",
    "ResponseOptions",
    "ScoringContext",
    "Selection",
    "SentMessage",
    "Trigger",
    "ConversationRole",
    "LeaseMode",
    "LeaseStatus",
    "PresenceState",
    "SelectionTier",
    "TriggerPriority",
    "TriggerType",
    "AffinityStore",
    "DecisionPredicate",
    "GenerationService",
    "IdentityStore",
    "Transport",
]
