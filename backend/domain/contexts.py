"""
Consolidated context data structures.

Contains the dataclasses passed between the scheduler, the coordinator and the
external collaborators.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, List, Optional, Set

from .enums import SelectionTier, TriggerPriority, TriggerType

if TYPE_CHECKING:
    import models


@dataclass
class Avatar:
    """
    An autonomous conversational actor as seen by the engine.

    Attributes:
        id: Stable avatar identifier
        name: Display name, matched case-insensitively for mentions
        emoji: Optional signature emoji, also matched for mentions
        aliases: Extra names the avatar answers to
        display_name: Optional alternate display name
        channel_id: Channel the avatar currently lives in, if known
    """

    id: str
    name: str
    emoji: Optional[str] = None
    aliases: List[str] = field(default_factory=list)
    display_name: Optional[str] = None
    channel_id: Optional[str] = None


@dataclass
class IncomingMessage:
    """
    A message arriving in a channel.

    Attributes:
        id: Transport message id
        channel_id: Channel the message was posted in
        author_id: Author id (human user, bot or webhook)
        content: Raw text content
        author_is_bot: True for bot/webhook authors (avatars included)
        author_name: Optional username for logging and alias matching
        reply_to_message_id: Id of the message this one replies to, if any
        mentioned_user_ids: Platform-level @mentions
        webhook_id: Webhook id when sent through a webhook
    """

    id: str
    channel_id: str
    author_id: str
    content: str = ""
    author_is_bot: bool = False
    author_name: Optional[str] = None
    reply_to_message_id: Optional[str] = None
    mentioned_user_ids: List[str] = field(default_factory=list)
    webhook_id: Optional[str] = None


@dataclass
class ChannelMessageView:
    """A recent channel message as returned by the transport."""

    id: str
    author_id: str
    author_name: Optional[str] = None
    author_is_bot: bool = False
    webhook_id: Optional[str] = None
    display_name: Optional[str] = None
    nickname: Optional[str] = None


@dataclass
class SentMessage:
    """Receipt returned by the transport after posting as an avatar."""

    id: str
    channel_id: str
    content: str


@dataclass
class Trigger:
    type: TriggerType
    source: str
    priority: Optional[TriggerPriority] = None


@dataclass
class ScoringContext:
    """
    Inputs to initiative scoring beyond the presence record itself.

    Attributes:
        mentioned_ids: Avatars mentioned by the trigger
        topic_tags: Tags of the current conversation topic
        social_balance_lift: Extra lift in [0, 1] for under-represented avatars
    """

    mentioned_ids: Set[str] = field(default_factory=set)
    topic_tags: List[str] = field(default_factory=list)
    social_balance_lift: float = 0.0


@dataclass
class RankedAvatar:
    avatar: Avatar
    presence: Optional["models.Presence"]
    score: float


@dataclass
class CoordinationContext:
    """
    Optional inputs to ``ResponseCoordinator.coordinate_response``.

    Attributes:
        guild_id: Guild/server id passed through to the identity store
        avatars: Pre-resolved eligible avatars (skips the identity lookup)
        trigger_type: Explicit trigger override
        override_cooldown: Bypass the channel cooldowns in the rate gate
        cascade_depth: Depth of the mention cascade that produced this call
    """

    guild_id: Optional[str] = None
    avatars: Optional[List[Avatar]] = None
    trigger_type: Optional[TriggerType] = None
    override_cooldown: bool = False
    cascade_depth: int = 0


@dataclass
class ResponseOptions:
    """Per-avatar options handed to the generation service."""

    trigger_key: str
    override_cooldown: bool = False
    cascade_depth: int = 0
    thread_id: Optional[str] = None
    tier: Optional[SelectionTier] = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class Selection:
    """Result of the responder cascade: who was picked and by which tier."""

    avatars: List[Avatar]
    tier: Optional[SelectionTier] = None
    thread_id: Optional[str] = None
    override_cooldown: bool = False


@dataclass
class GeneratedResponse:
    avatar_id: str
    channel_id: str
    message_id: str
    content: str
    tier: Optional[SelectionTier] = None
