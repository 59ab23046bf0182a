from database import Base
from sqlalchemy import JSON, BigInteger, Boolean, Column, DateTime, Float, Index, Integer, String, Text, UniqueConstraint

from utils.timeutils import utcnow


class Presence(Base):
    """Per (channel, avatar) conversational state. Never hard-deleted."""

    __tablename__ = "presence"
    __table_args__ = (
        Index("idx_presence_channel_state", "channel_id", "state"),
        Index("idx_presence_channel_summoned", "channel_id", "last_summoned_at"),
    )

    channel_id = Column(String, primary_key=True)
    avatar_id = Column(String, primary_key=True)
    state = Column(String, nullable=False, default="present")  # 'present' or 'absent'
    session_id = Column(String, nullable=True)
    last_turn_at = Column(DateTime, nullable=True)
    last_mentioned_at = Column(DateTime, nullable=True)
    last_summoned_at = Column(DateTime, nullable=True)
    new_summon_turns_remaining = Column(Integer, nullable=False, default=0)
    priority_pins = Column(Integer, nullable=False, default=0)
    topic_tags = Column(JSON, nullable=False, default=list)
    conversation_role = Column(String, nullable=True)  # 'active_speaker' or NULL
    fatigue = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ChannelTick(Base):
    __tablename__ = "channel_ticks"

    channel_id = Column(String, primary_key=True)
    tick_id = Column(BigInteger, nullable=False, default=0)
    last_tick_at = Column(DateTime, default=utcnow)


class TurnLease(Base):
    """
    Per-epoch ticket for one avatar's turn.

    The unique constraint on (channel_id, avatar_id, tick_id) is the primary
    de-duplication mechanism shared by the ambient sweep and the fast lane.
    """

    __tablename__ = "turn_leases"
    __table_args__ = (
        UniqueConstraint("channel_id", "avatar_id", "tick_id", name="ux_turn_leases_channel_avatar_tick"),
        Index("idx_turn_leases_expires", "lease_expires_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel_id = Column(String, nullable=False)
    avatar_id = Column(String, nullable=False)
    tick_id = Column(BigInteger, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending | completed | failed
    mode = Column(String, nullable=False, default="ambient")  # ambient | priority | fastlane
    created_at = Column(DateTime, default=utcnow)
    lease_expires_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
    message_id = Column(String, nullable=True)
    author_id = Column(String, nullable=True)


class ResponseLock(Base):
    """In-flight generation mutex: at most one row per (channel, avatar)."""

    __tablename__ = "response_locks"
    __table_args__ = (Index("idx_response_locks_expires", "expires_at"),)

    channel_id = Column(String, primary_key=True)
    avatar_id = Column(String, primary_key=True)
    acquired_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False)


class ChannelActivity(Base):
    __tablename__ = "channel_activity"

    channel_id = Column(String, primary_key=True)
    last_activity_at = Column(DateTime, default=utcnow, index=True)
    last_human_message_at = Column(DateTime, nullable=True)


class ChannelMessage(Base):
    """
    Message log used for activity estimates and reply attribution.

    Messages sent by avatars carry avatar_id so a later reply can be traced
    back to the avatar that wrote the original.
    """

    __tablename__ = "channel_messages"
    __table_args__ = (
        Index("idx_channel_messages_channel_created", "channel_id", "created_at"),
        Index("idx_channel_messages_channel_author", "channel_id", "author_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String, nullable=False, unique=True)
    channel_id = Column(String, nullable=False)
    author_id = Column(String, nullable=True)
    author_name = Column(String, nullable=True)
    is_bot = Column(Boolean, nullable=False, default=False)
    avatar_id = Column(String, nullable=True)  # Set when an avatar authored the message
    reply_to_message_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ConversationSession(Base):
    __tablename__ = "conversation_sessions"

    channel_id = Column(String, primary_key=True)
    user_id = Column(String, primary_key=True)
    avatar_id = Column(String, nullable=False)
    message_count = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime, default=utcnow)
    last_interaction_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class UserAffinity(Base):
    """Sticky affinity: a human user pinned to a preferred avatar until expires_at."""

    __tablename__ = "user_affinities"

    channel_id = Column(String, primary_key=True)
    user_id = Column(String, primary_key=True)
    avatar_id = Column(String, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
