"""
CRUD operations module.

This module provides the store primitives the scheduler and coordinator are
built on, organized by aggregate. Every function takes an ``AsyncSession`` and
commits its own work; de-duplication relies on the database's unique
constraints, never on in-process locks.
"""

# Channel activity and message log
from .activity import (
    count_active_humans,
    find_message_avatar,
    get_active_channels,
    get_channel_activity,
    record_channel_message,
)

# Turn lease operations
from .leases import complete_lease, delete_old_leases, expire_stale_leases, fail_lease, get_lease, try_lease

# Response lock operations
from .locks import acquire_lock, delete_expired_locks, release_lock

# Presence operations
from .presence import (
    consume_new_summon_turn,
    ensure_presence,
    find_active_speaker,
    find_priority_summon,
    focus_ping,
    get_presence,
    get_presence_records,
    grant_new_summon_turns,
    list_present,
    record_mention,
    record_turn,
    set_conversation_role,
    set_state,
    start_session,
)

# Conversation sessions and sticky affinity
from .sessions import (
    delete_conversation_session,
    delete_expired_affinities,
    delete_stale_sessions,
    get_affinity,
    get_conversation_session,
    set_affinity,
    upsert_conversation_session,
)

# Tick counters
from .ticks import advance_tick, peek_tick

# Export all functions
__all__ = [
    # Channel activity
    "record_channel_message",
    "get_active_channels",
    "get_channel_activity",
    "count_active_humans",
    "find_message_avatar",
    # Leases
    "try_lease",
    "complete_lease",
    "fail_lease",
    "get_lease",
    "expire_stale_leases",
    "delete_old_leases",
    # Locks
    "acquire_lock",
    "release_lock",
    "delete_expired_locks",
    # Presence
    "ensure_presence",
    "get_presence",
    "start_session",
    "focus_ping",
    "record_mention",
    "record_turn",
    "set_state",
    "set_conversation_role",
    "list_present",
    "get_presence_records",
    "grant_new_summon_turns",
    "consume_new_summon_turn",
    "find_priority_summon",
    "find_active_speaker",
    # Sessions and affinity
    "upsert_conversation_session",
    "get_conversation_session",
    "delete_conversation_session",
    "delete_stale_sessions",
    "get_affinity",
    "set_affinity",
    "delete_expired_affinities",
    # Ticks
    "advance_tick",
    "peek_tick",
]
