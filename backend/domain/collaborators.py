"""
Contracts for the external collaborators the engine talks to.

The engine never generates text, talks to the messaging platform, or owns
avatar identities itself; it is handed objects satisfying these protocols.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .contexts import Avatar, ChannelMessageView, IncomingMessage, ResponseOptions, SentMessage


@runtime_checkable
class GenerationService(Protocol):
    async def generate(
        self,
        avatar: Avatar,
        channel_id: str,
        message: Optional[IncomingMessage],
        options: ResponseOptions,
    ) -> Optional[str]: ...


@runtime_checkable
class Transport(Protocol):
    async def fetch_recent_messages(self, channel_id: str, limit: int = 20) -> list[ChannelMessageView]: ...

    async def send_message(self, channel_id: str, avatar: Avatar, content: str) -> Optional[SentMessage]: ...

    async def relocate_avatar(self, avatar: Avatar, channel_id: str) -> None: ...


@runtime_checkable
class IdentityStore(Protocol):
    async def get_avatar_by_id(self, avatar_id: str) -> Optional[Avatar]: ...

    async def get_avatars_in_channel(self, channel_id: str, guild_id: Optional[str] = None) -> list[Avatar]: ...

    async def update_activity(self, avatar_id: str, at: datetime) -> None: ...


@runtime_checkable
class DecisionPredicate(Protocol):
    async def should_respond(self, channel_id: str, avatar: Avatar, message: Optional[IncomingMessage]) -> bool: ...


@runtime_checkable
class AffinityStore(Protocol):
    async def get_affinity(self, channel_id: str, user_id: str) -> Optional[str]: ...

    async def set_affinity(self, channel_id: str, user_id: str, avatar_id: str, ttl_ms: Optional[int] = None) -> None: ...


__all__ = ["GenerationService", "Transport", "IdentityStore", "DecisionPredicate", "AffinityStore"]
