"""
Single entry point for message- and tick-triggered response decisions.

Classifies the trigger, runs the responder selection cascade, then produces at
most ``max_responses_per_message`` responses, each under the avatar's
response lock.
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import List, Optional

import crud
import models
from domain.collaborators import AffinityStore, DecisionPredicate, IdentityStore, Transport
from domain.contexts import (
    Avatar,
    CoordinationContext,
    GeneratedResponse,
    IncomingMessage,
    ResponseOptions,
    Selection,
    Trigger,
)
from domain.enums import TriggerPriority, TriggerType
from sqlalchemy.ext.asyncio import async_sessionmaker

from utils.timeutils import utcnow

from .leases import ResponseLock
from .presence import PresenceService
from .rate_limit import RateLimitGate
from .response_generator import ResponseGenerator
from .selection import (
    ActiveSpeakerStrategy,
    DecisionFallbackStrategy,
    DirectMentionStrategy,
    DirectReplyStrategy,
    PresenceRankedStrategy,
    PrioritySummonStrategy,
    SelectionContext,
    SelectionStrategy,
    StickyAffinityStrategy,
    ThreadContinuationStrategy,
    run_cascade,
)
from .speaker_cache import SpeakerCache
from .threads import ConversationThreadService

logger = logging.getLogger("ResponseCoordinator")


class ResponseCoordinator:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        presence: PresenceService,
        response_lock: ResponseLock,
        generator: ResponseGenerator,
        gate: RateLimitGate,
        identity: IdentityStore,
        transport: Transport,
        decision: DecisionPredicate,
        affinity: AffinityStore,
        threads: ConversationThreadService,
        speaker_cache: SpeakerCache,
        max_responses_per_message: int = 1,
        sticky_affinity_exclusive: bool = True,
        sticky_affinity_ttl_ms: int = 600_000,
        turn_based_mode: bool = True,
        ambient_fallback_score: float = 0.5,
        ambient_secondary_fallback_score: float = 0.3,
        conversation_session_ttl_min: int = 30,
        strategies: Optional[List[SelectionStrategy]] = None,
    ):
        self.session_maker = session_maker
        self.presence = presence
        self.response_lock = response_lock
        self.generator = generator
        self.gate = gate
        self.identity = identity
        self.threads = threads
        self.max_responses_per_message = max_responses_per_message
        self.conversation_session_ttl_min = conversation_session_ttl_min
        self.strategies = strategies or [
            DirectReplyStrategy(session_maker, identity, transport),
            ThreadContinuationStrategy(threads),
            PrioritySummonStrategy(presence, identity),
            StickyAffinityStrategy(affinity, decision, sticky_affinity_ttl_ms, enabled=sticky_affinity_exclusive),
            DirectMentionStrategy(affinity, sticky_affinity_ttl_ms),
            ActiveSpeakerStrategy(presence, decision, enabled=turn_based_mode),
            PresenceRankedStrategy(
                presence,
                speaker_cache,
                primary_threshold=ambient_fallback_score,
                secondary_threshold=ambient_secondary_fallback_score,
            ),
            DecisionFallbackStrategy(presence, decision),
        ]

    def classify_trigger(self, message: Optional[IncomingMessage], context: Optional[CoordinationContext] = None) -> Trigger:
        if context is not None and context.trigger_type is not None:
            return Trigger(type=TriggerType(context.trigger_type), source="context")
        if message is None:
            return Trigger(type=TriggerType.AMBIENT, source="scheduler")
        if not message.author_is_bot:
            if message.mentioned_user_ids:
                return Trigger(type=TriggerType.MENTION, source="direct", priority=TriggerPriority.HIGH)
            return Trigger(type=TriggerType.HUMAN_MESSAGE, source="user", priority=TriggerPriority.MEDIUM)
        return Trigger(type=TriggerType.BOT_MESSAGE, source="bot", priority=TriggerPriority.LOW)

    async def select_responders(
        self,
        channel_id: str,
        message: Optional[IncomingMessage],
        avatars: List[Avatar],
        trigger: Trigger,
        context: Optional[CoordinationContext] = None,
    ) -> Selection:
        ctx = SelectionContext(
            channel_id=channel_id,
            message=message,
            trigger=trigger,
            avatars=avatars,
            guild_id=context.guild_id if context else None,
        )
        return await run_cascade(self.strategies, ctx)

    async def coordinate_response(
        self,
        channel_id: str,
        message: Optional[IncomingMessage] = None,
        context: Optional[CoordinationContext] = None,
    ) -> List[GeneratedResponse]:
        """
        Decide who answers the trigger and produce their responses.

        Never raises: coordination errors are logged and yield an empty list.
        """
        context = context or CoordinationContext()
        try:
            return await self._coordinate(channel_id, message, context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"❌ Coordination error in {channel_id}: {e}")
            return []

    async def _coordinate(
        self, channel_id: str, message: Optional[IncomingMessage], context: CoordinationContext
    ) -> List[GeneratedResponse]:
        trigger = self.classify_trigger(message, context)
        logger.debug(f"Trigger: {trigger.type} in {channel_id}")

        if message is not None:
            await self._record_incoming(channel_id, message)

        avatars = context.avatars
        if avatars is None:
            avatars = await self.identity.get_avatars_in_channel(channel_id, context.guild_id)
        if message is not None and message.author_is_bot:
            # An avatar never answers its own message
            avatars = [av for av in avatars if str(av.id) != str(message.author_id)]
        if not avatars:
            logger.debug(f"No avatars in channel {channel_id}")
            return []

        selection = await self.select_responders(channel_id, message, avatars, trigger, context)
        if not selection.avatars:
            logger.debug(f"No avatars selected for {channel_id}")
            return []

        trigger_key = message.id if message is not None else f"ambient:{uuid.uuid4().hex}"
        responses: List[GeneratedResponse] = []
        for avatar in selection.avatars:
            if len(responses) >= self.max_responses_per_message:
                break
            avatar_id = str(avatar.id)
            async with self.response_lock.held(channel_id, avatar_id) as acquired:
                if not acquired:
                    logger.debug(f"Lock not acquired for {avatar.name} in {channel_id}")
                    continue
                try:
                    response = await self.generator.respond(
                        channel_id,
                        avatar,
                        message,
                        ResponseOptions(
                            trigger_key=trigger_key,
                            override_cooldown=context.override_cooldown or selection.override_cooldown,
                            cascade_depth=context.cascade_depth,
                            thread_id=selection.thread_id,
                            tier=selection.tier,
                        ),
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"❌ Response generation failed for {avatar.name}: {e}")
                    continue

            if response is None:
                continue
            responses.append(response)
            await self.presence.record_turn(channel_id, avatar_id)
            if selection.thread_id:
                self.threads.record_turn(channel_id, avatar_id, selection.thread_id)
            if message is not None and not message.author_is_bot:
                await self.update_conversation_session(channel_id, message.author_id, avatar_id)

        return responses

    async def _record_incoming(self, channel_id: str, message: IncomingMessage) -> None:
        async with self.session_maker() as db:
            await crud.record_channel_message(
                db,
                channel_id=channel_id,
                message_id=message.id,
                author_id=message.author_id,
                author_name=message.author_name,
                is_bot=message.author_is_bot,
                reply_to_message_id=message.reply_to_message_id,
            )

    async def update_conversation_session(self, channel_id: str, user_id: str, avatar_id: str) -> None:
        try:
            async with self.session_maker() as db:
                await crud.upsert_conversation_session(db, channel_id, user_id, avatar_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"⚠️ Session update error: {e}")

    async def get_conversation_session(self, channel_id: str, user_id: str) -> Optional[models.ConversationSession]:
        """Active session for the user, or None once it has gone quiet for the session TTL."""
        async with self.session_maker() as db:
            session = await crud.get_conversation_session(db, channel_id, user_id)
            if session is None:
                return None
            if utcnow() - session.last_interaction_at > timedelta(minutes=self.conversation_session_ttl_min):
                await crud.delete_conversation_session(db, channel_id, user_id)
                return None
            return session
