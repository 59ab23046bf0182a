"""
The "generate and send" step shared by the ambient scheduler, the fast lane,
the coordinator and the mention cascade.

This module handles admission through the rate-limit gate, the call to the
generation service, the send through the transport and the bookkeeping that
follows a successful send.
"""

import asyncio
import logging
from typing import Optional

import crud
from domain.collaborators import GenerationService, IdentityStore, Transport
from domain.contexts import Avatar, GeneratedResponse, IncomingMessage, ResponseOptions
from sqlalchemy.ext.asyncio import async_sessionmaker

from utils.timeutils import utcnow

from .mentions import MentionCascade
from .rate_limit import RateLimitGate
from .speaker_cache import SpeakerCache

logger = logging.getLogger("ResponseGenerator")


class ResponseGenerator:
    """
    Produces and sends one avatar's response.

    This class is responsible for:
    - Asking the rate-limit gate for admission
    - Generating the text via the generation service
    - Sending it through the transport and logging the sent message
    - Invalidating the speaker cache and bumping the avatar's activity
    - Starting the mention cascade for original (depth 0) sends

    Callers own the turn lease and the response lock around this call.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        generation: GenerationService,
        transport: Transport,
        identity: IdentityStore,
        gate: RateLimitGate,
        speaker_cache: SpeakerCache,
        cascade: Optional[MentionCascade] = None,
    ):
        self.session_maker = session_maker
        self.generation = generation
        self.transport = transport
        self.identity = identity
        self.gate = gate
        self.speaker_cache = speaker_cache
        self.cascade = cascade
        if cascade is not None:
            cascade.bind(self)

    async def respond(
        self,
        channel_id: str,
        avatar: Avatar,
        message: Optional[IncomingMessage],
        options: ResponseOptions,
    ) -> Optional[GeneratedResponse]:
        """
        Generate and send a response as avatar.

        Args:
            channel_id: Channel to respond in
            avatar: Responding avatar
            message: Triggering message, or None for ambient/cascade turns
            options: Trigger key, cooldown override, cascade depth, thread token

        Returns:
            The sent response, or None when the gate refused, the generator
            produced nothing, or the transport did not deliver

        Raises:
            Exception: Whatever the generation service or transport raised
        """
        avatar_id = str(avatar.id)
        if not self.gate.admit(channel_id, avatar_id, options.trigger_key, options.override_cooldown):
            return None

        text = await self.generation.generate(avatar, channel_id, message, options)
        if not text or not text.strip():
            logger.info(f"🤐 {avatar.name} chose not to respond in {channel_id}")
            return None

        sent = await self.transport.send_message(channel_id, avatar, text)
        if sent is None:
            logger.warning(f"⚠️ Transport did not deliver {avatar.name}'s message in {channel_id}")
            return None

        async with self.session_maker() as db:
            await crud.record_channel_message(
                db,
                channel_id=channel_id,
                message_id=str(sent.id),
                author_id=avatar_id,
                author_name=avatar.name,
                is_bot=True,
                avatar_id=avatar_id,
                reply_to_message_id=message.id if message else None,
            )
        self.gate.record_response(channel_id, avatar_id, options.trigger_key)
        self.speaker_cache.invalidate(channel_id)

        try:
            await self.identity.update_activity(avatar_id, utcnow())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"⚠️ Failed to update activity for {avatar.name}: {e}")

        logger.info(f"💬 {avatar.name} responded in {channel_id} (trigger={options.trigger_key})")

        if self.cascade is not None and options.cascade_depth == 0:
            try:
                await self.cascade.run(channel_id, avatar, sent.content or text, options.trigger_key, options.cascade_depth)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"⚠️ Mention cascade failed after {avatar.name}'s message: {e}")

        return GeneratedResponse(
            avatar_id=avatar_id,
            channel_id=channel_id,
            message_id=str(sent.id),
            content=sent.content or text,
            tier=options.tier,
        )
