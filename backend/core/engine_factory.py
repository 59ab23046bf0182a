"""
Engine factory for wiring the turn engine from its collaborators.

This module builds every scheduling and coordination component from the
settings and hands back a ``TurnEngine`` with start/shutdown hooks.
"""

from dataclasses import dataclass
from typing import Optional

from background_scheduler import BackgroundScheduler
from database import get_engine, get_session_maker, init_db
from domain.collaborators import AffinityStore, DecisionPredicate, GenerationService, IdentityStore, Transport
from domain.contexts import CoordinationContext, GeneratedResponse, IncomingMessage
from orchestration import (
    ConversationThreadService,
    InitiativeScorer,
    MentionCascade,
    PresenceService,
    RateLimitGate,
    ResponseCoordinator,
    ResponseGenerator,
    ResponseLock,
    SpeakerCache,
    SqlAffinityStore,
    TickCounter,
    TurnLeaseRegistry,
    TurnScheduler,
)
from sqlalchemy.ext.asyncio import async_sessionmaker

from utils.cache import get_cache

from .logging import get_logger, setup_logging
from .settings import Settings, get_settings

logger = get_logger("EngineFactory")


@dataclass
class Collaborators:
    """External services the engine is handed. ``affinity`` defaults to the store-backed one."""

    generation: GenerationService
    transport: Transport
    identity: IdentityStore
    decision: DecisionPredicate
    affinity: Optional[AffinityStore] = None


@dataclass
class TurnEngine:
    settings: Settings
    session_maker: async_sessionmaker
    presence: PresenceService
    ticks: TickCounter
    leases: TurnLeaseRegistry
    response_lock: ResponseLock
    gate: RateLimitGate
    threads: ConversationThreadService
    speaker_cache: SpeakerCache
    generator: ResponseGenerator
    coordinator: ResponseCoordinator
    scheduler: TurnScheduler
    background: BackgroundScheduler

    async def start(self, create_schema: bool = True) -> None:
        """Create the schema (unless told not to) and start the periodic jobs."""
        logger.info("🚀 Turn engine startup...")
        if create_schema:
            bind = getattr(self.session_maker, "kw", {}).get("bind")
            await init_db(bind or get_engine())
        self.background.start()
        logger.info("✅ Turn engine startup complete")

    async def shutdown(self) -> None:
        logger.info("🛑 Turn engine shutdown...")
        self.background.stop()
        logger.info("✅ Turn engine shutdown complete")

    async def on_human_message(self, channel_id: str, message: IncomingMessage) -> bool:
        return await self.scheduler.on_human_message(channel_id, message)

    async def tick_all(self) -> int:
        return await self.scheduler.tick_all()

    async def on_channel_tick(self, channel_id: str, budget: Optional[int] = None) -> int:
        return await self.scheduler.on_channel_tick(channel_id, budget)

    async def coordinate_response(
        self, channel_id: str, message: Optional[IncomingMessage] = None, context: Optional[CoordinationContext] = None
    ) -> list[GeneratedResponse]:
        return await self.coordinator.coordinate_response(channel_id, message, context)


def build_turn_engine(
    collaborators: Collaborators,
    session_maker: Optional[async_sessionmaker] = None,
    settings: Optional[Settings] = None,
) -> TurnEngine:
    """
    Wire every component of the turn engine.

    Args:
        collaborators: Generation, transport, identity, decision and affinity services
        session_maker: Session factory for the backing store (defaults to DATABASE_URL)
        settings: Engine settings (defaults to the environment)

    Returns:
        A TurnEngine; call ``start()`` to begin ambient sweeps
    """
    settings = settings or get_settings()
    setup_logging(settings.log_level)
    session_maker = session_maker or get_session_maker()

    presence = PresenceService(
        session_maker,
        InitiativeScorer(
            turn_min_interval_sec=settings.turn_min_interval_sec,
            target_cadence_min=settings.target_cadence_min,
        ),
    )
    ticks = TickCounter(session_maker)
    leases = TurnLeaseRegistry(session_maker, ttl_ms=settings.turn_lease_ttl_ms)
    response_lock = ResponseLock(session_maker, ttl_ms=settings.response_lock_ttl_ms)
    gate = RateLimitGate(
        channel_cooldown_ms=settings.channel_cooldown_ms,
        bot_reply_cooldown_ms=settings.bot_reply_cooldown_ms,
        max_responders_per_trigger=settings.max_responders_per_trigger,
    )
    threads = ConversationThreadService(
        ttl_ms=settings.conversation_thread_ttl_ms,
        max_turns=settings.conversation_thread_max_turns,
        extend_on_activity=settings.conversation_thread_extend_on_activity,
    )
    cache = get_cache()
    speaker_cache = SpeakerCache(collaborators.transport, ttl_ms=settings.speaker_cache_ttl_ms, cache=cache)
    affinity = collaborators.affinity or SqlAffinityStore(session_maker, settings.sticky_affinity_ttl_ms)

    cascade = MentionCascade(
        identity=collaborators.identity,
        presence=presence,
        threads=threads,
        response_lock=response_lock,
        limit=settings.bot_mention_cascade_limit,
    )
    generator = ResponseGenerator(
        session_maker,
        generation=collaborators.generation,
        transport=collaborators.transport,
        identity=collaborators.identity,
        gate=gate,
        speaker_cache=speaker_cache,
        cascade=cascade,
    )

    coordinator = ResponseCoordinator(
        session_maker,
        presence=presence,
        response_lock=response_lock,
        generator=generator,
        gate=gate,
        identity=collaborators.identity,
        transport=collaborators.transport,
        decision=collaborators.decision,
        affinity=affinity,
        threads=threads,
        speaker_cache=speaker_cache,
        max_responses_per_message=settings.max_responses_per_message,
        sticky_affinity_exclusive=settings.sticky_affinity_exclusive,
        sticky_affinity_ttl_ms=settings.sticky_affinity_ttl_ms,
        turn_based_mode=settings.turn_based_mode,
        ambient_fallback_score=settings.ambient_fallback_score,
        ambient_secondary_fallback_score=settings.ambient_secondary_fallback_score,
        conversation_session_ttl_min=settings.conversation_session_ttl_min,
    )
    scheduler = TurnScheduler(
        session_maker,
        presence=presence,
        ticks=ticks,
        leases=leases,
        response_lock=response_lock,
        generator=generator,
        identity=collaborators.identity,
        global_budget=settings.channel_tick_global_budget,
        max_k=settings.channel_tick_max_k,
        channel_limit=settings.channel_tick_channel_limit,
        active_humans_window_min=settings.active_humans_window_min,
        human_suppression_ms=settings.human_suppression_ms,
    )
    background = BackgroundScheduler(
        scheduler,
        session_maker,
        tick_interval_seconds=settings.tick_interval_seconds,
        tick_jitter_seconds=settings.tick_jitter_seconds,
        janitor_interval_seconds=settings.janitor_interval_sec,
        lease_retention_hours=settings.turn_lease_retention_hours,
        session_ttl_minutes=settings.conversation_session_ttl_min,
        threads=threads,
        gate=gate,
        cache=cache,
    )

    return TurnEngine(
        settings=settings,
        session_maker=session_maker,
        presence=presence,
        ticks=ticks,
        leases=leases,
        response_lock=response_lock,
        gate=gate,
        threads=threads,
        speaker_cache=speaker_cache,
        generator=generator,
        coordinator=coordinator,
        scheduler=scheduler,
        background=background,
    )
