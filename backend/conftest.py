"""
Pytest configuration and shared fixtures for backend tests.

This module provides fixtures for a throwaway SQLite store, mocked
collaborators, engine settings and a fully wired turn engine.
"""

import itertools
import sys
from pathlib import Path
from typing import AsyncGenerator
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

# Add backend directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from core.settings import Settings, reset_settings
from database import create_engine_for_url, create_session_maker, init_db
from domain.contexts import Avatar, SentMessage

from utils.cache import reset_cache


@pytest.fixture(autouse=True)
def reset_singletons():
    """Keep settings and the shared cache from leaking between tests."""
    reset_settings()
    reset_cache()
    yield
    reset_settings()
    reset_cache()


@pytest.fixture(scope="function")
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Create a fresh SQLite database file for each test function.

    A file (not :memory:) so concurrent sessions see the same data and
    contend on the same unique constraints.
    """
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(db_engine) -> async_sessionmaker:
    return create_session_maker(db_engine)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def engine_settings() -> Settings:
    """Settings with cooldowns off so tests control timing explicitly."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        channel_cooldown_ms=0,
        bot_reply_cooldown_ms=0,
        human_suppression_ms=60_000,
        janitor_interval_sec=60,
    )


@pytest.fixture
def alpha() -> Avatar:
    return Avatar(id="a", name="Alpha", emoji="🦊")


@pytest.fixture
def bravo() -> Avatar:
    return Avatar(id="b", name="Bravo", emoji="🐻")


@pytest.fixture
def charlie() -> Avatar:
    return Avatar(id="c", name="Charlie", aliases=["Chuck"])


@pytest.fixture
def collaborators(alpha, bravo, charlie):
    """
    Mocked external collaborators.

    The generator answers "hello there", the transport delivers everything
    with sequential message ids, and the identity store knows the three
    standard avatars in every channel.
    """
    from core.engine_factory import Collaborators

    avatars = [alpha, bravo, charlie]
    counter = itertools.count(1)

    generation = Mock()
    generation.generate = AsyncMock(return_value="hello there")

    async def send_message(channel_id, avatar, content):
        return SentMessage(id=f"sent-{next(counter)}", channel_id=channel_id, content=content)

    transport = Mock()
    transport.send_message = AsyncMock(side_effect=send_message)
    transport.fetch_recent_messages = AsyncMock(return_value=[])
    transport.relocate_avatar = AsyncMock()

    identity = Mock()
    identity.get_avatars_in_channel = AsyncMock(return_value=avatars)
    identity.get_avatar_by_id = AsyncMock(side_effect=lambda avatar_id: next((a for a in avatars if a.id == avatar_id), None))
    identity.update_activity = AsyncMock()

    decision = Mock()
    decision.should_respond = AsyncMock(return_value=False)

    return Collaborators(generation=generation, transport=transport, identity=identity, decision=decision)


@pytest.fixture
def turn_engine(collaborators, session_maker, engine_settings):
    from core.engine_factory import build_turn_engine

    return build_turn_engine(collaborators, session_maker=session_maker, settings=engine_settings)
