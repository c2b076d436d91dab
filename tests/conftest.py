"""Shared fixtures: in-memory database, tenant factories and a mock LLM."""

import hashlib
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from sitebot.db.models import Base, ChatSession, Connection, ConnectionKnowledge


@pytest.fixture(scope="function")
def test_db_engine():
    """Create an in-memory SQLite engine for testing.

    Each test gets a fresh database for complete isolation.
    """
    return create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)


@pytest_asyncio.fixture(scope="function")
async def test_db_session(test_db_engine):
    """Create tables and provide a test session."""
    async with test_db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_factory = async_sessionmaker(
        test_db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session_factory() as session:
        yield session

    async with test_db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await test_db_engine.dispose()


@pytest.fixture
def make_connection(test_db_session):
    """Factory persisting a Connection with sensible defaults."""
    counter = {"n": 0}

    async def _make(**fields) -> Connection:
        counter["n"] += 1
        for key in ("behavior_profile", "behavior_overrides", "widget_config", "policies", "onboarding_meta"):
            if key in fields and not isinstance(fields[key], str):
                fields[key] = json.dumps(fields[key])
        fields.setdefault("connection_id", f"conn-{counter['n']}")
        connection = Connection(**fields)
        test_db_session.add(connection)
        await test_db_session.commit()
        await test_db_session.refresh(connection)
        return connection

    return _make


@pytest.fixture
def add_chunk(test_db_session):
    """Factory persisting a knowledge chunk for a connection."""

    async def _add(
        connection_id: str,
        text: str,
        source: str = "https://example.com/page",
        status: str = "READY",
        visibility: str = "ACTIVE",
        confidence: float = 0.9,
    ) -> ConnectionKnowledge:
        chunk = ConnectionKnowledge(
            connection_id=connection_id,
            source_type="URL",
            source_value=source,
            raw_text=text,
            status=status,
            visibility=visibility,
            confidence_score=confidence,
            content_hash=hashlib.sha256(f"{source}|{text}".encode()).hexdigest(),
        )
        test_db_session.add(chunk)
        await test_db_session.commit()
        await test_db_session.refresh(chunk)
        return chunk

    return _add


@pytest.fixture
def add_chat_session(test_db_session):
    async def _add(connection_id: str, session_id: str = "sandbox-1") -> ChatSession:
        chat = ChatSession(session_id=session_id, connection_id=connection_id)
        test_db_session.add(chat)
        await test_db_session.commit()
        return chat

    return _add


@pytest.fixture
def mock_llm():
    """Mock LLM returning a fixed answer.

    The LLM interface requires an async ``generate(system_prompt, messages)``.
    """
    llm = MagicMock()
    llm.provider_name = "mock"
    llm.generate = AsyncMock(return_value="Our plans start at $49 per month.")
    llm.check_health = AsyncMock(return_value=True)
    llm.is_available = AsyncMock(return_value=True)
    return llm
