"""Narrow data-access stores used by the onboarding and chat core.

Each store wraps an ``AsyncSession`` and exposes only the queries the core
needs: versioned reads and compare-and-set writes for connections, counts
and tenant-scoped lookups for knowledge and chat sessions, and
find-or-default for confidence policies.
"""

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sitebot.config import settings
from sitebot.db.models import (
    ChatSession,
    ConfidencePolicy,
    Connection,
    ConnectionKnowledge,
    utcnow,
)

logger = logging.getLogger(__name__)


class ConnectionStore:
    """Versioned access to tenant records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, connection_id: str) -> Connection | None:
        result = await self.session.execute(
            select(Connection).where(Connection.connection_id == connection_id)
        )
        return result.scalars().first()

    async def list_all(self) -> list[Connection]:
        result = await self.session.execute(select(Connection))
        return list(result.scalars().all())

    async def find_inactive(self, cutoff: datetime, exclude_statuses: list[str]) -> list[Connection]:
        """Connections whose last activity is older than ``cutoff``."""
        result = await self.session.execute(
            select(Connection)
            .where(
                Connection.status.not_in(exclude_statuses),
                Connection.last_activity_at.is_not(None),
                Connection.last_activity_at < cutoff,
            )
            .order_by(Connection.last_activity_at.asc())
        )
        return list(result.scalars().all())

    async def add(self, connection: Connection) -> Connection:
        self.session.add(connection)
        await self.session.commit()
        await self.session.refresh(connection)
        return connection

    async def compare_and_set(
        self,
        connection: Connection,
        expected_version: int,
        values: dict[str, Any],
    ) -> bool:
        """Write ``values`` only if the stored version still equals ``expected_version``.

        The version column is always bumped by one as part of the same
        statement. Returns False when another writer got there first.
        """
        stmt = (
            update(Connection)
            .where(
                Connection.connection_id == connection.connection_id,
                Connection.version == expected_version,
            )
            .values(version=expected_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        await self.session.refresh(connection)
        return result.rowcount == 1

    async def read_meta(self, connection: Connection) -> str | None:
        """Current stored ``onboarding_meta``, bypassing the session's cached copy."""
        result = await self.session.execute(
            select(Connection.onboarding_meta).where(
                Connection.connection_id == connection.connection_id
            )
        )
        return result.scalar_one_or_none()

    async def replace_meta(
        self,
        connection: Connection,
        expected_raw: str | None,
        new_raw: str,
    ) -> bool:
        """Write the event log only if nobody changed it since ``expected_raw`` was read.

        Unversioned: the event log sits outside the state contract, so this
        never bumps ``version``.
        """
        current = (
            Connection.onboarding_meta.is_(None)
            if expected_raw is None
            else Connection.onboarding_meta == expected_raw
        )
        stmt = (
            update(Connection)
            .where(Connection.connection_id == connection.connection_id, current)
            .values(onboarding_meta=new_raw)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        await self.session.refresh(connection)
        return result.rowcount == 1

    async def try_lease(
        self,
        connection: Connection,
        job_name: str,
        now: datetime,
        stale_before: datetime,
    ) -> bool:
        """Take the job lease if it is free or stale. Atomic per row."""
        stmt = (
            update(Connection)
            .where(
                Connection.connection_id == connection.connection_id,
                or_(
                    Connection.state_locked_by.is_(None),
                    Connection.state_locked_at.is_(None),
                    Connection.state_locked_at <= stale_before,
                ),
            )
            .values(state_locked_by=job_name, state_locked_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        await self.session.refresh(connection)
        return result.rowcount == 1

    async def release_lease(self, connection: Connection, job_name: str) -> bool:
        """Clear the lease if ``job_name`` still holds it."""
        stmt = (
            update(Connection)
            .where(
                Connection.connection_id == connection.connection_id,
                Connection.state_locked_by == job_name,
            )
            .values(state_locked_by=None, state_locked_at=None)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        await self.session.refresh(connection)
        return result.rowcount == 1

    async def renew_lease(self, connection: Connection, job_name: str, now: datetime) -> bool:
        stmt = (
            update(Connection)
            .where(
                Connection.connection_id == connection.connection_id,
                Connection.state_locked_by == job_name,
            )
            .values(state_locked_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        await self.session.refresh(connection)
        return result.rowcount == 1


class KnowledgeStore:
    """Tenant-scoped knowledge chunk queries."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def count_by_status(self, connection_id: str, status: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(ConnectionKnowledge)
            .where(
                ConnectionKnowledge.connection_id == connection_id,
                ConnectionKnowledge.status == status,
            )
        )
        return int(result.scalar_one())

    async def find_by_status(self, connection_id: str, status: str) -> list[ConnectionKnowledge]:
        result = await self.session.execute(
            select(ConnectionKnowledge)
            .where(
                ConnectionKnowledge.connection_id == connection_id,
                ConnectionKnowledge.status == status,
            )
            .order_by(ConnectionKnowledge.created_at.asc())
        )
        return list(result.scalars().all())

    async def find_by_hash(self, connection_id: str, content_hash: str) -> ConnectionKnowledge | None:
        result = await self.session.execute(
            select(ConnectionKnowledge).where(
                ConnectionKnowledge.connection_id == connection_id,
                ConnectionKnowledge.content_hash == content_hash,
            )
        )
        return result.scalars().first()

    async def get(self, chunk_id: str) -> ConnectionKnowledge | None:
        result = await self.session.execute(
            select(ConnectionKnowledge).where(ConnectionKnowledge.id == chunk_id)
        )
        return result.scalars().first()

    async def add(self, chunk: ConnectionKnowledge) -> ConnectionKnowledge:
        self.session.add(chunk)
        await self.session.commit()
        await self.session.refresh(chunk)
        return chunk

    async def set_confidence(self, chunk: ConnectionKnowledge, score: float) -> None:
        chunk.confidence_score = score
        await self.session.commit()


class ChatSessionStore:
    """Chat session lookups."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def count_for_connection(self, connection_id: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(ChatSession)
            .where(ChatSession.connection_id == connection_id)
        )
        return int(result.scalar_one())

    async def get_or_create(self, session_id: str, connection_id: str) -> ChatSession:
        result = await self.session.execute(
            select(ChatSession).where(
                ChatSession.session_id == session_id,
                ChatSession.connection_id == connection_id,
            )
        )
        chat_session = result.scalars().first()
        if chat_session is None:
            chat_session = ChatSession(session_id=session_id, connection_id=connection_id)
            self.session.add(chat_session)
            await self.session.commit()
            await self.session.refresh(chat_session)
            logger.info(f"Created chat session {session_id} for {connection_id}")
        return chat_session

    def get_history(self, chat_session: ChatSession) -> list[dict[str, Any]]:
        try:
            history = json.loads(chat_session.messages or "[]")
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Discarding malformed history for session {chat_session.session_id}")
            return []
        return history if isinstance(history, list) else []

    async def append_messages(
        self, chat_session: ChatSession, messages: list[dict[str, Any]]
    ) -> None:
        history = self.get_history(chat_session)
        history.extend(messages)
        chat_session.messages = json.dumps(history, default=str)
        chat_session.last_message_at = utcnow()
        await self.session.commit()


class ConfidencePolicyStore:
    """Per-tenant confidence policy, defaulted when absent."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def default_policy(connection_id: str) -> ConfidencePolicy:
        return ConfidencePolicy(
            connection_id=connection_id,
            min_answer_confidence=settings.DEFAULT_MIN_ANSWER_CONFIDENCE,
            min_source_count=settings.DEFAULT_MIN_SOURCE_COUNT,
            low_confidence_action=settings.DEFAULT_LOW_CONFIDENCE_ACTION,
        )

    async def find(self, connection_id: str) -> ConfidencePolicy | None:
        result = await self.session.execute(
            select(ConfidencePolicy).where(ConfidencePolicy.connection_id == connection_id)
        )
        return result.scalars().first()

    async def find_or_default(self, connection_id: str) -> ConfidencePolicy:
        """Return the stored policy, or an unsaved default one."""
        policy = await self.find(connection_id)
        return policy if policy is not None else self.default_policy(connection_id)

    async def upsert(self, connection_id: str, **fields: Any) -> ConfidencePolicy:
        policy = await self.find(connection_id)
        if policy is None:
            policy = self.default_policy(connection_id)
            self.session.add(policy)
        for key, value in fields.items():
            if value is not None:
                setattr(policy, key, value)
        await self.session.commit()
        await self.session.refresh(policy)
        logger.info(f"Updated confidence policy for {connection_id}: {fields}")
        return policy
