"""Tests for the end-to-end chat turn."""

import json
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from sitebot.chat import ChatService
from sitebot.chat.confidence_gate import SOFT_ANSWER_PREFIX
from sitebot.chat.service import LLM_FAILURE_REPLY
from sitebot.db.stores import ChatSessionStore
from sitebot.llm import LLMConnectionError
from sitebot.retrieval import KnowledgeStoreError


@pytest.fixture
def service(test_db_session, mock_llm):
    return ChatService(test_db_session, mock_llm)


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_confident_answer(self, service, mock_llm, make_connection, add_chunk):
        conn = await make_connection()
        chunk = await add_chunk(conn.connection_id, "Pricing starts at 49 per month", confidence=0.9)

        reply = await service.send_message(conn.connection_id, "s1", "What is your pricing?")

        assert reply.text == "Our plans start at $49 per month."
        assert reply.metadata["gated"] is False
        assert reply.metadata["sources"] == [{"sourceId": chunk.id, "confidenceScore": 0.9}]
        assert reply.metadata["shadowMatches"] == 0

        system_prompt, messages = mock_llm.generate.call_args.args
        assert "### APPROVED KNOWLEDGE" in system_prompt
        assert "Pricing starts at 49 per month" in system_prompt
        assert messages[-1] == {"role": "user", "content": "What is your pricing?"}

    @pytest.mark.asyncio
    async def test_low_confidence_is_softened(self, service, make_connection, add_chunk):
        conn = await make_connection()
        await add_chunk(conn.connection_id, "Pricing maybe 49", confidence=0.3)

        reply = await service.send_message(conn.connection_id, "s1", "pricing?")

        assert reply.text.startswith(SOFT_ANSWER_PREFIX)
        assert reply.metadata["gated"] is True

    @pytest.mark.asyncio
    async def test_shadow_matches_are_not_evidence(self, service, make_connection, add_chunk):
        conn = await make_connection()
        await add_chunk(conn.connection_id, "Pricing rumour", visibility="SHADOW", confidence=0.99)

        reply = await service.send_message(conn.connection_id, "s1", "pricing?")

        assert reply.metadata["sources"] == []
        assert reply.metadata["gated"] is True
        assert reply.metadata["shadowMatches"] == 1

    @pytest.mark.asyncio
    async def test_policy_from_store(self, service, test_db_session, make_connection, add_chunk):
        from sitebot.db.stores import ConfidencePolicyStore

        conn = await make_connection()
        await ConfidencePolicyStore(test_db_session).upsert(
            conn.connection_id, low_confidence_action="ESCALATE"
        )

        reply = await service.send_message(conn.connection_id, "s1", "pricing?")

        assert reply.metadata["lowConfidenceAction"] == "ESCALATE"

    @pytest.mark.asyncio
    async def test_exchange_is_recorded(self, service, test_db_session, make_connection):
        conn = await make_connection()

        await service.send_message(conn.connection_id, "s1", "hello there")

        store = ChatSessionStore(test_db_session)
        history = store.get_history(await store.get_or_create("s1", conn.connection_id))
        assert [m["role"] for m in history] == ["user", "assistant"]
        assert history[0]["text"] == "hello there"
        assert "ai_metadata" in history[1]

    @pytest.mark.asyncio
    async def test_history_is_trimmed(self, service, mock_llm, test_db_session, make_connection):
        conn = await make_connection()
        store = ChatSessionStore(test_db_session)
        chat = await store.get_or_create("s1", conn.connection_id)
        await store.append_messages(
            chat, [{"role": "user", "text": f"message {i}"} for i in range(20)]
        )

        await service.send_message(conn.connection_id, "s1", "latest")

        _, messages = mock_llm.generate.call_args.args
        assert len(messages) == 16
        assert messages[0]["content"] == "message 5"

    @pytest.mark.asyncio
    async def test_llm_failure(self, service, mock_llm, make_connection):
        conn = await make_connection()
        mock_llm.generate = AsyncMock(side_effect=LLMConnectionError("timeout", provider="mock"))

        reply = await service.send_message(conn.connection_id, "s1", "hello there")

        assert reply.text == LLM_FAILURE_REPLY
        assert reply.metadata == {"error": "llm_unavailable"}

    @pytest.mark.asyncio
    async def test_unknown_connection(self, service):
        with pytest.raises(ValueError):
            await service.send_message("missing", "s1", "hello")

    @pytest.mark.asyncio
    async def test_knowledge_store_failure_propagates(self, service, mock_llm, make_connection):
        conn = await make_connection()
        service.retriever.store.find_by_status = AsyncMock(
            side_effect=OperationalError("SELECT", {}, Exception("disk I/O error"))
        )

        with pytest.raises(KnowledgeStoreError):
            await service.send_message(conn.connection_id, "s1", "pricing?")

        mock_llm.generate.assert_not_called()


class TestHistoryStore:
    @pytest.mark.asyncio
    async def test_malformed_history_is_discarded(self, test_db_session, make_connection):
        conn = await make_connection()
        store = ChatSessionStore(test_db_session)
        chat = await store.get_or_create("s1", conn.connection_id)
        chat.messages = "{oops"

        assert store.get_history(chat) == []

        await store.append_messages(chat, [{"role": "user", "text": "hi"}])
        assert json.loads(chat.messages) == [{"role": "user", "text": "hi"}]
