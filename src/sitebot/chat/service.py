"""One chat turn: retrieve, assemble, generate, gate."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from sitebot.chat.confidence_gate import apply_gate
from sitebot.chat.models import AnswerSource, ChatReply
from sitebot.config import settings
from sitebot.db.stores import (
    ChatSessionStore,
    ConfidencePolicyStore,
    ConnectionStore,
    KnowledgeStore,
)
from sitebot.llm.base import BaseLLM
from sitebot.llm.exceptions import LLMError
from sitebot.prompts.assembler import PromptAssembler
from sitebot.retrieval.retriever import KnowledgeRetriever, format_context

logger = logging.getLogger(__name__)

LLM_FAILURE_REPLY = "I'm having trouble thinking clearly. One moment."


class ChatService:
    """Runs a widget or sandbox chat turn for a connection."""

    def __init__(self, session: AsyncSession, llm: BaseLLM):
        self.llm = llm
        self.connections = ConnectionStore(session)
        self.chat_sessions = ChatSessionStore(session)
        self.policies = ConfidencePolicyStore(session)
        self.retriever = KnowledgeRetriever(KnowledgeStore(session))
        self.assembler = PromptAssembler(session)

    async def send_message(
        self,
        connection_id: str,
        session_id: str,
        message: str,
        page_url: str | None = None,
    ) -> ChatReply:
        """Answer ``message`` and record the exchange.

        Raises:
            ValueError: If the connection does not exist
            KnowledgeStoreError: If knowledge cannot be read
        """
        connection = await self.connections.get(connection_id)
        if connection is None:
            raise ValueError(f"Connection {connection_id} not found")

        chat_session = await self.chat_sessions.get_or_create(session_id, connection_id)
        history = self.chat_sessions.get_history(chat_session)

        # Fails closed: a store error propagates to the caller
        retrieved = await self.retriever.retrieve(connection_id, message)
        context = "" if retrieved.is_empty else format_context(retrieved)
        system_prompt = await self.assembler.assemble(connection_id, page_url, context)

        recent = history[-settings.CHAT_MAX_HISTORY_MESSAGES:]
        messages = [
            {"role": m.get("role", "user"), "content": m.get("text") or m.get("content") or ""}
            for m in recent
        ]
        messages.append({"role": "user", "content": message})

        try:
            answer = await self.llm.generate(system_prompt, messages)
        except LLMError as e:
            logger.error(f"AI chat error for {connection_id}: {e}")
            reply = ChatReply(text=LLM_FAILURE_REPLY, metadata={"error": "llm_unavailable"})
        else:
            # Only approved knowledge counts as evidence
            sources = [AnswerSource(c.chunk_id, c.confidence_score) for c in retrieved.active]
            policy = await self.policies.find_or_default(connection_id)
            reply = apply_gate(answer, sources, policy)
            reply.metadata["shadowMatches"] = len(retrieved.shadow)

        await self.chat_sessions.append_messages(
            chat_session,
            [
                {"role": "user", "text": message},
                {"role": "assistant", "text": reply.text, "ai_metadata": reply.metadata},
            ],
        )
        return reply
