"""Chat and confidence policy endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from sitebot.api.deps import get_chat_llm, get_connection, require_admin
from sitebot.api.schemas import (
    ChatRequest,
    ChatResponse,
    ConfidencePolicyResponse,
    ConfidencePolicyUpdate,
)
from sitebot.chat.service import ChatService
from sitebot.db.database import get_session
from sitebot.db.models import ConfidencePolicy, Connection
from sitebot.db.stores import ConfidencePolicyStore
from sitebot.llm.base import BaseLLM
from sitebot.retrieval.exceptions import KnowledgeStoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["chat"])


def _policy_response(policy: ConfidencePolicy) -> ConfidencePolicyResponse:
    return ConfidencePolicyResponse(
        connection_id=policy.connection_id,
        min_answer_confidence=policy.min_answer_confidence,
        min_source_count=policy.min_source_count,
        low_confidence_action=policy.low_confidence_action,
    )


@router.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    session: AsyncSession = Depends(get_session),
    llm: BaseLLM = Depends(get_chat_llm),
) -> ChatResponse:
    """
    Answer a widget message.

    Retrieves tenant knowledge, assembles the system prompt, generates a
    reply and applies the tenant's confidence policy.
    """
    service = ChatService(session, llm)
    try:
        reply = await service.send_message(
            request.connection_id, request.session_id, request.message, page_url=request.url
        )
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except KnowledgeStoreError as e:
        logger.error(f"Knowledge unavailable for {request.connection_id}: {e}")
        raise HTTPException(status_code=503, detail="Knowledge base unavailable") from e

    return ChatResponse(
        messages=[{"role": "assistant", "content": reply.text}],
        ai_metadata=reply.metadata,
    )



@router.get(
    "/connections/{connection_id}/confidence-policy",
    response_model=ConfidencePolicyResponse,
)
async def get_confidence_policy(
    connection: Connection = Depends(get_connection),
    session: AsyncSession = Depends(get_session),
) -> ConfidencePolicyResponse:
    policy = await ConfidencePolicyStore(session).find_or_default(connection.connection_id)
    return _policy_response(policy)


@router.put(
    "/connections/{connection_id}/confidence-policy",
    response_model=ConfidencePolicyResponse,
    dependencies=[Depends(require_admin)],
)
async def update_confidence_policy(
    request: ConfidencePolicyUpdate,
    connection: Connection = Depends(get_connection),
    session: AsyncSession = Depends(get_session),
) -> ConfidencePolicyResponse:
    """Change the tenant's low-confidence thresholds or action."""
    policy = await ConfidencePolicyStore(session).upsert(
        connection.connection_id, **request.model_dump()
    )
    return _policy_response(policy)
