"""Knowledge ingestion and feedback endpoints."""

import hashlib
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from sitebot.api.deps import job_lock, require_admin
from sitebot.api.schemas import (
    FeedbackRequest,
    FeedbackResponse,
    KnowledgeIngestRequest,
    KnowledgeResponse,
)
from sitebot.db.database import get_session
from sitebot.db.models import ConnectionKnowledge
from sitebot.db.stores import KnowledgeStore
from sitebot.retrieval.exceptions import ChunkNotFoundError
from sitebot.retrieval.feedback import apply_feedback
from sitebot.retrieval.models import KnowledgeStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["knowledge"])


def _knowledge_response(chunk: ConnectionKnowledge, duplicate: bool = False) -> KnowledgeResponse:
    return KnowledgeResponse(
        id=chunk.id,
        connection_id=chunk.connection_id,
        status=chunk.status,
        visibility=chunk.visibility,
        confidence_score=chunk.confidence_score,
        duplicate=duplicate,
    )


@router.post(
    "/connections/{connection_id}/knowledge",
    response_model=KnowledgeResponse,
    dependencies=[Depends(require_admin)],
)
async def ingest_knowledge(
    connection_id: str,
    request: KnowledgeIngestRequest,
    job_name: str = Depends(job_lock("ingest")),
    session: AsyncSession = Depends(get_session),
) -> KnowledgeResponse:
    """
    Store a text snippet as a READY knowledge chunk.

    Runs under the connection's job lease. Identical text for the same
    connection is not stored twice.
    """
    cleaned = " ".join(request.text.split())
    content_hash = hashlib.sha256(cleaned.encode("utf-8")).hexdigest()
    store = KnowledgeStore(session)

    existing = await store.find_by_hash(connection_id, content_hash)
    if existing is not None:
        logger.info(f"Duplicate knowledge for {connection_id} ({job_name}): {existing.id}")
        return _knowledge_response(existing, duplicate=True)

    chunk = await store.add(
        ConnectionKnowledge(
            connection_id=connection_id,
            source_type="TEXT",
            source_value=request.source_value,
            raw_text=request.text,
            cleaned_text=cleaned,
            status=KnowledgeStatus.READY.value,
            visibility=request.visibility,
            content_hash=content_hash,
        )
    )
    logger.info(f"Ingested knowledge {chunk.id} for {connection_id} ({job_name})")
    return _knowledge_response(chunk)


@router.post("/knowledge/{chunk_id}/feedback", response_model=FeedbackResponse)
async def knowledge_feedback(
    chunk_id: str,
    request: FeedbackRequest,
    session: AsyncSession = Depends(get_session),
) -> FeedbackResponse:
    """Record a thumbs up or down against a knowledge chunk."""
    try:
        score = await apply_feedback(KnowledgeStore(session), chunk_id, request.vote)
    except ChunkNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return FeedbackResponse(chunk_id=chunk_id, confidence_score=score)
