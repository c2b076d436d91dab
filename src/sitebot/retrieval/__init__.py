"""Knowledge retrieval: scoring, trust-tier partitioning and feedback."""

from sitebot.retrieval.exceptions import ChunkNotFoundError, KnowledgeStoreError, RetrievalError
from sitebot.retrieval.feedback import adjust_confidence, apply_feedback
from sitebot.retrieval.models import KnowledgeStatus, RetrievalResult, ScoredChunk, Visibility
from sitebot.retrieval.retriever import (
    BaseScorer,
    KnowledgeRetriever,
    TokenOverlapScorer,
    format_context,
    tokenize,
)

__all__ = [
    "BaseScorer",
    "KnowledgeRetriever",
    "TokenOverlapScorer",
    "format_context",
    "tokenize",
    "adjust_confidence",
    "apply_feedback",
    "KnowledgeStatus",
    "RetrievalResult",
    "ScoredChunk",
    "Visibility",
    "ChunkNotFoundError",
    "KnowledgeStoreError",
    "RetrievalError",
]
