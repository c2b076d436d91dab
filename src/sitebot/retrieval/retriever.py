"""Token-overlap knowledge retrieval with trust-tier partitioning."""

import logging
import re
from abc import ABC, abstractmethod

from sqlalchemy.exc import SQLAlchemyError

from sitebot.config import settings
from sitebot.db.models import ConnectionKnowledge
from sitebot.db.stores import KnowledgeStore
from sitebot.retrieval.exceptions import KnowledgeStoreError
from sitebot.retrieval.models import KnowledgeStatus, RetrievalResult, ScoredChunk, Visibility

logger = logging.getLogger(__name__)

_PUNCTUATION = re.compile(r"[^\w\s]")


def tokenize(text: str, min_length: int | None = None) -> list[str]:
    """Lowercase, strip punctuation, split on whitespace, drop short tokens.

    Tokens of ``min_length`` characters or fewer carry no discriminative
    signal and are dropped. Repeats are collapsed so a word typed twice
    does not count twice.
    """
    if min_length is None:
        min_length = settings.RETRIEVAL_MIN_TOKEN_LENGTH
    cleaned = _PUNCTUATION.sub("", (text or "").lower())
    tokens = []
    for token in cleaned.split():
        if len(token) > min_length and token not in tokens:
            tokens.append(token)
    return tokens


class BaseScorer(ABC):
    """Scores a knowledge chunk against a tokenized query."""

    @abstractmethod
    def score(self, tokens: list[str], chunk: ConnectionKnowledge) -> int:
        """Return a relevance score; zero means no match."""
        pass


class TokenOverlapScorer(BaseScorer):
    """Counts query tokens that occur as substrings of the chunk text."""

    def score(self, tokens: list[str], chunk: ConnectionKnowledge) -> int:
        haystack = f"{chunk.source_value or ''} {chunk.raw_text or ''}".lower()
        return sum(1 for token in tokens if token in haystack)


class KnowledgeRetriever:
    """Ranks a tenant's READY chunks for a query and splits them by visibility."""

    def __init__(
        self,
        store: KnowledgeStore,
        scorer: BaseScorer | None = None,
        top_k: int | None = None,
    ):
        self.store = store
        self.scorer = scorer or TokenOverlapScorer()
        self.top_k = top_k or settings.RETRIEVAL_TOP_K

    async def retrieve(self, connection_id: str, query: str) -> RetrievalResult:
        """Return the top matches, partitioned into ACTIVE and SHADOW.

        Raises:
            KnowledgeStoreError: If the store cannot be read
        """
        tokens = tokenize(query)
        if not tokens:
            return RetrievalResult()

        try:
            chunks = await self.store.find_by_status(connection_id, KnowledgeStatus.READY.value)
        except SQLAlchemyError as e:
            logger.error(f"Knowledge store unavailable for {connection_id}: {e}")
            raise KnowledgeStoreError(
                f"Knowledge store unavailable: {e}", connection_id=connection_id
            ) from e

        if not chunks:
            return RetrievalResult()

        scored = [(self.scorer.score(tokens, chunk), chunk) for chunk in chunks]
        # sorted() is stable, so equal scores keep store order
        ranked = sorted(
            ((s, c) for s, c in scored if s > 0), key=lambda pair: pair[0], reverse=True
        )[: self.top_k]

        result = RetrievalResult()
        for score, chunk in ranked:
            item = ScoredChunk(
                chunk_id=chunk.id,
                source=chunk.source_value,
                text=chunk.raw_text or chunk.cleaned_text or "",
                visibility=Visibility(chunk.visibility),
                confidence_score=chunk.confidence_score,
                score=score,
            )
            if item.visibility == Visibility.ACTIVE:
                result.active.append(item)
            else:
                result.shadow.append(item)

        logger.info(
            f"Retrieved for {connection_id}: {len(result.active)} active, "
            f"{len(result.shadow)} shadow (tokens={tokens})"
        )
        return result


def format_context(result: RetrievalResult, max_chunk_chars: int | None = None) -> str:
    """Render retrieved chunks for the prompt, keeping the trust tiers apart.

    Only ACTIVE chunks go under APPROVED KNOWLEDGE. SHADOW chunks get their
    own section marked as unverified.
    """
    if max_chunk_chars is None:
        max_chunk_chars = settings.CONTEXT_CHUNK_CHARS

    lines = ["### APPROVED KNOWLEDGE"]
    if result.active:
        for i, chunk in enumerate(result.active, 1):
            lines.append(f"[{i}] Source: {chunk.source}")
            lines.append(chunk.text[:max_chunk_chars])
    else:
        lines.append("(no approved knowledge matched this question)")

    if result.shadow:
        lines.append("")
        lines.append("### SHADOW KNOWLEDGE (UNVERIFIED - never state as fact)")
        for i, chunk in enumerate(result.shadow, 1):
            lines.append(f"[S{i}] Source: {chunk.source}")
            lines.append(chunk.text[:max_chunk_chars])

    return "\n".join(lines)
