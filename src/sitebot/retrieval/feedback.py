"""Feedback loop adjusting knowledge chunk confidence.

Positive feedback nudges confidence up by a small step; negative feedback
pulls it down by a larger one, so a chunk needs several confirmations to
recover from a single complaint. Scores stay within [0, 1].
"""

import logging
from typing import Literal

from sitebot.config import settings
from sitebot.db.stores import KnowledgeStore
from sitebot.retrieval.exceptions import ChunkNotFoundError

logger = logging.getLogger(__name__)

FeedbackVote = Literal["up", "down"]


def get_confidence_impact(vote: FeedbackVote) -> float:
    """Get the confidence delta for a vote."""
    if vote == "up":
        return settings.FEEDBACK_CONFIDENCE_BOOST
    return -settings.FEEDBACK_CONFIDENCE_PENALTY


def adjust_confidence(current: float, vote: FeedbackVote) -> float:
    new_score = (current if current is not None else 0.5) + get_confidence_impact(vote)
    return round(min(max(new_score, 0.0), 1.0), 4)


async def apply_feedback(store: KnowledgeStore, chunk_id: str, vote: FeedbackVote) -> float:
    """Apply a feedback vote to a chunk and return its new confidence.

    Raises:
        ChunkNotFoundError: If the chunk does not exist
    """
    chunk = await store.get(chunk_id)
    if chunk is None:
        raise ChunkNotFoundError(chunk_id)

    old_score = chunk.confidence_score
    new_score = adjust_confidence(old_score, vote)
    await store.set_confidence(chunk, new_score)

    logger.info(f"Feedback applied: chunk={chunk_id}, vote={vote}, {old_score} -> {new_score}")
    return new_score
