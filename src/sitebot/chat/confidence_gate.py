"""Post-hoc confidence gating of AI answers.

The gate never re-queries the model. It looks at the confidence of the
sources an answer used and either lets the answer through or swaps in the
tenant's configured fallback.
"""

import logging
from collections.abc import Sequence

from sitebot.chat.models import AnswerSource, ChatReply, GateDecision, LowConfidenceAction
from sitebot.db.models import ConfidencePolicy

logger = logging.getLogger(__name__)

REFUSE_MESSAGE = (
    "I'm sorry, I'm not confident enough in my answer to share it. "
    "I can double-check this with the team if you'd like."
)
CLARIFY_MESSAGE = (
    "Could you tell me a bit more about what you're looking for? "
    "A few more details will help me give you an accurate answer."
)
ESCALATE_MESSAGE = (
    "I'd rather not guess on this one. "
    "Would you like me to connect you with a member of our team?"
)
SOFT_ANSWER_PREFIX = "⚠️ This may not be fully accurate: "


def aggregate_confidence(sources: Sequence[AnswerSource]) -> float:
    """Mean source confidence; 1.0 when the answer used no sources.

    A sourceless answer is not penalised here; ``min_source_count`` is what
    catches it.
    """
    if not sources:
        return 1.0
    return sum(s.confidence_score for s in sources) / len(sources)


def distinct_source_count(sources: Sequence[AnswerSource]) -> int:
    return len({s.source_id for s in sources})


def _action(policy: ConfidencePolicy) -> LowConfidenceAction:
    try:
        return LowConfidenceAction(policy.low_confidence_action)
    except ValueError:
        logger.warning(
            f"Unknown low confidence action '{policy.low_confidence_action}' for "
            f"{policy.connection_id}, using SOFT_ANSWER"
        )
        return LowConfidenceAction.SOFT_ANSWER


def replacement_for(action: LowConfidenceAction, answer: str) -> str:
    if action == LowConfidenceAction.REFUSE:
        return REFUSE_MESSAGE
    if action == LowConfidenceAction.CLARIFY:
        return CLARIFY_MESSAGE
    if action == LowConfidenceAction.ESCALATE:
        return ESCALATE_MESSAGE
    return SOFT_ANSWER_PREFIX + answer


def evaluate(
    confidence: float,
    source_count: int,
    policy: ConfidencePolicy,
    answer: str = "",
) -> GateDecision:
    """Decide whether an answer passes ``policy``.

    Args:
        confidence: Aggregate confidence of the answer's sources
        source_count: Number of distinct sources used
        policy: Tenant thresholds and fallback action
        answer: Original answer, needed for SOFT_ANSWER

    Returns:
        GateDecision with the replacement text when gated
    """
    reasons = []
    if confidence < policy.min_answer_confidence:
        reasons.append(
            f"confidence {confidence:.2f} below minimum {policy.min_answer_confidence:.2f}"
        )
    if source_count < policy.min_source_count:
        reasons.append(f"{source_count} source(s) below minimum {policy.min_source_count}")

    if not reasons:
        return GateDecision(gated=False, aggregate_confidence=confidence, source_count=source_count)

    action = _action(policy)
    return GateDecision(
        gated=True,
        aggregate_confidence=confidence,
        source_count=source_count,
        reason="; ".join(reasons),
        replacement_text=replacement_for(action, answer),
    )


def apply_gate(
    answer: str,
    sources: Sequence[AnswerSource],
    policy: ConfidencePolicy,
) -> ChatReply:
    """Gate an answer and build the reply with its trust metadata."""
    confidence = aggregate_confidence(sources)
    decision = evaluate(confidence, distinct_source_count(sources), policy, answer)

    metadata = {
        "sources": [
            {"sourceId": s.source_id, "confidenceScore": s.confidence_score} for s in sources
        ],
        "confidenceScore": round(confidence, 4),
        "gated": decision.gated,
    }
    if not decision.gated:
        return ChatReply(text=answer, metadata=metadata)

    metadata["originalAnswer"] = answer
    metadata["gateReason"] = decision.reason
    metadata["lowConfidenceAction"] = _action(policy).value
    logger.info(f"Answer gated for {policy.connection_id}: {decision.reason}")
    return ChatReply(text=decision.replacement_text, metadata=metadata)
