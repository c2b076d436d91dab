"""Chat turn: confidence gating and the end-to-end service."""

from sitebot.chat.confidence_gate import (
    aggregate_confidence,
    apply_gate,
    distinct_source_count,
    evaluate,
)
from sitebot.chat.models import AnswerSource, ChatReply, GateDecision, LowConfidenceAction
from sitebot.chat.service import ChatService

__all__ = [
    "ChatService",
    "aggregate_confidence",
    "apply_gate",
    "distinct_source_count",
    "evaluate",
    "AnswerSource",
    "ChatReply",
    "GateDecision",
    "LowConfidenceAction",
]
