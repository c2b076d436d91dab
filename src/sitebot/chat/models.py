"""Chat turn models."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class LowConfidenceAction(str, Enum):
    """What to show when an answer fails the confidence policy."""

    REFUSE = "REFUSE"
    CLARIFY = "CLARIFY"
    ESCALATE = "ESCALATE"
    SOFT_ANSWER = "SOFT_ANSWER"


@dataclass(frozen=True)
class AnswerSource:
    """A knowledge chunk an answer drew on."""

    source_id: str
    confidence_score: float


@dataclass
class GateDecision:
    """Outcome of the confidence gate."""

    gated: bool
    aggregate_confidence: float
    source_count: int
    reason: str | None = None
    replacement_text: str | None = None


@dataclass
class ChatReply:
    """Final answer returned to the widget."""

    text: str
    metadata: dict[str, Any] = field(default_factory=dict)
