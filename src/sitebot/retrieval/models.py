"""Knowledge retrieval models."""

from dataclasses import dataclass, field
from enum import Enum


class KnowledgeStatus(str, Enum):
    """Ingestion status of a knowledge chunk."""

    PENDING = "PENDING"
    READY = "READY"
    FAILED = "FAILED"
    REJECTED = "REJECTED"


class Visibility(str, Enum):
    """Trust tier of a knowledge chunk."""

    ACTIVE = "ACTIVE"  # Approved, may be stated as fact
    SHADOW = "SHADOW"  # Unapproved, never authoritative


@dataclass
class ScoredChunk:
    """A knowledge chunk matched against a query."""

    chunk_id: str
    source: str
    text: str
    visibility: Visibility
    confidence_score: float
    score: int  # Number of query tokens found in the chunk

    @property
    def is_active(self) -> bool:
        return self.visibility == Visibility.ACTIVE


@dataclass
class RetrievalResult:
    """Matches partitioned by trust tier."""

    active: list[ScoredChunk] = field(default_factory=list)
    shadow: list[ScoredChunk] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.active and not self.shadow
