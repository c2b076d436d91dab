"""API request and response schemas."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class TransitionRequest(BaseModel):
    """Transition request schema."""

    target_state: str = Field(..., description="State to move to", min_length=1)
    version: int = Field(..., ge=0, description="Version the caller last observed")
    meta: dict[str, Any] | None = Field(
        default=None, description="Metadata merged into onboarding meta"
    )
    job_name: str | None = Field(
        default=None, description="Job holding the lease, when a job performs the move"
    )

    model_config = {"json_schema_extra": {
        "example": {"target_state": "CONNECTED", "version": 0, "meta": {"source": "wizard"}}
    }}


class TransitionResponse(BaseModel):
    """Successful transition."""

    success: bool = True
    previous_state: str
    new_state: str
    step: int
    version: int
    duration_ms: float
    resume_path: str


class NextStateItem(BaseModel):
    state: str
    is_rollback: bool


class GuardCheckItem(BaseModel):
    allowed: bool
    reason: str | None = None


class OnboardingStatusResponse(BaseModel):
    """Current onboarding position of a connection."""

    connection_id: str
    status: str
    onboarding_step: int
    version: int
    is_launched: bool
    is_locked: bool
    locked_by: str | None = None
    onboarding_completed_at: datetime | None = None
    resume_path: str
    valid_next_states: list[NextStateItem] = Field(default_factory=list)
    can_proceed: dict[str, GuardCheckItem] = Field(default_factory=dict)


class ResumeResponse(BaseModel):
    connection_id: str
    status: str
    step: int
    resume_path: str
    is_complete: bool


class LockRequest(BaseModel):
    job_name: str = Field(..., min_length=1, max_length=128)


class LockResponse(BaseModel):
    acquired: bool
    locked_by: str | None = None
    locked_at: datetime | None = None


class ChatRequest(BaseModel):
    """Chat turn request schema."""

    connection_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    url: str | None = Field(default=None, description="Page the widget is embedded on")


class ChatResponse(BaseModel):
    messages: list[dict[str, str]]
    ai_metadata: dict[str, Any] = Field(default_factory=dict)


class FeedbackRequest(BaseModel):
    vote: Literal["up", "down"]


class FeedbackResponse(BaseModel):
    chunk_id: str
    confidence_score: float


class ConfidencePolicyUpdate(BaseModel):
    min_answer_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    min_source_count: int | None = Field(default=None, ge=0)
    low_confidence_action: Literal["REFUSE", "CLARIFY", "ESCALATE", "SOFT_ANSWER"] | None = None


class ConfidencePolicyResponse(BaseModel):
    connection_id: str
    min_answer_confidence: float
    min_source_count: int
    low_confidence_action: str


class KnowledgeIngestRequest(BaseModel):
    """Plain-text knowledge supplied by the tenant."""

    source_value: str = Field(..., min_length=1, description="Label or URL the text came from")
    text: str = Field(..., min_length=1)
    visibility: Literal["ACTIVE", "SHADOW"] = "SHADOW"


class KnowledgeResponse(BaseModel):
    id: str
    connection_id: str
    status: str
    visibility: str
    confidence_score: float
    duplicate: bool = False
