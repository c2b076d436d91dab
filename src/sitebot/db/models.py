"""SQLAlchemy models for the chatbot platform.

JSON blobs (behaviour profile, overrides, policies, onboarding meta) are
stored as text and parsed at the boundary by ``sitebot.db.schemas``.
"""

from datetime import datetime
import uuid

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite round-trips."""
    return datetime.utcnow()


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Connection(Base):
    """A tenant: one website onboarded onto the platform."""

    __tablename__ = "connections"

    connection_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    website_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    website_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    assistant_name: Mapped[str] = mapped_column(String(128), default="AI Assistant")

    # Onboarding state
    status: Mapped[str] = mapped_column(String(32), default="DRAFT", index=True)
    onboarding_step: Mapped[int] = mapped_column(Integer, default=1)
    version: Mapped[int] = mapped_column(Integer, default=0)
    state_locked_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    state_locked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    onboarding_meta: Mapped[str] = mapped_column(Text, default="{}")
    onboarding_completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Behaviour and policy (JSON fields stored as text)
    behavior_profile: Mapped[str] = mapped_column(Text, default="{}")
    behavior_overrides: Mapped[str] = mapped_column(Text, default="[]")
    policies: Mapped[str] = mapped_column(Text, default="[]")
    widget_config: Mapped[str] = mapped_column(Text, default="{}")
    system_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    health_score: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<Connection(connection_id={self.connection_id}, status={self.status}, "
            f"version={self.version})>"
        )


class ConnectionKnowledge(Base):
    """A stored piece of knowledge for a tenant."""

    __tablename__ = "connection_knowledge"
    __table_args__ = (
        UniqueConstraint("connection_id", "content_hash", name="uq_knowledge_content_hash"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    connection_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("connections.connection_id", ondelete="CASCADE"), index=True
    )
    source_type: Mapped[str] = mapped_column(String(16), default="URL")  # URL, TEXT
    source_value: Mapped[str] = mapped_column(Text)
    raw_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    cleaned_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="PENDING", index=True)
    visibility: Mapped[str] = mapped_column(String(16), default="SHADOW", index=True)
    confidence_score: Mapped[float] = mapped_column(Float, default=0.5)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (
            f"<ConnectionKnowledge(id={self.id}, status={self.status}, "
            f"visibility={self.visibility})>"
        )


class ChatSession(Base):
    """A widget or sandbox conversation."""

    __tablename__ = "chat_sessions"
    __table_args__ = (
        UniqueConstraint("session_id", "connection_id", name="uq_chat_session"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(128), index=True)
    connection_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("connections.connection_id", ondelete="CASCADE"), index=True
    )
    messages: Mapped[str] = mapped_column(Text, default="[]")  # JSON array

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    last_message_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<ChatSession(session_id={self.session_id}, connection_id={self.connection_id})>"


class ConfidencePolicy(Base):
    """Per-tenant thresholds for answer confidence gating."""

    __tablename__ = "confidence_policies"

    connection_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("connections.connection_id", ondelete="CASCADE"), primary_key=True
    )
    min_answer_confidence: Mapped[float] = mapped_column(Float, default=0.65)
    min_source_count: Mapped[int] = mapped_column(Integer, default=1)
    # REFUSE, CLARIFY, ESCALATE, SOFT_ANSWER
    low_confidence_action: Mapped[str] = mapped_column(String(16), default="SOFT_ANSWER")

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (
            f"<ConfidencePolicy(connection_id={self.connection_id}, "
            f"min={self.min_answer_confidence}, action={self.low_confidence_action})>"
        )
