"""Data models and enums for the onboarding workflow."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class OnboardingState(str, Enum):
    """Onboarding states, in order of progress."""

    DRAFT = "DRAFT"
    CONNECTED = "CONNECTED"
    DISCOVERING = "DISCOVERING"
    TRAINED = "TRAINED"
    TUNED = "TUNED"
    READY = "READY"
    LAUNCHED = "LAUNCHED"


class TransitionError(str, Enum):
    """Why a transition or job lock was refused."""

    VERSION_CONFLICT = "VERSION_CONFLICT"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    GUARD_FAILED = "GUARD_FAILED"
    ALREADY_LAUNCHED = "ALREADY_LAUNCHED"
    LOCK_HELD = "LOCK_HELD"


class OnboardingEvent(str, Enum):
    """Event names written to the onboarding event log."""

    TRANSITION = "TRANSITION"
    GUARD_FAILED = "GUARD_FAILED"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    BLOCKED_LAUNCHED = "BLOCKED_LAUNCHED"
    LOCK_BLOCKED = "LOCK_BLOCKED"
    LOCK_ACQUIRED = "LOCK_ACQUIRED"
    LOCK_RELEASED = "LOCK_RELEASED"


# HTTP-equivalent status for each refusal
ERROR_STATUS_CODES = {
    TransitionError.VERSION_CONFLICT: 409,
    TransitionError.INVALID_TRANSITION: 400,
    TransitionError.GUARD_FAILED: 422,
    TransitionError.ALREADY_LAUNCHED: 423,
    TransitionError.LOCK_HELD: 423,
}

STATE_TO_STEP = {
    OnboardingState.DRAFT: 1,
    OnboardingState.CONNECTED: 2,
    OnboardingState.DISCOVERING: 3,
    OnboardingState.TRAINED: 4,
    OnboardingState.TUNED: 5,
    OnboardingState.READY: 6,
    OnboardingState.LAUNCHED: 6,
}

STATE_TO_PATH = {
    OnboardingState.DRAFT: "/setup/identity",
    OnboardingState.CONNECTED: "/setup/discovery",
    OnboardingState.DISCOVERING: "/setup/discovery",
    OnboardingState.TRAINED: "/setup/behavior",
    OnboardingState.TUNED: "/setup/verify",
    OnboardingState.READY: "/setup/launch",
    OnboardingState.LAUNCHED: "/dashboard",
}


def get_step_for_state(state: OnboardingState | str) -> int:
    """Wizard step (1-6) for a state; unknown states resume at step 1."""
    try:
        return STATE_TO_STEP[OnboardingState(state)]
    except ValueError:
        return 1


def get_path_for_state(state: OnboardingState | str) -> str:
    """UI path the wizard should resume at."""
    try:
        return STATE_TO_PATH[OnboardingState(state)]
    except ValueError:
        return STATE_TO_PATH[OnboardingState.DRAFT]


@dataclass(frozen=True)
class GuardResult:
    """Outcome of a transition guard."""

    ok: bool
    reason: str | None = None

    @classmethod
    def passed(cls) -> "GuardResult":
        return cls(ok=True)

    @classmethod
    def failed(cls, reason: str) -> "GuardResult":
        return cls(ok=False, reason=reason)


@dataclass
class TransitionResult:
    """Outcome of a transition attempt.

    Refusals carry an ``error`` code and a ``reason`` that can be shown to
    an admin verbatim.
    """

    success: bool
    error: TransitionError | None = None
    reason: str | None = None
    previous_state: OnboardingState | None = None
    new_state: OnboardingState | None = None
    step: int | None = None
    version: int | None = None
    duration_ms: float | None = None

    @property
    def status_code(self) -> int:
        if self.success or self.error is None:
            return 200
        return ERROR_STATUS_CODES[self.error]

    @classmethod
    def refused(cls, error: TransitionError, reason: str, version: int | None = None) -> "TransitionResult":
        return cls(success=False, error=error, reason=reason, version=version)


@dataclass
class TransitionCheck:
    """Read-only answer to "could this transition run right now?"."""

    allowed: bool
    reason: str | None = None


@dataclass(frozen=True)
class NextState:
    """A state reachable from the current one."""

    state: OnboardingState
    is_rollback: bool


@dataclass
class LockResult:
    """Outcome of a job lock acquisition."""

    acquired: bool
    reason: str | None = None
    error: TransitionError | None = None


@dataclass
class LockStatus:
    """Current lease state of a connection."""

    locked: bool
    stale: bool = False
    held_by: str | None = None
    held_since: datetime | None = None
    age_seconds: float | None = None

    @property
    def blocks(self) -> bool:
        """True while a live (non-stale) lease is held."""
        return self.locked and not self.stale


@dataclass
class ActivationReport:
    """Onboarding activation metrics for one connection."""

    connection_id: str
    status: str
    is_activated: bool
    total_duration_ms: float | None
    total_duration_human: str | None
    step_timings: dict[str, float] = field(default_factory=dict)
    transition_count: int = 0
    guard_failures: int = 0
    rollbacks: int = 0
    event_count: int = 0
    created_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class Dropoff:
    """A connection that stalled mid-onboarding."""

    connection_id: str
    status: str
    step: int
    last_activity: datetime
    stale_days: int


@dataclass
class AggregateMetrics:
    """System-wide onboarding funnel report."""

    total: int
    launched: int
    completion_rate: float  # percent, one decimal
    status_breakdown: dict[str, int] = field(default_factory=dict)
    avg_completion_ms: int = 0
    avg_completion_human: str = "0s"
    dropoffs: int = 0
    dropoff_by_step: dict[int, int] = field(default_factory=dict)
    avg_step_timings: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "launched": self.launched,
            "completion_rate": self.completion_rate,
            "status_breakdown": self.status_breakdown,
            "avg_completion_ms": self.avg_completion_ms,
            "avg_completion_human": self.avg_completion_human,
            "dropoffs": self.dropoffs,
            "dropoff_by_step": self.dropoff_by_step,
            "avg_step_timings": self.avg_step_timings,
        }
