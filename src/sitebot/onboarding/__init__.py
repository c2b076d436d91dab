"""Onboarding workflow: states, guards, job leases and funnel analytics.

This module provides:
- The declarative transition table and guard registry
- The versioned, lease-aware state machine
- Cooperative job leases for long-running work
- Per-connection event logs and system-wide funnel reports
"""

from sitebot.onboarding.analytics import OnboardingAnalytics, format_duration
from sitebot.onboarding.guards import TRANSITIONS, GuardContext, TransitionRule, get_rule
from sitebot.onboarding.locks import LockManager
from sitebot.onboarding.models import (
    STATE_TO_PATH,
    STATE_TO_STEP,
    ActivationReport,
    AggregateMetrics,
    Dropoff,
    GuardResult,
    LockResult,
    LockStatus,
    NextState,
    OnboardingEvent,
    OnboardingState,
    TransitionCheck,
    TransitionError,
    TransitionResult,
    get_path_for_state,
    get_step_for_state,
)
from sitebot.onboarding.state_machine import OnboardingStateMachine

__all__ = [
    # State machine
    "OnboardingStateMachine",
    # Guards
    "TRANSITIONS",
    "GuardContext",
    "TransitionRule",
    "get_rule",
    # Locks
    "LockManager",
    # Analytics
    "OnboardingAnalytics",
    "format_duration",
    # Models
    "STATE_TO_PATH",
    "STATE_TO_STEP",
    "ActivationReport",
    "AggregateMetrics",
    "Dropoff",
    "GuardResult",
    "LockResult",
    "LockStatus",
    "NextState",
    "OnboardingEvent",
    "OnboardingState",
    "TransitionCheck",
    "TransitionError",
    "TransitionResult",
    "get_path_for_state",
    "get_step_for_state",
]
