"""Transition table and guard registry for the onboarding workflow.

Every legal move is one entry in ``TRANSITIONS``: forward edges advance
exactly one state and carry a guard, rollback edges step back one state and
are always permitted. Guards read only stored state (the connection row and
counts from the stores) so the same inputs always yield the same answer.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sitebot.config import settings
from sitebot.db.models import Connection
from sitebot.db.schemas import load_behavior_profile
from sitebot.db.stores import ChatSessionStore, KnowledgeStore
from sitebot.onboarding.models import GuardResult, OnboardingState

logger = logging.getLogger(__name__)


@dataclass
class GuardContext:
    """Stores a guard may query."""

    knowledge: KnowledgeStore
    chat_sessions: ChatSessionStore


Guard = Callable[[Connection, GuardContext], Awaitable[GuardResult]]


@dataclass(frozen=True)
class TransitionRule:
    """A legal (from, to) pair."""

    guard: Guard
    is_rollback: bool = False


# Registry: maps (from, to) to its rule
TRANSITIONS: dict[tuple[OnboardingState, OnboardingState], TransitionRule] = {}


def register_guard(
    source: OnboardingState, target: OnboardingState
) -> Callable[[Guard], Guard]:
    """Decorator registering a forward transition and its guard.

    Usage:
        @register_guard(OnboardingState.DRAFT, OnboardingState.CONNECTED)
        async def _website_url_set(connection, ctx):
            ...
    """

    def decorator(guard: Guard) -> Guard:
        TRANSITIONS[(source, target)] = TransitionRule(guard=guard, is_rollback=False)
        logger.debug(f"Registered guard {guard.__name__} for {source.value}->{target.value}")
        return guard

    return decorator


async def always_allow(connection: Connection, ctx: GuardContext) -> GuardResult:
    """Rollbacks are an admin escape hatch and are never blocked."""
    return GuardResult.passed()


def register_rollback(source: OnboardingState, target: OnboardingState) -> None:
    TRANSITIONS[(source, target)] = TransitionRule(guard=always_allow, is_rollback=True)


def get_rule(
    source: OnboardingState | str, target: OnboardingState | str
) -> TransitionRule | None:
    """Look up the rule for a pair, or None if the move is not allowed."""
    try:
        return TRANSITIONS.get((OnboardingState(source), OnboardingState(target)))
    except ValueError:
        return None


def rules_from(source: OnboardingState | str) -> list[tuple[OnboardingState, TransitionRule]]:
    """All (target, rule) pairs reachable from ``source``, in declaration order."""
    try:
        source = OnboardingState(source)
    except ValueError:
        return []
    return [(to, rule) for (frm, to), rule in TRANSITIONS.items() if frm == source]


# === Forward path ===


@register_guard(OnboardingState.DRAFT, OnboardingState.CONNECTED)
async def website_url_set(connection: Connection, ctx: GuardContext) -> GuardResult:
    if not connection.website_url or not connection.website_url.strip():
        return GuardResult.failed("Website URL is required before proceeding.")
    return GuardResult.passed()


@register_guard(OnboardingState.CONNECTED, OnboardingState.DISCOVERING)
async def website_name_set(connection: Connection, ctx: GuardContext) -> GuardResult:
    if not connection.website_name or not connection.website_name.strip():
        return GuardResult.failed("Website name is required.")
    return GuardResult.passed()


@register_guard(OnboardingState.DISCOVERING, OnboardingState.TRAINED)
async def knowledge_extracted(connection: Connection, ctx: GuardContext) -> GuardResult:
    count = await ctx.knowledge.count_by_status(connection.connection_id, "READY")
    if count < 1:
        return GuardResult.failed("At least 1 knowledge chunk must be extracted.")
    return GuardResult.passed()


@register_guard(OnboardingState.TRAINED, OnboardingState.TUNED)
async def behavior_configured(connection: Connection, ctx: GuardContext) -> GuardResult:
    try:
        profile = load_behavior_profile(connection.behavior_profile)
    except ValueError as e:
        logger.warning(f"Malformed behavior profile for {connection.connection_id}: {e}")
        return GuardResult.failed("Behavior settings are malformed and must be saved again.")
    if not profile.configured_keys():
        return GuardResult.failed("Behavior settings must be configured.")
    return GuardResult.passed()


@register_guard(OnboardingState.TUNED, OnboardingState.READY)
async def verification_chat_exists(connection: Connection, ctx: GuardContext) -> GuardResult:
    count = await ctx.chat_sessions.count_for_connection(connection.connection_id)
    if count < 1:
        return GuardResult.failed("At least 1 test chat is required for verification.")
    return GuardResult.passed()


@register_guard(OnboardingState.READY, OnboardingState.LAUNCHED)
async def health_score_sufficient(connection: Connection, ctx: GuardContext) -> GuardResult:
    score = connection.health_score or 0
    if score < settings.LAUNCH_MIN_HEALTH_SCORE:
        return GuardResult.failed(
            f"Health score must be ≥ {settings.LAUNCH_MIN_HEALTH_SCORE}%. Current: {score}%"
        )
    return GuardResult.passed()


# === Rollback paths ===

register_rollback(OnboardingState.DISCOVERING, OnboardingState.CONNECTED)
register_rollback(OnboardingState.TRAINED, OnboardingState.DISCOVERING)
register_rollback(OnboardingState.TUNED, OnboardingState.TRAINED)
register_rollback(OnboardingState.READY, OnboardingState.TUNED)
