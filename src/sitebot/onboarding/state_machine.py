"""Strict state machine for the six-step onboarding flow.

Checks run in a fixed order: launch immutability, optimistic version,
adjacency, job lease (forward moves only), then the edge's guard. A
successful transition is one compare-and-set write that moves status,
step, version, event log and step timings together, so a caller never
observes a half-applied transition.
"""

import logging
import time
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from sitebot.config import settings
from sitebot.db.models import Connection, utcnow
from sitebot.db.schemas import RESERVED_META_KEYS, OnboardingMeta, load_onboarding_meta
from sitebot.db.stores import ChatSessionStore, ConnectionStore, KnowledgeStore
from sitebot.onboarding.analytics import (
    OnboardingAnalytics,
    append_event,
    record_step_timing,
)
from sitebot.onboarding.guards import GuardContext, get_rule, rules_from
from sitebot.onboarding.locks import LockManager
from sitebot.onboarding.models import (
    NextState,
    OnboardingEvent,
    OnboardingState,
    TransitionCheck,
    TransitionError,
    TransitionResult,
    get_step_for_state,
)

logger = logging.getLogger(__name__)


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


class OnboardingStateMachine:
    """Applies guarded, versioned onboarding transitions.

    Handles:
    - Launch immutability
    - Optimistic version checks
    - Adjacency via the transition table
    - Job lease checks for forward moves
    - Guards, event logging and step timings
    """

    def __init__(self, session: AsyncSession):
        """Initialize the state machine.

        Args:
            session: Database session shared by the stores
        """
        self.session = session
        self.connections = ConnectionStore(session)
        self.analytics = OnboardingAnalytics(self.connections)
        self.locks = LockManager(self.connections, self.analytics)
        self.guard_context = GuardContext(
            knowledge=KnowledgeStore(session),
            chat_sessions=ChatSessionStore(session),
        )

    async def transition(
        self,
        connection: Connection,
        target_state: OnboardingState | str,
        expected_version: int,
        meta: dict[str, Any] | None = None,
        job_name: str | None = None,
    ) -> TransitionResult:
        """Attempt to move ``connection`` to ``target_state``.

        Args:
            connection: Current tenant snapshot
            target_state: Desired state
            expected_version: Version the caller last observed
            meta: Optional metadata merged into onboarding meta
            job_name: Lease holder performing the move, if any; its own
                lease does not block it

        Returns:
            TransitionResult; refusals carry an error code and reason
        """
        start = time.perf_counter()
        conn_id = connection.connection_id
        current = connection.status
        target_label = target_state.value if isinstance(target_state, OnboardingState) else str(target_state)

        # 1. Nothing changes after launch
        if current == OnboardingState.LAUNCHED.value:
            logger.info(
                f"ONBOARDING_TRANSITION: {conn_id} {current}->{target_label} BLOCKED "
                f"(launched) in {_elapsed_ms(start)}ms"
            )
            await self.analytics.track_event(
                connection, OnboardingEvent.BLOCKED_LAUNCHED.value, {"targetState": target_label}
            )
            return TransitionResult.refused(
                TransitionError.ALREADY_LAUNCHED,
                "Connection is LAUNCHED and locked. No further state changes allowed.",
                version=connection.version,
            )

        # 2. Optimistic lock
        if expected_version != connection.version:
            logger.info(
                f"ONBOARDING_TRANSITION: {conn_id} {current}->{target_label} VERSION_CONFLICT "
                f"(expected v{expected_version}, actual v{connection.version})"
            )
            await self.analytics.track_event(
                connection,
                OnboardingEvent.VERSION_CONFLICT.value,
                {"from": current, "to": target_label,
                 "expected": expected_version, "actual": connection.version},
            )
            return TransitionResult.refused(
                TransitionError.VERSION_CONFLICT,
                f"Version conflict. Expected v{expected_version}, but current is "
                f"v{connection.version}. Refresh and retry.",
                version=connection.version,
            )

        # 3. Adjacency
        rule = get_rule(current, target_label)
        if rule is None:
            logger.info(
                f"ONBOARDING_TRANSITION: {conn_id} {current}->{target_label} INVALID"
            )
            await self.analytics.track_event(
                connection,
                OnboardingEvent.INVALID_TRANSITION.value,
                {"from": current, "to": target_label},
            )
            return TransitionResult.refused(
                TransitionError.INVALID_TRANSITION,
                f"Invalid transition: {current} → {target_label}. Not allowed.",
                version=connection.version,
            )
        target = OnboardingState(target_label)

        # 4. Job lease (rollbacks bypass it)
        if not rule.is_rollback:
            lock = self.locks.check_lock(connection)
            if lock.blocks and lock.held_by != job_name:
                logger.info(
                    f"ONBOARDING_TRANSITION: {conn_id} {current}->{target_label} LOCKED "
                    f"by {lock.held_by}"
                )
                await self.analytics.track_event(
                    connection,
                    OnboardingEvent.LOCK_BLOCKED.value,
                    {"from": current, "to": target_label, "lockedBy": lock.held_by},
                )
                return TransitionResult.refused(
                    TransitionError.LOCK_HELD,
                    f"State is locked by job: {lock.held_by}. Try again later.",
                    version=connection.version,
                )

        # 5. Guard
        guard_result = await rule.guard(connection, self.guard_context)
        if not guard_result.ok:
            logger.info(
                f"ONBOARDING_TRANSITION: {conn_id} {current}->{target_label} GUARD_FAILED: "
                f"{guard_result.reason}"
            )
            await self.analytics.track_event(
                connection,
                OnboardingEvent.GUARD_FAILED.value,
                {"from": current, "to": target_label, "reason": guard_result.reason},
            )
            return TransitionResult.refused(
                TransitionError.GUARD_FAILED,
                guard_result.reason or "Transition guard failed.",
                version=connection.version,
            )

        # 6. Apply
        now = utcnow()
        previous_step = connection.onboarding_step
        new_step = get_step_for_state(target)
        since = connection.last_activity_at or connection.created_at
        step_duration_ms = (now - since).total_seconds() * 1000 if since else None

        onboarding_meta = load_onboarding_meta(connection.onboarding_meta)
        if meta:
            # Merge as data: keys like "copy" or "to_json" must not touch model attributes
            merged = onboarding_meta.model_dump(by_alias=True)
            for key, value in meta.items():
                if key in RESERVED_META_KEYS:
                    logger.warning(f"Ignoring reserved onboarding meta key '{key}' for {conn_id}")
                    continue
                merged[key] = value
            onboarding_meta = OnboardingMeta.model_validate(merged)
        append_event(
            onboarding_meta,
            OnboardingEvent.TRANSITION.value,
            {
                "from": current,
                "to": target.value,
                "durationMs": round(step_duration_ms) if step_duration_ms is not None else None,
                "isRollback": rule.is_rollback,
            },
            self.analytics.max_events,
        )
        if step_duration_ms is not None and previous_step:
            record_step_timing(onboarding_meta, previous_step, round(step_duration_ms))

        values: dict[str, Any] = {
            "status": target.value,
            "onboarding_step": new_step,
            "onboarding_meta": onboarding_meta.to_json(),
            "last_activity_at": now,
        }
        if not rule.is_rollback:
            # A forward move ends whatever job was holding the lease
            values["state_locked_by"] = None
            values["state_locked_at"] = None
        if target == OnboardingState.LAUNCHED:
            values["onboarding_completed_at"] = now

        applied = await self.connections.compare_and_set(connection, expected_version, values)
        if not applied:
            logger.warning(
                f"ONBOARDING_TRANSITION: {conn_id} {current}->{target.value} lost race "
                f"(now v{connection.version})"
            )
            return TransitionResult.refused(
                TransitionError.VERSION_CONFLICT,
                f"Version conflict. Connection changed to v{connection.version} while "
                f"applying the transition. Refresh and retry.",
                version=connection.version,
            )

        duration_ms = _elapsed_ms(start)
        direction = "ROLLBACK" if rule.is_rollback else "FORWARD"
        logger.info(
            f"ONBOARDING_TRANSITION: {conn_id} {current}->{target.value} SUCCESS {direction} "
            f"step {previous_step}->{new_step} v{connection.version} in {duration_ms}ms"
        )
        if duration_ms > settings.SLOW_TRANSITION_MS:
            logger.warning(
                f"SLOW_QUERY: {conn_id} transition:{current}->{target.value} took {duration_ms}ms "
                f"(threshold {settings.SLOW_TRANSITION_MS}ms)"
            )
        if target == OnboardingState.LAUNCHED and connection.onboarding_completed_at:
            total_ms = (connection.onboarding_completed_at - connection.created_at).total_seconds() * 1000
            logger.info(
                f"ONBOARDING_ACTIVATED: {conn_id} in {round(total_ms)}ms, "
                f"step timings {onboarding_meta.step_timings}"
            )

        return TransitionResult(
            success=True,
            previous_state=OnboardingState(current),
            new_state=target,
            step=new_step,
            version=connection.version,
            duration_ms=duration_ms,
        )

    async def can_transition(
        self, connection: Connection, target_state: OnboardingState | str
    ) -> TransitionCheck:
        """Check whether a transition could run now. No side effects."""
        target_label = target_state.value if isinstance(target_state, OnboardingState) else str(target_state)
        if connection.status == OnboardingState.LAUNCHED.value:
            return TransitionCheck(allowed=False, reason="Connection is LAUNCHED and locked.")

        rule = get_rule(connection.status, target_label)
        if rule is None:
            return TransitionCheck(
                allowed=False,
                reason=f"Transition {connection.status}->{target_label} is not defined.",
            )

        guard_result = await rule.guard(connection, self.guard_context)
        return TransitionCheck(allowed=guard_result.ok, reason=guard_result.reason)

    def get_valid_next_states(self, connection: Connection) -> list[NextState]:
        """States reachable from the connection's current state."""
        if connection.status == OnboardingState.LAUNCHED.value:
            return []
        return [
            NextState(state=target, is_rollback=rule.is_rollback)
            for target, rule in rules_from(connection.status)
        ]
