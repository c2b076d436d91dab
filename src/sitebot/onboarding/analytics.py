"""Onboarding funnel analytics.

Each connection carries a bounded event log and per-step timings in
``onboarding_meta``. Writes here never raise: a failure to record an event
is logged and dropped so it cannot abort the operation that triggered it.
Read-side reports aggregate over the stored logs and have no side effects.
"""

import logging
import math
from datetime import timedelta
from typing import Any, Callable

from sitebot.config import settings
from sitebot.db.models import Connection, utcnow
from sitebot.db.schemas import OnboardingMeta, load_onboarding_meta
from sitebot.db.stores import ConnectionStore
from sitebot.onboarding.models import (
    ActivationReport,
    AggregateMetrics,
    Dropoff,
    OnboardingEvent,
    OnboardingState,
)

logger = logging.getLogger(__name__)

MS_PER_DAY = 1000 * 60 * 60 * 24
META_WRITE_ATTEMPTS = 5

# Not counted as drop-offs: finished, or never started
_DROPOFF_EXCLUDED = [OnboardingState.LAUNCHED.value, OnboardingState.DRAFT.value]


def append_event(
    meta: OnboardingMeta,
    event: str,
    data: dict[str, Any] | None = None,
    max_events: int | None = None,
) -> OnboardingMeta:
    """Append an event to the ring buffer, evicting the oldest beyond the cap."""
    max_events = max_events or settings.ONBOARDING_MAX_EVENTS
    entry = {"event": event, **(data or {}), "at": utcnow().isoformat() + "Z"}
    meta.events.append(entry)
    if len(meta.events) > max_events:
        del meta.events[: len(meta.events) - max_events]
    return meta


def record_step_timing(meta: OnboardingMeta, step: int, duration_ms: float) -> OnboardingMeta:
    """Last write wins: revisiting a step after a rollback resets its timing."""
    meta.step_timings[str(step)] = duration_ms
    return meta


def format_duration(ms: float | None) -> str:
    """Format milliseconds as a short human-readable string."""
    if not ms or ms <= 0:
        return "0s"
    secs = int(ms // 1000)
    if secs < 60:
        return f"{secs}s"
    mins = secs // 60
    if mins < 60:
        return f"{mins}m {secs % 60}s"
    hrs = mins // 60
    if hrs < 24:
        return f"{hrs}h {mins % 60}m"
    days = hrs // 24
    return f"{days}d {hrs % 24}h"


class OnboardingAnalytics:
    """Event tracking and funnel reporting for onboarding."""

    def __init__(self, connections: ConnectionStore, max_events: int | None = None):
        self.connections = connections
        self.max_events = max_events or settings.ONBOARDING_MAX_EVENTS

    async def track_event(
        self,
        connection: Connection,
        event: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Append an event to the connection's log and persist it."""
        try:
            await self._write_meta(
                connection, lambda meta: append_event(meta, event, data, self.max_events)
            )
        except Exception as e:
            logger.error(f"[ANALYTICS] trackEvent error for {connection.connection_id}: {e}")
            await self._recover()

    async def track_step_timing(self, connection: Connection, step: int, duration_ms: float) -> None:
        """Record time spent in ``step``."""
        try:
            await self._write_meta(
                connection, lambda meta: record_step_timing(meta, step, duration_ms)
            )
        except Exception as e:
            logger.error(f"[ANALYTICS] trackStepTiming error for {connection.connection_id}: {e}")
            await self._recover()

    async def _write_meta(
        self,
        connection: Connection,
        change: Callable[[OnboardingMeta], OnboardingMeta],
    ) -> None:
        # Re-read the stored log each attempt; a concurrent transition may have appended to it
        for _ in range(META_WRITE_ATTEMPTS):
            raw = await self.connections.read_meta(connection)
            meta = change(load_onboarding_meta(raw))
            if await self.connections.replace_meta(connection, raw, meta.to_json()):
                return
        logger.warning(
            f"[ANALYTICS] gave up writing onboarding meta for {connection.connection_id} "
            f"after {META_WRITE_ATTEMPTS} conflicting attempts"
        )

    async def _recover(self) -> None:
        try:
            await self.connections.session.rollback()
        except Exception as e:
            logger.error(f"[ANALYTICS] session rollback failed: {e}")

    async def detect_dropoffs(self, stale_days: int | None = None) -> list[Dropoff]:
        """Find connections stuck mid-onboarding for longer than ``stale_days``."""
        if stale_days is None:
            stale_days = settings.DROPOFF_STALE_DAYS
        now = utcnow()
        cutoff = now - timedelta(days=stale_days)

        stale = await self.connections.find_inactive(cutoff, _DROPOFF_EXCLUDED)

        dropoffs = []
        for conn in stale:
            idle_ms = (now - conn.last_activity_at).total_seconds() * 1000
            days = math.floor(idle_ms / MS_PER_DAY)
            logger.warning(
                f"ONBOARDING_DROPOFF: {conn.connection_id} stuck in {conn.status} "
                f"(step {conn.onboarding_step}) for {days}d"
            )
            dropoffs.append(
                Dropoff(
                    connection_id=conn.connection_id,
                    status=conn.status,
                    step=conn.onboarding_step,
                    last_activity=conn.last_activity_at,
                    stale_days=days,
                )
            )
        return dropoffs

    async def get_activation_report(self, connection_id: str) -> ActivationReport | None:
        """Summarise one connection's onboarding from its event log."""
        connection = await self.connections.get(connection_id)
        if connection is None:
            return None

        meta = load_onboarding_meta(connection.onboarding_meta)
        events = meta.events

        total_ms = None
        if connection.onboarding_completed_at and connection.created_at:
            total_ms = (
                connection.onboarding_completed_at - connection.created_at
            ).total_seconds() * 1000

        transitions = [e for e in events if e.get("event") == OnboardingEvent.TRANSITION.value]

        return ActivationReport(
            connection_id=connection_id,
            status=connection.status,
            is_activated=connection.status == OnboardingState.LAUNCHED.value,
            total_duration_ms=total_ms,
            total_duration_human=format_duration(total_ms) if total_ms else None,
            step_timings=dict(meta.step_timings),
            transition_count=len(transitions),
            guard_failures=sum(
                1 for e in events if e.get("event") == OnboardingEvent.GUARD_FAILED.value
            ),
            rollbacks=sum(1 for e in transitions if e.get("isRollback")),
            event_count=len(events),
            created_at=connection.created_at,
            completed_at=connection.onboarding_completed_at,
        )

    async def get_aggregate_metrics(self, stale_days: int | None = None) -> AggregateMetrics:
        """System-wide funnel: completion, status mix, drop-offs, step timings."""
        if stale_days is None:
            stale_days = settings.DROPOFF_STALE_DAYS
        connections = await self.connections.list_all()

        total = len(connections)
        launched_status = OnboardingState.LAUNCHED.value
        launched = sum(1 for c in connections if c.status == launched_status)
        completion_rate = round(launched / total * 100, 1) if total > 0 else 0.0

        status_breakdown: dict[str, int] = {}
        for c in connections:
            status_breakdown[c.status] = status_breakdown.get(c.status, 0) + 1

        completed = [
            c for c in connections
            if c.status == launched_status and c.onboarding_completed_at and c.created_at
        ]
        avg_completion_ms = 0.0
        if completed:
            total_ms = sum(
                (c.onboarding_completed_at - c.created_at).total_seconds() * 1000
                for c in completed
            )
            avg_completion_ms = total_ms / len(completed)

        cutoff = utcnow() - timedelta(days=stale_days)
        dropoffs = [
            c for c in connections
            if c.status not in _DROPOFF_EXCLUDED
            and c.last_activity_at is not None
            and c.last_activity_at < cutoff
        ]
        dropoff_by_step: dict[int, int] = {}
        for c in dropoffs:
            step = c.onboarding_step or 0
            dropoff_by_step[step] = dropoff_by_step.get(step, 0) + 1

        step_sums: dict[str, float] = {}
        step_counts: dict[str, int] = {}
        for c in connections:
            for step, ms in load_onboarding_meta(c.onboarding_meta).step_timings.items():
                step_sums[step] = step_sums.get(step, 0) + ms
                step_counts[step] = step_counts.get(step, 0) + 1
        avg_step_timings = {
            step: round(step_sums[step] / step_counts[step])
            for step in step_sums
            if step_counts[step]
        }

        return AggregateMetrics(
            total=total,
            launched=launched,
            completion_rate=completion_rate,
            status_breakdown=status_breakdown,
            avg_completion_ms=round(avg_completion_ms),
            avg_completion_human=format_duration(avg_completion_ms),
            dropoffs=len(dropoffs),
            dropoff_by_step=dropoff_by_step,
            avg_step_timings=avg_step_timings,
        )
