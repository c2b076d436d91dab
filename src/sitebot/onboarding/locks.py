"""Cooperative job leases on a connection.

A lease is the pair (``state_locked_by``, ``state_locked_at``) on the
connection row. Long-running jobs (discovery, extraction) take it before
they start and release it when they finish. A lease older than
``STALE_LOCK_MINUTES`` is treated as abandoned and can be taken over, so a
crashed job cannot lock a tenant out forever. A job that legitimately runs
longer than the TTL should call ``renew_lock`` periodically.
"""

import logging
from datetime import datetime, timedelta

from sitebot.config import settings
from sitebot.db.models import Connection, utcnow
from sitebot.db.stores import ConnectionStore
from sitebot.onboarding.analytics import OnboardingAnalytics
from sitebot.onboarding.models import LockResult, LockStatus, OnboardingEvent, TransitionError

logger = logging.getLogger(__name__)


class LockManager:
    """Acquire, release and inspect job leases."""

    def __init__(
        self,
        connections: ConnectionStore,
        analytics: OnboardingAnalytics | None = None,
        ttl: timedelta | None = None,
    ):
        self.connections = connections
        self.analytics = analytics
        self.ttl = ttl or timedelta(minutes=settings.STALE_LOCK_MINUTES)

    def is_stale(self, locked_at: datetime | None, now: datetime | None = None) -> bool:
        if locked_at is None:
            return True
        now = now or utcnow()
        return now - locked_at >= self.ttl

    def check_lock(self, connection: Connection, now: datetime | None = None) -> LockStatus:
        """Report whether the connection is leased and whether the lease is stale."""
        if not connection.state_locked_by:
            return LockStatus(locked=False)

        now = now or utcnow()
        locked_at = connection.state_locked_at
        age = (now - locked_at).total_seconds() if locked_at else None
        stale = self.is_stale(locked_at, now)
        if stale:
            logger.warning(
                f"LOCK_STALE: {connection.connection_id} lock by {connection.state_locked_by} "
                f"expired ({round((age or 0) / 60)}m)"
            )
        return LockStatus(
            locked=True,
            stale=stale,
            held_by=connection.state_locked_by,
            held_since=locked_at,
            age_seconds=age,
        )

    async def acquire_lock(self, connection: Connection, job_name: str) -> LockResult:
        """Take the lease for ``job_name``.

        Fails while another live lease is held. A stale lease is overridden.
        """
        status = self.check_lock(connection)
        if status.blocks:
            logger.warning(
                f"LOCK_DENIED: {connection.connection_id} already locked by {status.held_by}"
            )
            return LockResult(
                acquired=False,
                reason=f"Locked by job: {status.held_by}",
                error=TransitionError.LOCK_HELD,
            )

        now = utcnow()
        acquired = await self.connections.try_lease(
            connection, job_name, now=now, stale_before=now - self.ttl
        )
        if not acquired:
            # Someone else took it between our read and the conditional write
            logger.warning(
                f"LOCK_DENIED: {connection.connection_id} lost lease race to "
                f"{connection.state_locked_by}"
            )
            return LockResult(
                acquired=False,
                reason=f"Locked by job: {connection.state_locked_by}",
                error=TransitionError.LOCK_HELD,
            )

        if status.stale:
            logger.warning(
                f"LOCK_OVERRIDDEN: {connection.connection_id} stale lease of "
                f"{status.held_by} taken by {job_name}"
            )
        logger.info(f"LOCK_ACQUIRED: {connection.connection_id} by {job_name}")
        if self.analytics:
            await self.analytics.track_event(
                connection,
                OnboardingEvent.LOCK_ACQUIRED.value,
                {"jobName": job_name, "overrode": status.held_by if status.stale else None},
            )
        return LockResult(acquired=True)

    async def release_lock(self, connection: Connection, job_name: str | None = None) -> bool:
        """Release the lease held by ``job_name`` (defaults to the current holder)."""
        holder = job_name or connection.state_locked_by
        if not holder:
            return False

        released = await self.connections.release_lease(connection, holder)
        if released:
            logger.info(f"LOCK_RELEASED: {connection.connection_id} (was: {holder})")
            if self.analytics:
                await self.analytics.track_event(
                    connection, OnboardingEvent.LOCK_RELEASED.value, {"jobName": holder}
                )
        else:
            logger.warning(
                f"LOCK_RELEASE_SKIPPED: {connection.connection_id} not held by {holder} "
                f"(holder: {connection.state_locked_by})"
            )
        return released

    async def renew_lock(self, connection: Connection, job_name: str) -> bool:
        """Refresh the lease timestamp for a job that is still running."""
        renewed = await self.connections.renew_lease(connection, job_name, now=utcnow())
        if not renewed:
            logger.warning(f"LOCK_RENEW_FAILED: {connection.connection_id} not held by {job_name}")
        return renewed
