"""Tests for cooperative job leases."""

from datetime import timedelta

import pytest

from sitebot.db.models import utcnow
from sitebot.db.schemas import load_onboarding_meta
from sitebot.db.stores import ConnectionStore
from sitebot.onboarding import LockManager, OnboardingAnalytics, TransitionError


@pytest.fixture
def locks(test_db_session):
    store = ConnectionStore(test_db_session)
    return LockManager(store, OnboardingAnalytics(store))


class TestStaleness:
    def test_missing_timestamp_is_stale(self, locks):
        assert locks.is_stale(None)

    def test_ttl_boundary(self, locks):
        now = utcnow()
        assert not locks.is_stale(now - timedelta(minutes=14, seconds=59), now)
        assert locks.is_stale(now - timedelta(minutes=15), now)

    @pytest.mark.asyncio
    async def test_check_lock_reports_holder(self, locks, make_connection):
        conn = await make_connection(
            state_locked_by="discovery-job", state_locked_at=utcnow() - timedelta(minutes=10)
        )

        status = locks.check_lock(conn)

        assert status.locked
        assert not status.stale
        assert status.blocks
        assert status.held_by == "discovery-job"
        assert status.age_seconds >= 600

    @pytest.mark.asyncio
    async def test_unlocked(self, locks, make_connection):
        conn = await make_connection()

        status = locks.check_lock(conn)

        assert not status.locked
        assert not status.blocks


class TestAcquire:
    @pytest.mark.asyncio
    async def test_acquire_free_lease(self, locks, make_connection):
        conn = await make_connection()

        result = await locks.acquire_lock(conn, "discovery-job")

        assert result.acquired
        assert conn.state_locked_by == "discovery-job"
        assert conn.state_locked_at is not None
        assert load_onboarding_meta(conn.onboarding_meta).events[-1]["event"] == "LOCK_ACQUIRED"

    @pytest.mark.asyncio
    async def test_ten_minute_old_lease_blocks(self, locks, make_connection):
        conn = await make_connection(
            state_locked_by="discovery-job", state_locked_at=utcnow() - timedelta(minutes=10)
        )

        result = await locks.acquire_lock(conn, "extract-job")

        assert not result.acquired
        assert result.error == TransitionError.LOCK_HELD
        assert conn.state_locked_by == "discovery-job"

    @pytest.mark.asyncio
    async def test_sixteen_minute_old_lease_is_overridden(self, locks, make_connection):
        conn = await make_connection(
            state_locked_by="crashed-job", state_locked_at=utcnow() - timedelta(minutes=16)
        )

        result = await locks.acquire_lock(conn, "extract-job")

        assert result.acquired
        assert conn.state_locked_by == "extract-job"
        event = load_onboarding_meta(conn.onboarding_meta).events[-1]
        assert event["overrode"] == "crashed-job"

    @pytest.mark.asyncio
    async def test_same_job_cannot_reacquire_live_lease(self, locks, make_connection):
        conn = await make_connection()
        await locks.acquire_lock(conn, "discovery-job")

        result = await locks.acquire_lock(conn, "discovery-job")

        assert not result.acquired


class TestReleaseAndRenew:
    @pytest.mark.asyncio
    async def test_holder_releases(self, locks, make_connection):
        conn = await make_connection()
        await locks.acquire_lock(conn, "discovery-job")

        assert await locks.release_lock(conn, "discovery-job")
        assert conn.state_locked_by is None
        assert conn.state_locked_at is None

    @pytest.mark.asyncio
    async def test_non_holder_cannot_release(self, locks, make_connection):
        conn = await make_connection()
        await locks.acquire_lock(conn, "discovery-job")

        assert not await locks.release_lock(conn, "extract-job")
        assert conn.state_locked_by == "discovery-job"

    @pytest.mark.asyncio
    async def test_release_defaults_to_current_holder(self, locks, make_connection):
        conn = await make_connection()
        await locks.acquire_lock(conn, "discovery-job")

        assert await locks.release_lock(conn)
        assert conn.state_locked_by is None

    @pytest.mark.asyncio
    async def test_release_without_lease(self, locks, make_connection):
        conn = await make_connection()

        assert not await locks.release_lock(conn)

    @pytest.mark.asyncio
    async def test_renew_refreshes_timestamp(self, locks, make_connection):
        old = utcnow() - timedelta(minutes=12)
        conn = await make_connection(state_locked_by="discovery-job", state_locked_at=old)

        assert await locks.renew_lock(conn, "discovery-job")
        assert conn.state_locked_at > old
        assert not locks.check_lock(conn).stale

    @pytest.mark.asyncio
    async def test_renew_by_non_holder_fails(self, locks, make_connection):
        old = utcnow() - timedelta(minutes=12)
        conn = await make_connection(state_locked_by="discovery-job", state_locked_at=old)

        assert not await locks.renew_lock(conn, "extract-job")
        assert conn.state_locked_at == old
