"""Tests for the onboarding state machine."""

import json
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from sitebot.db.models import Base, Connection, utcnow
from sitebot.db.schemas import load_onboarding_meta
from sitebot.db.stores import ConnectionStore
from sitebot.onboarding import OnboardingState, OnboardingStateMachine, TransitionError


def last_event(connection: Connection) -> dict:
    return load_onboarding_meta(connection.onboarding_meta).events[-1]


@pytest.fixture
def machine(test_db_session):
    return OnboardingStateMachine(test_db_session)


class TestForwardPath:
    """Walking the six steps in order."""

    @pytest.mark.asyncio
    async def test_full_walk_to_launch(self, machine, make_connection, add_chunk, add_chat_session):
        conn = await make_connection(
            website_url="https://acme.test",
            website_name="Acme",
            behavior_profile={"tone": "Friendly"},
            health_score=90,
        )
        await add_chunk(conn.connection_id, "Pricing starts at 49 dollars")
        await add_chat_session(conn.connection_id)

        path = [
            OnboardingState.CONNECTED,
            OnboardingState.DISCOVERING,
            OnboardingState.TRAINED,
            OnboardingState.TUNED,
            OnboardingState.READY,
            OnboardingState.LAUNCHED,
        ]
        for expected_version, target in enumerate(path):
            result = await machine.transition(conn, target, expected_version)
            assert result.success, result.reason
            assert result.version == expected_version + 1
            assert conn.status == target.value

        assert conn.onboarding_step == 6
        assert conn.version == 6
        assert conn.onboarding_completed_at is not None

    @pytest.mark.asyncio
    async def test_success_bumps_version_and_step(self, machine, make_connection):
        conn = await make_connection(website_url="https://acme.test")

        result = await machine.transition(conn, "CONNECTED", 0)

        assert result.success
        assert result.previous_state == OnboardingState.DRAFT
        assert result.new_state == OnboardingState.CONNECTED
        assert result.step == 2
        assert result.version == 1
        assert result.status_code == 200
        assert conn.last_activity_at is not None

    @pytest.mark.asyncio
    async def test_success_records_transition_event(self, machine, make_connection):
        conn = await make_connection(website_url="https://acme.test")

        await machine.transition(conn, "CONNECTED", 0)

        event = last_event(conn)
        assert event["event"] == "TRANSITION"
        assert event["from"] == "DRAFT"
        assert event["to"] == "CONNECTED"
        assert event["isRollback"] is False
        assert event["at"].endswith("Z")

    @pytest.mark.asyncio
    async def test_success_records_timing_for_left_step(self, machine, make_connection):
        conn = await make_connection(website_url="https://acme.test")

        await machine.transition(conn, "CONNECTED", 0)

        meta = load_onboarding_meta(conn.onboarding_meta)
        assert "1" in meta.step_timings
        assert meta.step_timings["1"] >= 0


class TestRefusals:
    """Each refusal leaves the connection untouched apart from its event log."""

    @pytest.mark.asyncio
    async def test_empty_website_url_fails_guard(self, machine, make_connection):
        conn = await make_connection(website_url="")

        result = await machine.transition(conn, OnboardingState.CONNECTED, 0)

        assert not result.success
        assert result.error == TransitionError.GUARD_FAILED
        assert result.reason == "Website URL is required before proceeding."
        assert result.status_code == 422
        assert conn.status == "DRAFT"
        assert conn.version == 0
        assert last_event(conn)["event"] == "GUARD_FAILED"

    @pytest.mark.asyncio
    async def test_discovering_without_ready_chunks(self, machine, make_connection, add_chunk):
        conn = await make_connection(
            website_url="https://acme.test", status="DISCOVERING", onboarding_step=3, version=2
        )
        await add_chunk(conn.connection_id, "Still crawling", status="PENDING")

        result = await machine.transition(conn, OnboardingState.TRAINED, 2)

        assert result.error == TransitionError.GUARD_FAILED
        assert result.reason == "At least 1 knowledge chunk must be extracted."

        await add_chunk(conn.connection_id, "Extracted page text", source="https://acme.test/about")
        result = await machine.transition(conn, OnboardingState.TRAINED, 2)

        assert result.success
        assert result.step == 4
        assert conn.version == 3

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, machine, make_connection):
        conn = await make_connection(website_url="https://acme.test", version=4)

        result = await machine.transition(conn, "CONNECTED", 3)

        assert result.error == TransitionError.VERSION_CONFLICT
        assert result.status_code == 409
        assert "Expected v3" in result.reason
        assert conn.version == 4
        assert last_event(conn)["event"] == "VERSION_CONFLICT"

    @pytest.mark.asyncio
    async def test_skipping_a_step_is_invalid(self, machine, make_connection):
        conn = await make_connection(website_url="https://acme.test")

        result = await machine.transition(conn, OnboardingState.TRAINED, 0)

        assert result.error == TransitionError.INVALID_TRANSITION
        assert result.status_code == 400
        assert conn.status == "DRAFT"

    @pytest.mark.asyncio
    async def test_unknown_target_is_invalid(self, machine, make_connection):
        conn = await make_connection(website_url="https://acme.test")

        result = await machine.transition(conn, "ARCHIVED", 0)

        assert result.error == TransitionError.INVALID_TRANSITION

    @pytest.mark.asyncio
    async def test_launched_is_terminal(self, machine, make_connection):
        conn = await make_connection(status="LAUNCHED", onboarding_step=6, version=6)

        for target in ("READY", "DRAFT", "LAUNCHED"):
            result = await machine.transition(conn, target, 6)
            assert result.error == TransitionError.ALREADY_LAUNCHED
            assert result.status_code == 423

        assert conn.status == "LAUNCHED"
        assert conn.version == 6
        assert last_event(conn)["event"] == "BLOCKED_LAUNCHED"

    @pytest.mark.asyncio
    async def test_launched_checked_before_version(self, machine, make_connection):
        conn = await make_connection(status="LAUNCHED", onboarding_step=6, version=6)

        result = await machine.transition(conn, "READY", 0)

        assert result.error == TransitionError.ALREADY_LAUNCHED

    @pytest.mark.asyncio
    async def test_low_health_score_blocks_launch(self, machine, make_connection):
        conn = await make_connection(status="READY", onboarding_step=6, version=5, health_score=79)

        result = await machine.transition(conn, "LAUNCHED", 5)

        assert result.error == TransitionError.GUARD_FAILED
        assert result.reason == "Health score must be ≥ 80%. Current: 79%"

    @pytest.mark.asyncio
    async def test_malformed_behavior_profile_fails_guard(self, machine, make_connection):
        conn = await make_connection(
            status="TRAINED", onboarding_step=4, version=3, behavior_profile="{not json"
        )

        result = await machine.transition(conn, "TUNED", 3)

        assert result.error == TransitionError.GUARD_FAILED
        assert "malformed" in result.reason

    @pytest.mark.asyncio
    async def test_empty_behavior_profile_fails_guard(self, machine, make_connection):
        conn = await make_connection(
            status="TRAINED", onboarding_step=4, version=3, behavior_profile={"tone": "  "}
        )

        result = await machine.transition(conn, "TUNED", 3)

        assert result.reason == "Behavior settings must be configured."

    @pytest.mark.asyncio
    async def test_lost_race_reports_conflict(self, machine, make_connection, test_db_session):
        conn = await make_connection(website_url="https://acme.test")
        # Another writer bumps the row behind this snapshot's back
        await test_db_session.execute(
            update(Connection)
            .where(Connection.connection_id == conn.connection_id)
            .values(version=1)
            .execution_options(synchronize_session=False)
        )
        await test_db_session.commit()

        result = await machine.transition(conn, "CONNECTED", 0)

        assert result.error == TransitionError.VERSION_CONFLICT
        assert conn.version == 1
        assert conn.status == "DRAFT"


class TestRollbacks:
    @pytest.mark.asyncio
    async def test_rollback_moves_back_one_step(self, machine, make_connection):
        conn = await make_connection(status="TRAINED", onboarding_step=4, version=3)

        result = await machine.transition(conn, "DISCOVERING", 3)

        assert result.success
        assert result.step == 3
        assert result.version == 4
        assert last_event(conn)["isRollback"] is True

    @pytest.mark.asyncio
    async def test_rollback_ignores_and_keeps_lease(self, machine, make_connection):
        conn = await make_connection(
            status="TRAINED",
            onboarding_step=4,
            version=3,
            state_locked_by="extract-job",
            state_locked_at=utcnow(),
        )

        result = await machine.transition(conn, "DISCOVERING", 3)

        assert result.success
        assert conn.state_locked_by == "extract-job"

    @pytest.mark.asyncio
    async def test_rollback_from_connected_is_invalid(self, machine, make_connection):
        conn = await make_connection(status="CONNECTED", onboarding_step=2, version=1)

        result = await machine.transition(conn, "DRAFT", 1)

        assert result.error == TransitionError.INVALID_TRANSITION


class TestLeases:
    """Forward moves respect the job lease."""

    @pytest.mark.asyncio
    async def test_live_lease_blocks_forward(self, machine, make_connection, add_chunk):
        conn = await make_connection(
            status="DISCOVERING",
            onboarding_step=3,
            version=2,
            state_locked_by="discovery-job",
            state_locked_at=utcnow() - timedelta(minutes=5),
        )
        await add_chunk(conn.connection_id, "About us page")

        result = await machine.transition(conn, "TRAINED", 2)

        assert result.error == TransitionError.LOCK_HELD
        assert result.status_code == 423
        assert "discovery-job" in result.reason
        assert last_event(conn)["event"] == "LOCK_BLOCKED"

    @pytest.mark.asyncio
    async def test_holder_may_move_and_lease_is_cleared(self, machine, make_connection, add_chunk):
        conn = await make_connection(
            status="DISCOVERING",
            onboarding_step=3,
            version=2,
            state_locked_by="discovery-job",
            state_locked_at=utcnow(),
        )
        await add_chunk(conn.connection_id, "About us page")

        result = await machine.transition(conn, "TRAINED", 2, job_name="discovery-job")

        assert result.success
        assert conn.state_locked_by is None
        assert conn.state_locked_at is None

    @pytest.mark.asyncio
    async def test_stale_lease_does_not_block(self, machine, make_connection, add_chunk):
        conn = await make_connection(
            status="DISCOVERING",
            onboarding_step=3,
            version=2,
            state_locked_by="crashed-job",
            state_locked_at=utcnow() - timedelta(minutes=20),
        )
        await add_chunk(conn.connection_id, "About us page")

        result = await machine.transition(conn, "TRAINED", 2)

        assert result.success


class TestMeta:
    @pytest.mark.asyncio
    async def test_meta_is_merged(self, machine, make_connection):
        conn = await make_connection(
            website_url="https://acme.test", onboarding_meta={"referrer": "ads"}
        )

        await machine.transition(conn, "CONNECTED", 0, meta={"source": "wizard"})

        meta = load_onboarding_meta(conn.onboarding_meta).model_dump(by_alias=True)
        assert meta["referrer"] == "ads"
        assert meta["source"] == "wizard"

    @pytest.mark.asyncio
    async def test_meta_cannot_overwrite_event_log(self, machine, make_connection):
        conn = await make_connection(website_url="https://acme.test")

        await machine.transition(conn, "CONNECTED", 0, meta={"events": "wiped", "stepTimings": {}})

        meta = load_onboarding_meta(conn.onboarding_meta)
        assert isinstance(meta.events, list)
        assert meta.events[-1]["event"] == "TRANSITION"
        assert "1" in meta.step_timings

    @pytest.mark.asyncio
    async def test_meta_keys_named_like_model_methods(self, machine, make_connection):
        conn = await make_connection(website_url="https://acme.test")

        result = await machine.transition(
            conn, "CONNECTED", 0, meta={"to_json": "x", "copy": "v1", "source": "wizard"}
        )

        assert result.success, result.reason
        stored = json.loads(conn.onboarding_meta)
        assert stored["to_json"] == "x"
        assert stored["copy"] == "v1"
        assert stored["source"] == "wizard"
        assert stored["events"][-1]["event"] == "TRANSITION"


@pytest_asyncio.fixture
async def shared_db(tmp_path):
    """File-backed database so two sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'onboarding.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


class TestConcurrentSessions:
    @pytest.mark.asyncio
    async def test_refusal_keeps_events_from_concurrent_transition(self, shared_db):
        async with shared_db() as setup:
            setup.add(Connection(
                connection_id="c1", website_url="https://acme.test",
                status="CONNECTED", onboarding_step=2,
            ))
            await setup.commit()

        async with shared_db() as session_a, shared_db() as session_b:
            stale = await ConnectionStore(session_b).get("c1")

            fresh = await ConnectionStore(session_a).get("c1")
            await ConnectionStore(session_a).compare_and_set(fresh, 0, {"website_name": "Acme"})
            moved = await OnboardingStateMachine(session_a).transition(fresh, "DISCOVERING", 1)
            assert moved.success, moved.reason

            # session B still sees no website name, so its guard fails
            refused = await OnboardingStateMachine(session_b).transition(stale, "DISCOVERING", 0)
            assert refused.error == TransitionError.GUARD_FAILED

        async with shared_db() as check:
            conn = await ConnectionStore(check).get("c1")
            meta = load_onboarding_meta(conn.onboarding_meta)
            assert conn.status == "DISCOVERING"
            assert [e["event"] for e in meta.events] == ["TRANSITION", "GUARD_FAILED"]
            assert "2" in meta.step_timings


class TestQueries:
    """Side-effect-free inspection."""

    @pytest.mark.asyncio
    async def test_can_transition_is_idempotent(self, machine, make_connection):
        conn = await make_connection(website_url="")
        meta_before = conn.onboarding_meta

        first = await machine.can_transition(conn, "CONNECTED")
        second = await machine.can_transition(conn, "CONNECTED")

        assert first == second
        assert not first.allowed
        assert conn.version == 0
        assert conn.onboarding_meta == meta_before

    @pytest.mark.asyncio
    async def test_can_transition_rejects_undefined_pair(self, machine, make_connection):
        conn = await make_connection(website_url="https://acme.test")

        check = await machine.can_transition(conn, "READY")

        assert not check.allowed
        assert "not defined" in check.reason

    @pytest.mark.asyncio
    async def test_valid_next_states(self, machine, make_connection):
        conn = await make_connection(status="DISCOVERING", onboarding_step=3)

        next_states = machine.get_valid_next_states(conn)

        assert [(n.state, n.is_rollback) for n in next_states] == [
            (OnboardingState.TRAINED, False),
            (OnboardingState.CONNECTED, True),
        ]

    @pytest.mark.asyncio
    async def test_no_next_states_after_launch(self, machine, make_connection):
        conn = await make_connection(status="LAUNCHED", onboarding_step=6)

        assert machine.get_valid_next_states(conn) == []
