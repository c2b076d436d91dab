"""Onboarding endpoints: status, transitions, job leases and funnel reports."""

import logging
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from sitebot.api.deps import get_connection, require_admin
from sitebot.api.schemas import (
    GuardCheckItem,
    LockRequest,
    LockResponse,
    NextStateItem,
    OnboardingStatusResponse,
    ResumeResponse,
    TransitionRequest,
    TransitionResponse,
)
from sitebot.db.database import get_session
from sitebot.db.models import Connection
from sitebot.db.schemas import load_onboarding_meta
from sitebot.db.stores import ConnectionStore
from sitebot.onboarding.analytics import OnboardingAnalytics
from sitebot.onboarding.models import (
    OnboardingState,
    TransitionError,
    get_path_for_state,
)
from sitebot.onboarding.state_machine import OnboardingStateMachine

logger = logging.getLogger(__name__)

# All onboarding routes are owner actions
router = APIRouter(
    prefix="/api/v1/onboarding",
    tags=["onboarding"],
    dependencies=[Depends(require_admin)],
)


@router.get("/analytics/overview")
async def analytics_overview(
    days: int | None = Query(default=None, ge=0, description="Drop-off threshold in days"),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """System-wide onboarding funnel."""
    metrics = await OnboardingAnalytics(ConnectionStore(session)).get_aggregate_metrics(days)
    return metrics.to_dict()


@router.get("/analytics/dropoffs")
async def analytics_dropoffs(
    days: int | None = Query(default=None, ge=0, description="Inactivity threshold in days"),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Connections stuck mid-onboarding."""
    dropoffs = await OnboardingAnalytics(ConnectionStore(session)).detect_dropoffs(days)
    return {
        "count": len(dropoffs),
        "dropoffs": [
            {**asdict(d), "last_activity": d.last_activity.isoformat()} for d in dropoffs
        ],
    }


@router.get("/{connection_id}/status", response_model=OnboardingStatusResponse)
async def onboarding_status(
    connection: Connection = Depends(get_connection),
    session: AsyncSession = Depends(get_session),
) -> OnboardingStatusResponse:
    """Current state, lease and which next moves would pass their guards."""
    machine = OnboardingStateMachine(session)
    lock = machine.locks.check_lock(connection)
    next_states = machine.get_valid_next_states(connection)

    can_proceed: dict[str, GuardCheckItem] = {}
    for next_state in next_states:
        check = await machine.can_transition(connection, next_state.state)
        can_proceed[next_state.state.value] = GuardCheckItem(allowed=check.allowed, reason=check.reason)

    return OnboardingStatusResponse(
        connection_id=connection.connection_id,
        status=connection.status,
        onboarding_step=connection.onboarding_step,
        version=connection.version,
        is_launched=connection.status == OnboardingState.LAUNCHED.value,
        is_locked=lock.blocks,
        locked_by=lock.held_by if lock.blocks else None,
        onboarding_completed_at=connection.onboarding_completed_at,
        resume_path=get_path_for_state(connection.status),
        valid_next_states=[
            NextStateItem(state=n.state.value, is_rollback=n.is_rollback) for n in next_states
        ],
        can_proceed=can_proceed,
    )


@router.post("/{connection_id}/transition", response_model=TransitionResponse)
async def onboarding_transition(
    request: TransitionRequest,
    connection: Connection = Depends(get_connection),
    session: AsyncSession = Depends(get_session),
) -> TransitionResponse:
    """
    Move a connection to another onboarding state.

    Refusals map to HTTP status codes: 409 version conflict, 400 invalid
    transition, 422 guard failure, 423 launched or leased.
    """
    machine = OnboardingStateMachine(session)
    result = await machine.transition(
        connection, request.target_state, request.version,
        meta=request.meta, job_name=request.job_name,
    )
    if not result.success:
        raise HTTPException(
            status_code=result.status_code,
            detail={
                "error": result.error.value if result.error else None,
                "message": result.reason,
                "version": result.version,
            },
        )

    return TransitionResponse(
        previous_state=result.previous_state.value,
        new_state=result.new_state.value,
        step=result.step,
        version=result.version,
        duration_ms=result.duration_ms,
        resume_path=get_path_for_state(result.new_state),
    )


@router.get("/{connection_id}/resume", response_model=ResumeResponse)
async def onboarding_resume(connection: Connection = Depends(get_connection)) -> ResumeResponse:
    """Where the setup wizard should send a returning user."""
    return ResumeResponse(
        connection_id=connection.connection_id,
        status=connection.status,
        step=connection.onboarding_step,
        resume_path=get_path_for_state(connection.status),
        is_complete=connection.status == OnboardingState.LAUNCHED.value,
    )


@router.get("/{connection_id}/analytics")
async def onboarding_analytics(
    connection_id: str,
    limit: int = Query(default=50, ge=1, le=200, description="Most recent events to return"),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Activation report plus the most recent events for one connection."""
    store = ConnectionStore(session)
    report = await OnboardingAnalytics(store).get_activation_report(connection_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Connection not found")

    connection = await store.get(connection_id)
    events = load_onboarding_meta(connection.onboarding_meta).events
    return {"report": asdict(report), "events": events[-limit:]}


@router.post("/{connection_id}/lock", response_model=LockResponse)
async def acquire_job_lock(
    request: LockRequest,
    connection: Connection = Depends(get_connection),
    session: AsyncSession = Depends(get_session),
) -> LockResponse:
    """Take the job lease before starting discovery or extraction work."""
    machine = OnboardingStateMachine(session)
    result = await machine.locks.acquire_lock(connection, request.job_name)
    if not result.acquired:
        raise HTTPException(
            status_code=423,
            detail={"error": TransitionError.LOCK_HELD.value, "message": result.reason},
        )
    return LockResponse(
        acquired=True,
        locked_by=connection.state_locked_by,
        locked_at=connection.state_locked_at,
    )


@router.post("/{connection_id}/lock/renew", response_model=LockResponse)
async def renew_job_lock(
    request: LockRequest,
    connection: Connection = Depends(get_connection),
    session: AsyncSession = Depends(get_session),
) -> LockResponse:
    """Heartbeat for a job that runs longer than the lease TTL."""
    machine = OnboardingStateMachine(session)
    if not await machine.locks.renew_lock(connection, request.job_name):
        raise HTTPException(status_code=409, detail=f"Lease not held by {request.job_name}")
    return LockResponse(
        acquired=True,
        locked_by=connection.state_locked_by,
        locked_at=connection.state_locked_at,
    )


@router.delete("/{connection_id}/lock", response_model=LockResponse)
async def release_job_lock(
    job_name: str = Query(..., min_length=1),
    connection: Connection = Depends(get_connection),
    session: AsyncSession = Depends(get_session),
) -> LockResponse:
    """Release the job lease. Only the current holder can release it."""
    machine = OnboardingStateMachine(session)
    if not await machine.locks.release_lock(connection, job_name):
        raise HTTPException(status_code=409, detail=f"Lease not held by {job_name}")
    return LockResponse(acquired=False)
