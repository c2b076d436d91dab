"""Shared FastAPI dependencies."""

import logging
import secrets
import time
from collections.abc import AsyncIterator, Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from sitebot.config import settings
from sitebot.db.database import get_session
from sitebot.db.models import Connection
from sitebot.db.stores import ConnectionStore
from sitebot.llm.base import BaseLLM
from sitebot.llm.exceptions import LLMProviderNotConfiguredError
from sitebot.llm.factory import get_llm
from sitebot.onboarding.analytics import OnboardingAnalytics
from sitebot.onboarding.locks import LockManager
from sitebot.onboarding.models import TransitionError

logger = logging.getLogger(__name__)

_basic = HTTPBasic()


def require_admin(credentials: HTTPBasicCredentials = Depends(_basic)) -> str:
    """HTTP Basic check against the configured admin credentials."""
    user_ok = secrets.compare_digest(credentials.username.encode(), settings.ADMIN_USERNAME.encode())
    pass_ok = secrets.compare_digest(credentials.password.encode(), settings.ADMIN_PASSWORD.encode())
    if not (user_ok and pass_ok):
        logger.warning(f"Rejected admin credentials for user '{credentials.username}'")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


async def get_connection(
    connection_id: str,
    session: AsyncSession = Depends(get_session),
) -> Connection:
    connection = await ConnectionStore(session).get(connection_id)
    if connection is None:
        raise HTTPException(status_code=404, detail="Connection not found")
    return connection


async def get_chat_llm() -> BaseLLM:
    try:
        return await get_llm()
    except LLMProviderNotConfiguredError as e:
        logger.error(f"No LLM available for chat: {e}")
        raise HTTPException(status_code=503, detail="AI provider unavailable") from e


def job_lock(prefix: str) -> Callable[..., AsyncIterator[str]]:
    """Dependency factory holding the connection's job lease for one request.

    The lease is named ``{prefix}:{epoch_ms}`` and released when the
    request finishes. A live lease held by another job yields 423.

    Usage:
        @router.post("/{connection_id}/knowledge")
        async def ingest(job_name: str = Depends(job_lock("ingest"))):
            ...
    """

    async def _hold_lease(
        connection_id: str,
        session: AsyncSession = Depends(get_session),
    ) -> AsyncIterator[str]:
        store = ConnectionStore(session)
        connection = await store.get(connection_id)
        if connection is None:
            raise HTTPException(status_code=404, detail="Connection not found")

        locks = LockManager(store, OnboardingAnalytics(store))
        job_name = f"{prefix}:{int(time.time() * 1000)}"
        result = await locks.acquire_lock(connection, job_name)
        if not result.acquired:
            logger.warning(f"JOB_LOCK blocked for {connection_id}: {result.reason}")
            raise HTTPException(
                status_code=423,
                detail={"error": TransitionError.LOCK_HELD.value, "message": result.reason},
            )

        try:
            yield job_name
        finally:
            await locks.release_lock(connection, job_name)

    return _hold_lease
