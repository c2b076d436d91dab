"""Health check endpoints."""

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from sitebot.db.database import get_session, ping
from sitebot.llm.exceptions import LLMProviderNotConfiguredError
from sitebot.llm.factory import get_llm

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, str]:
    """Basic health check - returns ok if the service is running."""
    return {"status": "ok"}


@router.get("/health/ready")
async def ready(session: AsyncSession = Depends(get_session)) -> dict[str, Any]:
    """
    Readiness check - verifies dependent services are available.

    Checks:
    - Database: tenant and knowledge store
    - LLM: configured chat provider
    """
    services: dict[str, str] = {}
    all_ok = True

    try:
        await ping(session)
        services["database"] = "ok"
    except Exception as e:
        services["database"] = f"error: {type(e).__name__}"
        all_ok = False

    try:
        llm = await get_llm()
        if await llm.check_health():
            services["llm"] = f"ok ({llm.provider_name})"
        else:
            services["llm"] = f"error: {llm.provider_name} not healthy"
            all_ok = False
    except LLMProviderNotConfiguredError:
        # Onboarding still works without a chat provider
        services["llm"] = "warning: no provider configured"
    except Exception as e:
        services["llm"] = f"error: {type(e).__name__}"
        all_ok = False

    status = "ready" if all_ok else "degraded"
    return {"status": status, "services": services}
