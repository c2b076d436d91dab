"""FastAPI application entry point."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sitebot import __version__
from sitebot.api.chat import router as chat_router
from sitebot.api.health import router as health_router
from sitebot.api.knowledge import router as knowledge_router
from sitebot.api.onboarding import router as onboarding_router
from sitebot.config import settings

app = FastAPI(
    title=settings.APP_NAME,
    description="Website assistant backend: guided onboarding, tenant knowledge and gated chat",
    version=__version__,
)

# The chat widget is embedded on customer sites
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(onboarding_router)
app.include_router(chat_router)
app.include_router(knowledge_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic application info."""
    return {
        "name": settings.APP_NAME,
        "version": __version__,
        "docs": "/docs",
    }
