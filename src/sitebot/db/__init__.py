"""Database module: models, sessions and the narrow stores used by the core."""

from sitebot.db.database import (
    async_session_maker,
    create_db_engine,
    engine,
    get_session,
    init_db,
    ping,
)
from sitebot.db.models import (
    Base,
    ChatSession,
    ConfidencePolicy,
    Connection,
    ConnectionKnowledge,
)
from sitebot.db.stores import (
    ChatSessionStore,
    ConfidencePolicyStore,
    ConnectionStore,
    KnowledgeStore,
)

__all__ = [
    "Base",
    "ChatSession",
    "ConfidencePolicy",
    "Connection",
    "ConnectionKnowledge",
    "create_db_engine",
    "engine",
    "async_session_maker",
    "get_session",
    "init_db",
    "ping",
    "ChatSessionStore",
    "ConfidencePolicyStore",
    "ConnectionStore",
    "KnowledgeStore",
]
