"""radiance_db — PostgreSQL persistence layer for chain-diagnosis sessions.

This package provides the ORM models, async engine factory, and repository
for creating, updating, listing and deleting diagnosis sessions.  It is
consumed by the SDK's ``DatabaseSessionStore`` and the FastAPI server.
"""

from radiance_db.engine import get_engine, get_session_factory
from radiance_db.models.chat import ChatMessage
from radiance_db.models.enums import SessionStatus
from radiance_db.models.session import ChainDiagnosisSession
from radiance_db.repository import SessionRepository

__all__ = [
    "ChainDiagnosisSession",
    "ChatMessage",
    "SessionStatus",
    "get_engine",
    "get_session_factory",
    "SessionRepository",
]
