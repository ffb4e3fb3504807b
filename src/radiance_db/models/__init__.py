"""ORM models for radiance_db."""

from radiance_db.models.base import Base
from radiance_db.models.chat import ChatMessage
from radiance_db.models.enums import ChatRole, SessionStatus
from radiance_db.models.session import STAGE_COLUMNS, ChainDiagnosisSession

__all__ = [
    "Base",
    "ChatMessage",
    "ChatRole",
    "SessionStatus",
    "STAGE_COLUMNS",
    "ChainDiagnosisSession",
]
