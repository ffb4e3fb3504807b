"""Session store implementations — persisted and in-memory.

Both implement :class:`~radiance_pipeline.interfaces.SessionStore`, so the
pipeline's transition logic exists once and is parameterised over storage:

  - :class:`DatabaseSessionStore` — PostgreSQL via ``radiance_db``; one
    transaction per call.
  - :class:`InMemorySessionStore` — process-local dict; used for
    ``SERVER_STORAGE=memory`` deployments and as the ephemeral fallback
    when the database is unavailable.

Update ``fields`` use :class:`DiagnosisSession` attribute names
(``current_step``, ``status``, ``<stage>_response``, ``raw_responses``,
``error_message``).  ``durable`` and ``warnings`` describe the in-process
copy and are never persisted.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from radiance_db.engine import session_scope
from radiance_db.models.enums import SessionStatus
from radiance_db.models.session import STAGE_COLUMNS, ChainDiagnosisSession
from radiance_db.repository import SessionRepository

from radiance_pipeline.errors import PersistenceError, SessionNotFoundError
from radiance_pipeline.interfaces import SessionStore
from radiance_pipeline.models.input import PipelineUserInput
from radiance_pipeline.models.session import DiagnosisSession

logger = logging.getLogger(__name__)

# Fields that describe the in-process copy only
_TRANSIENT_FIELDS = frozenset({"durable", "warnings"})

# Errors that mean "the database is unavailable or rejected the write"
_STORE_ERRORS = (SQLAlchemyError, OSError)


def _apply(session: DiagnosisSession, fields: dict[str, Any]) -> DiagnosisSession:
    """Return a copy of *session* with *fields* applied and re-validated."""
    data = session.model_dump()
    data.update(fields)
    data["updated_at"] = datetime.now(timezone.utc)
    return DiagnosisSession.model_validate(data)


# ======================================================================
# In-memory
# ======================================================================


class InMemorySessionStore(SessionStore):
    """Process-local store.  Returned sessions are copies, never live objects."""

    def __init__(self) -> None:
        self._sessions: dict[str, DiagnosisSession] = {}
        # session_id -> chat messages; only the delete cascade touches it
        self.chat_history: dict[str, list[dict[str, Any]]] = {}

    async def create(self, session: DiagnosisSession) -> DiagnosisSession:
        self._sessions[session.id] = session.model_copy(deep=True)
        return session.model_copy(deep=True)

    async def get(self, session_id: str) -> DiagnosisSession | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session is not None else None

    async def list_by_user(self, user_id: str) -> list[DiagnosisSession]:
        owned = [s for s in self._sessions.values() if s.user_id == user_id]
        owned.sort(key=lambda s: s.created_at, reverse=True)
        return [s.model_copy(deep=True) for s in owned]

    async def update(self, session_id: str, fields: dict[str, Any]) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: session_id={session_id}")
        self._sessions[session_id] = _apply(session, fields)

    async def delete(self, session_id: str, user_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None or session.user_id != user_id:
            return False
        self.chat_history.pop(session_id, None)
        del self._sessions[session_id]
        return True

    def put(self, session: DiagnosisSession) -> None:
        """Insert or replace *session* wholesale (ephemeral fallback path)."""
        self._sessions[session.id] = session.model_copy(deep=True)


# ======================================================================
# PostgreSQL
# ======================================================================


def _parse_pk(session_id: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(session_id))
    except ValueError:
        return None


def row_to_session(row: ChainDiagnosisSession) -> DiagnosisSession:
    """Map an ORM row (or a stand-in with the same attributes) to the SDK model."""
    data: dict[str, Any] = {
        "id": str(row.id),
        "user_id": row.user_id,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
        "status": SessionStatus(row.status),
        "current_step": row.current_step,
        "user_input": PipelineUserInput.model_validate(row.user_input),
        "error_message": row.error_message,
        "raw_responses": {},
    }
    for stage in STAGE_COLUMNS:
        data[f"{stage}_response"] = getattr(row, f"{stage}_response")
        raw = getattr(row, f"raw_{stage}_response")
        if raw is not None:
            data["raw_responses"][stage] = raw
    return DiagnosisSession.model_validate(data)


def fields_to_columns(fields: dict[str, Any]) -> dict[str, Any]:
    """Translate SDK update fields into ``chain_diagnosis_sessions`` columns."""
    columns: dict[str, Any] = {}
    for key, value in fields.items():
        if key in _TRANSIENT_FIELDS:
            continue
        if key == "raw_responses":
            for stage, raw in (value or {}).items():
                columns[f"raw_{stage}_response"] = raw
        elif key == "status":
            columns["status"] = SessionStatus(value).value
        else:
            columns[key] = value
    return columns


class DatabaseSessionStore(SessionStore):
    """Persisted store backed by ``radiance_db``.

    Args:
        session_factory: async session factory; defaults to the process-wide
            one from :func:`radiance_db.engine.get_session_factory`.
        repository: repository instance (tests substitute an in-memory one).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        repository: SessionRepository | None = None,
    ) -> None:
        self._factory = session_factory
        self._repo = repository or SessionRepository()

    async def create(self, session: DiagnosisSession) -> DiagnosisSession:
        try:
            async with session_scope(self._factory) as db:
                row = await self._repo.create_session(
                    db,
                    session_pk=uuid.UUID(session.id),
                    user_id=session.user_id,
                    user_input=session.user_input.model_dump(mode="json"),
                    created_at=session.created_at,
                )
                return row_to_session(row)
        except _STORE_ERRORS as exc:
            raise PersistenceError(f"create failed: {exc}") from exc

    async def get(self, session_id: str) -> DiagnosisSession | None:
        pk = _parse_pk(session_id)
        if pk is None:
            return None
        try:
            async with session_scope(self._factory) as db:
                row = await self._repo.get_by_id(db, pk)
                return row_to_session(row) if row is not None else None
        except _STORE_ERRORS as exc:
            raise PersistenceError(f"get failed: {exc}") from exc

    async def list_by_user(self, user_id: str) -> list[DiagnosisSession]:
        try:
            async with session_scope(self._factory) as db:
                rows = await self._repo.list_by_user(db, user_id)
                return [row_to_session(row) for row in rows]
        except Exception:
            # History degrades to empty rather than failing the caller
            logger.exception("Listing sessions for user %s failed", user_id)
            return []

    async def update(self, session_id: str, fields: dict[str, Any]) -> None:
        pk = _parse_pk(session_id)
        if pk is None:
            raise SessionNotFoundError(f"Session not found: session_id={session_id}")
        columns = fields_to_columns(fields)
        try:
            async with session_scope(self._factory) as db:
                row = await self._repo.get_by_id(db, pk)
                if row is None:
                    raise SessionNotFoundError(
                        f"Session not found: session_id={session_id}"
                    )
                await self._repo.update_fields(db, row, columns)
        except _STORE_ERRORS as exc:
            raise PersistenceError(f"update failed: {exc}") from exc

    async def delete(self, session_id: str, user_id: str) -> bool:
        pk = _parse_pk(session_id)
        if pk is None:
            return False
        try:
            async with session_scope(self._factory) as db:
                return await self._repo.delete_owned(db, pk, user_id)
        except _STORE_ERRORS:
            logger.exception("Deleting session %s failed", session_id)
            return False
