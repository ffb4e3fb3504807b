"""Async CRUD repository for ChainDiagnosisSession.

All public methods accept an ``AsyncSession`` so the caller controls
transaction boundaries.  Methods ``flush()`` but never ``commit()``.

The repository avoids business-logic validation (stage ordering belongs
to the SDK); structural invariants such as the step range are enforced by
DB constraints.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from radiance_db.models.chat import ChatMessage
from radiance_db.models.enums import SessionStatus
from radiance_db.models.session import ChainDiagnosisSession

# Columns callers may change through ``update_fields``.  Identity, owner
# and creation time are fixed once the row exists.
_UPDATABLE_COLUMNS = frozenset(
    column.key
    for column in ChainDiagnosisSession.__table__.columns
    if column.key not in {"id", "user_id", "created_at", "user_input"}
)


class SessionRepository:
    """Async read/write operations on the ``chain_diagnosis_sessions`` table."""

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_session(
        self,
        db: AsyncSession,
        *,
        session_pk: uuid.UUID,
        user_id: str,
        user_input: dict[str, Any],
        created_at: datetime | None = None,
    ) -> ChainDiagnosisSession:
        """Insert a new session row and return it.

        The caller must ``await db.commit()`` to persist.
        """
        now = created_at or datetime.now(timezone.utc)
        row = ChainDiagnosisSession(
            id=session_pk,
            user_id=user_id,
            user_input=user_input,
            status=SessionStatus.IN_PROGRESS.value,
            current_step=0,
            created_at=now,
            updated_at=now,
        )
        db.add(row)
        await db.flush()
        return row

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_by_id(
        self, db: AsyncSession, session_pk: uuid.UUID
    ) -> ChainDiagnosisSession | None:
        """Fetch a session by its primary-key UUID."""
        return await db.get(ChainDiagnosisSession, session_pk)

    async def list_by_user(
        self,
        db: AsyncSession,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ChainDiagnosisSession]:
        """List sessions for a user, most recent first."""
        stmt = (
            select(ChainDiagnosisSession)
            .where(ChainDiagnosisSession.user_id == user_id)
            .order_by(ChainDiagnosisSession.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update_fields(
        self,
        db: AsyncSession,
        row: ChainDiagnosisSession,
        fields: dict[str, Any],
    ) -> ChainDiagnosisSession:
        """Assign column values from *fields* and flush.

        Raises:
            ValueError: a key is not an updatable column.
        """
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {', '.join(sorted(unknown))}")
        for key, value in fields.items():
            setattr(row, key, value)
        row.updated_at = datetime.now(timezone.utc)
        await db.flush()
        return row

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_owned(
        self, db: AsyncSession, session_pk: uuid.UUID, user_id: str
    ) -> bool:
        """Delete a session and its chat history if *user_id* owns it.

        Chat rows are removed first (filtered by both session and owner),
        then the session row filtered by id and owner.  Returns ``True``
        when a session row was deleted.
        """
        await db.execute(
            delete(ChatMessage).where(
                ChatMessage.session_id == session_pk,
                ChatMessage.user_id == user_id,
            )
        )
        result = await db.execute(
            delete(ChainDiagnosisSession).where(
                ChainDiagnosisSession.id == session_pk,
                ChainDiagnosisSession.user_id == user_id,
            )
        )
        await db.flush()
        return (result.rowcount or 0) > 0
