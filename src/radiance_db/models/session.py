"""ChainDiagnosisSession ORM model — single row per diagnosis run.

One JSONB column per stage response avoids JOINs: the SDK fetches a single
row and has everything it needs to resume the chain.  The unparsed model
text of each stage is kept alongside in ``raw_*`` text columns for audit.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Index, SmallInteger, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from radiance_db.models.base import Base
from radiance_db.models.enums import SessionStatus

# Stage keys in pipeline order; each maps to ``<stage>_response`` and
# ``raw_<stage>_response`` columns below.
STAGE_COLUMNS: tuple[str, ...] = (
    "medical_analyst",
    "general_physician",
    "specialist_doctor",
    "pathologist",
    "nutritionist",
    "pharmacist",
    "follow_up_specialist",
    "summarizer",
)


class ChainDiagnosisSession(Base):
    """One row per chain-diagnosis session, owned by ``user_id``."""

    __tablename__ = "chain_diagnosis_sessions"

    # --- Primary key ---
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # --- Identity ---
    # Opaque id from the auth provider
    user_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    # --- Lifecycle ---
    status: Mapped[SessionStatus] = mapped_column(
        # Store as the lowercase string value, not the Python name
        String(20),
        nullable=False,
        default=SessionStatus.IN_PROGRESS,
        server_default=text("'in_progress'"),
    )
    # Index of the next stage to run; 8 means the chain is done
    current_step: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=0, server_default=text("0"),
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Canonical input (immutable once the session starts) ---
    user_input: Mapped[dict] = mapped_column(JSONB, nullable=False)

    # --- Stage responses ---
    medical_analyst_response: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    general_physician_response: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    specialist_doctor_response: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    pathologist_response: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    nutritionist_response: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    pharmacist_response: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    follow_up_specialist_response: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    summarizer_response: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    # --- Raw model output per stage ---
    raw_medical_analyst_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_general_physician_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_specialist_doctor_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_pathologist_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_nutritionist_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_pharmacist_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_follow_up_specialist_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_summarizer_response: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # --- Table-level constraints ---
    __table_args__ = (
        CheckConstraint(
            "current_step BETWEEN 0 AND 8",
            name="ck_current_step_range",
        ),
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'error')",
            name="ck_status_values",
        ),
        # Completed sessions have run every stage
        CheckConstraint(
            "status != 'completed' OR current_step = 8",
            name="ck_completed_at_final_step",
        ),
        # --- Indexes ---
        Index("ix_chain_sessions_created_at", "created_at"),
        Index("ix_chain_sessions_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<ChainDiagnosisSession(id={self.id!s}, user={self.user_id!r}, "
            f"status={self.status!r}, step={self.current_step})>"
        )
