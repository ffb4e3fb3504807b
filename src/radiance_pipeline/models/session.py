"""Session and step models — the contract between the pipeline and API callers.

``DiagnosisSession`` is the SDK's view of one diagnosis run.  It is
intentionally decoupled from the ORM row in ``radiance_db`` so that the
in-memory store and API consumers never see database internals.

Stage responses are held as plain dicts (the validated
``StageResponse.model_dump()``) so the session round-trips through JSONB
unchanged.
"""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

from radiance_db.models.enums import SessionStatus

from radiance_pipeline.constants import COMPLETED_STEP, STAGE_ORDER
from radiance_pipeline.models.input import PipelineUserInput


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def response_field(stage: str) -> str:
    """Session attribute holding *stage*'s structured response."""
    return f"{stage}_response"


class DiagnosisSession(BaseModel):
    """One user's run through the eight-stage chain."""

    id: str
    user_id: str
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    status: SessionStatus = SessionStatus.IN_PROGRESS
    current_step: int = Field(default=0, ge=0, le=COMPLETED_STEP)
    user_input: PipelineUserInput

    medical_analyst_response: dict[str, Any] | None = None
    general_physician_response: dict[str, Any] | None = None
    specialist_doctor_response: dict[str, Any] | None = None
    pathologist_response: dict[str, Any] | None = None
    nutritionist_response: dict[str, Any] | None = None
    pharmacist_response: dict[str, Any] | None = None
    follow_up_specialist_response: dict[str, Any] | None = None
    summarizer_response: dict[str, Any] | None = None

    # Unparsed upstream text per stage, kept for audit
    raw_responses: dict[str, str] = Field(default_factory=dict)
    error_message: str | None = None

    # False when the latest state only exists in process memory
    durable: bool = True
    warnings: list[str] = Field(default_factory=list)

    def response(self, stage: str) -> dict[str, Any] | None:
        return getattr(self, response_field(stage))

    def responses(self) -> dict[str, dict[str, Any]]:
        """Populated stage responses keyed by stage, in pipeline order."""
        out = {}
        for stage in STAGE_ORDER:
            value = self.response(stage)
            if value is not None:
                out[stage] = value
        return out

    @property
    def is_completed(self) -> bool:
        return self.status == SessionStatus.COMPLETED

    @property
    def next_stage(self) -> str | None:
        if self.current_step >= COMPLETED_STEP:
            return None
        return STAGE_ORDER[self.current_step]


class SessionInfo(BaseModel):
    """Public summary of a session for history listings."""

    id: str
    user_id: str
    status: str
    current_step: int
    created_at: datetime
    symptoms: list[str] = Field(default_factory=list)
    recommended_specialist_type: str | None = None

    @classmethod
    def from_session(cls, session: DiagnosisSession) -> "SessionInfo":
        gp = session.general_physician_response or {}
        return cls(
            id=session.id,
            user_id=session.user_id,
            status=session.status.value,
            current_step=session.current_step,
            created_at=session.created_at,
            symptoms=session.user_input.symptoms_info.symptoms_list,
            recommended_specialist_type=gp.get("recommended_specialist_type") or None,
        )


class StepOutcome(BaseModel):
    """Result of one ``process_next_step()`` call.

    ``success`` is False for precondition violations, upstream failures,
    calls on completed sessions, and results discarded after a reset; the
    session itself is never rolled back in those cases.
    """

    success: bool
    session_id: str
    stage: str | None = None
    step_before: int
    step_after: int
    status: str
    skipped: bool = False
    error_kind: Literal["precondition", "upstream", "completed", "discarded"] | None = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
