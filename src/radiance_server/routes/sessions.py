"""Session management endpoints — create, get, list and delete sessions.

All endpoints require the ``X-User-ID`` header for user identification.
A session is only visible to the user who created it; foreign sessions
are reported as not found.
"""

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from radiance_pipeline.interfaces import ReportTextExtractor
from radiance_pipeline.models.input import FileMetadata
from radiance_pipeline.models.session import DiagnosisSession, SessionInfo
from radiance_pipeline.normalizer import normalize
from radiance_pipeline.pipeline import DiagnosisPipeline

from radiance_server.dependencies import get_extractor, get_pipeline, get_user_id

router = APIRouter(tags=["sessions"])


# ------------------------------------------------------------------
# Request models
# ------------------------------------------------------------------

class CreateSessionRequest(BaseModel):
    """Body for POST /sessions.

    ``symptom_form`` is the raw form (``symptoms``, ``age``, ``gender``,
    ``duration``, ``medicalHistory``); ``profile`` the stored profile
    fields.  Only the first entry of ``files`` is analysed.
    """
    profile: dict[str, Any] = Field(default_factory=dict)
    symptom_form: dict[str, Any]
    files: list[FileMetadata] = Field(default_factory=list)


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------

@router.post("/sessions", status_code=201)
async def create_session(
    body: CreateSessionRequest,
    user_id: str = Depends(get_user_id),
    pipeline: DiagnosisPipeline = Depends(get_pipeline),
    extractor: ReportTextExtractor | None = Depends(get_extractor),
) -> DiagnosisSession:
    """Normalise the submitted forms and create a session at step 0.

    Returns 201.  If storage is unavailable the session is still created
    in memory and carries a "not durably saved" warning.
    """
    user_input = await normalize(
        user_id,
        body.profile,
        body.symptom_form,
        body.files,
        extractor=extractor,
        authenticated_user_id=user_id,
    )
    return await pipeline.start_session(user_id, user_input)


@router.get("/sessions")
async def list_sessions(
    user_id: str = Depends(get_user_id),
    pipeline: DiagnosisPipeline = Depends(get_pipeline),
) -> list[SessionInfo]:
    """List the caller's sessions, most recent first."""
    sessions = await pipeline.list_sessions(user_id)
    return [SessionInfo.from_session(s) for s in sessions]


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    auto_continue: bool = Query(False),
    user_id: str = Depends(get_user_id),
    pipeline: DiagnosisPipeline = Depends(get_pipeline),
) -> DiagnosisSession:
    """Load a session.

    With ``?auto_continue=true`` a session that stopped after the General
    Physician stage runs the Specialist Doctor stage before returning.
    Raises 404 if the session does not exist for this user.
    """
    return await pipeline.load_session(
        session_id, user_id, auto_continue=auto_continue,
    )


@router.delete("/sessions/{session_id}", status_code=204)
async def delete_session(
    session_id: str,
    user_id: str = Depends(get_user_id),
    pipeline: DiagnosisPipeline = Depends(get_pipeline),
) -> None:
    """Delete a session and its chat history.

    Returns 204 on success, 404 if the session does not exist for this user.
    """
    deleted = await pipeline.delete_session(session_id, user_id)
    if not deleted:
        raise ValueError(f"Session not found: session_id={session_id}")
