"""Step endpoints — advance a session one stage at a time, or to the end.

  - ``POST /sessions/{id}/step``        run one stage, return the outcome
  - ``POST /sessions/{id}/step/stream`` same, streamed as Server-Sent Events
  - ``POST /sessions/{id}/run``         run stages until completion or failure

Upstream failures are not HTTP errors: they come back as an outcome with
``success=false`` and the session left in ``error`` status for a retry.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from radiance_pipeline.errors import (
    PreconditionError,
    SessionNotFoundError,
    ValidationError,
)
from radiance_pipeline.models.session import StepOutcome
from radiance_pipeline.pipeline import DiagnosisPipeline

from radiance_server.dependencies import get_pipeline, get_user_id

logger = logging.getLogger(__name__)

router = APIRouter(tags=["steps"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # disable proxy buffering
}


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------

@router.post("/sessions/{session_id}/step")
async def process_next_step(
    session_id: str,
    user_id: str = Depends(get_user_id),
    pipeline: DiagnosisPipeline = Depends(get_pipeline),
) -> StepOutcome:
    """Run the stage at the session's ``current_step``.

    Raises 409 when a prerequisite stage response is missing.
    """
    return await pipeline.process_next_step(session_id, user_id)


@router.post("/sessions/{session_id}/step/stream")
async def stream_next_step(
    session_id: str,
    user_id: str = Depends(get_user_id),
    pipeline: DiagnosisPipeline = Depends(get_pipeline),
) -> StreamingResponse:
    """Run one stage, streaming model output as it arrives.

    Events:
      - ``chunk``   ``{"text": ..., "is_complete": false}`` per delta, then
        one ``is_complete: true`` event carrying the full text
      - ``outcome`` the final :class:`StepOutcome`
      - ``error``   ``{"detail": ...}`` when the step could not run
    """
    # Resolve ownership before the response starts so 404 stays an HTTP error
    await pipeline.get_session(session_id, user_id)

    queue: asyncio.Queue[str | None] = asyncio.Queue()

    async def on_chunk(text: str, is_complete: bool) -> None:
        await queue.put(_sse("chunk", {"text": text, "is_complete": is_complete}))

    async def run_step() -> None:
        try:
            outcome = await pipeline.process_next_step(
                session_id, user_id, on_chunk=on_chunk,
            )
            await queue.put(_sse("outcome", outcome.model_dump(mode="json")))
        except (PreconditionError, SessionNotFoundError, ValidationError) as exc:
            await queue.put(_sse("error", {"detail": str(exc)}))
        except Exception:
            logger.exception("Streamed step failed for session %s", session_id)
            await queue.put(_sse("error", {"detail": "Internal server error"}))
        finally:
            await queue.put(None)

    async def event_stream() -> AsyncIterator[str]:
        task = asyncio.create_task(run_step())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
        finally:
            await task

    return StreamingResponse(
        event_stream(), media_type="text/event-stream", headers=_SSE_HEADERS,
    )


@router.post("/sessions/{session_id}/run")
async def run_to_completion(
    session_id: str,
    user_id: str = Depends(get_user_id),
    pipeline: DiagnosisPipeline = Depends(get_pipeline),
) -> StepOutcome:
    """Process stages until the session completes or a stage fails.

    Returns the outcome of the last step attempted.
    """
    return await pipeline.run_to_completion(session_id, user_id)
