"""DiagnosisPipeline — drives a session through the eight-stage chain.

One transition table, parameterised over a :class:`SessionStore`:

    step 0  Medical Analyst        (skipped when no report is attached)
    step 1  General Physician
    step 2  Specialist Doctor      requires GP
    step 3  Pathologist            requires Specialist
    step 4  Nutritionist           requires Specialist, Pathologist
    step 5  Pharmacist             requires ... Nutritionist
    step 6  Follow-up Specialist   requires ... Pharmacist
    step 7  Summarizer             requires ... Follow-up  -> step 8, completed

Each ``process_next_step()`` call runs exactly one transition, persists the
result, and re-fetches the session from the store so callers always see
what was written.  Upstream failures put the session into ``error`` status
without advancing ``current_step``; the next call retries the same stage.

Storage degradation: when the primary store cannot be written (or read
while a cached copy exists), the latest session copy is mirrored into an
in-memory fallback store, flagged ``durable=False``, and carries a "not
durably saved" warning from then on.

Per-session progress state is dropped once a session completes or is
deleted.

Usage::

    pipeline = DiagnosisPipeline(store, build_processors(client))
    session = await pipeline.start_session("u1", user_input)
    outcome = await pipeline.process_next_step(session.id, "u1")
    outcome = await pipeline.run_to_completion(session.id, "u1")
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from radiance_db.models.enums import SessionStatus

from radiance_pipeline.constants import (
    COMPLETED_STEP,
    NOT_DURABLY_SAVED,
    PREREQUISITES,
    STAGE_NAMES,
    STAGE_ORDER,
    STREAM_SETTLE_SECONDS,
)
from radiance_pipeline.errors import (
    PersistenceError,
    PreconditionError,
    SessionNotFoundError,
    UpstreamError,
    ValidationError,
)
from radiance_pipeline.interfaces import SessionStore
from radiance_pipeline.models.input import PipelineUserInput
from radiance_pipeline.models.session import (
    DiagnosisSession,
    StepOutcome,
    response_field,
)
from radiance_pipeline.stages import StageProcessor, StreamCallback, emit_chunk
from radiance_pipeline.state import (
    ChunkReceived,
    Event,
    PersistenceFailed,
    PipelineState,
    Reset,
    SessionLoaded,
    StageFailed,
    StageSkipped,
    StageSucceeded,
    StepStarted,
    StreamingSettled,
    is_stale,
    reduce,
)
from radiance_pipeline.store import InMemorySessionStore

logger = logging.getLogger(__name__)

# listener(session_id, new_state, event)
Listener = Callable[[str, PipelineState, Event], Awaitable[None] | None]

ALREADY_COMPLETE = "Diagnosis process is already complete"
DISCARDED = "Session was reset while the stage was running"


class DiagnosisPipeline:
    """Sequential orchestrator for chain-diagnosis sessions.

    Args:
        store: primary session store.
        processors: stage processors keyed by stage (see
            :func:`~radiance_pipeline.stages.build_processors`).
        fallback_store: in-memory store receiving sessions the primary
            store could not persist; a private one is created if omitted.
        settle_delay: seconds to wait after a streamed stage before the
            streaming indicator is cleared.
    """

    def __init__(
        self,
        store: SessionStore,
        processors: Mapping[str, StageProcessor],
        *,
        fallback_store: InMemorySessionStore | None = None,
        settle_delay: float = STREAM_SETTLE_SECONDS,
    ) -> None:
        missing = [stage for stage in STAGE_ORDER if stage not in processors]
        if missing:
            raise ValueError(f"Missing stage processors: {', '.join(missing)}")
        self._store = store
        self._processors = dict(processors)
        self._fallback = fallback_store if fallback_store is not None else InMemorySessionStore()
        self._settle_delay = settle_delay
        self._states: dict[str, PipelineState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[Listener] = []
        # deleted while a step was in flight
        self._deleted: set[str] = set()

    # ==================================================================
    # State & listeners
    # ==================================================================

    def state(self, session_id: str) -> PipelineState:
        """Current progress snapshot for *session_id*."""
        return self._states.get(session_id, PipelineState())

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* for every state change; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _dispatch(self, session_id: str, event: Event) -> PipelineState:
        previous = self.state(session_id)
        if session_id in self._deleted:
            return previous
        new_state = reduce(previous, event)
        if new_state is previous:
            return new_state
        session = new_state.session
        if (
            session is not None
            and session.is_completed
            and not new_state.is_processing
            and not new_state.is_streaming
        ):
            self._forget(session_id)
        else:
            self._states[session_id] = new_state
        for listener in list(self._listeners):
            result = listener(session_id, new_state, event)
            if inspect.isawaitable(result):
                await result
        return new_state

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def _forget(self, session_id: str) -> None:
        self._states.pop(session_id, None)
        self._locks.pop(session_id, None)

    # ==================================================================
    # Session lifecycle
    # ==================================================================

    async def start_session(
        self, user_id: str, user_input: PipelineUserInput,
    ) -> DiagnosisSession:
        """Create a session at step 0.

        If the primary store is unavailable the session is created in the
        fallback store instead, with ``durable=False`` and a warning.
        """
        session = DiagnosisSession(
            id=str(uuid.uuid4()), user_id=user_id, user_input=user_input,
        )
        try:
            created = await self._store.create(session)
        except PersistenceError as exc:
            logger.warning(
                "Could not persist new session %s, keeping it in memory: %s",
                session.id, exc,
            )
            created = session.model_copy(
                update={"durable": False, "warnings": [NOT_DURABLY_SAVED]},
            )
            self._fallback.put(created)

        logger.info("Started session %s for user %s", created.id, user_id)
        await self._dispatch(created.id, SessionLoaded(created))
        return created

    async def get_session(
        self, session_id: str, user_id: str | None = None,
    ) -> DiagnosisSession:
        """Fetch a session, preferring an ephemeral copy when one exists.

        A primary-store read failure falls back to the session last seen by
        this pipeline, which is then kept in memory like a failed write.

        Raises:
            SessionNotFoundError: unknown id, or owned by another user.
            PersistenceError: the primary store is unreachable and there is
                no in-memory copy to fall back to.
        """
        session = await self._fallback.get(session_id)
        if session is None:
            try:
                session = await self._store.get(session_id)
            except PersistenceError as exc:
                cached = self.state(session_id).session
                if cached is None or (user_id is not None and cached.user_id != user_id):
                    raise
                logger.warning(
                    "Could not read session %s, continuing from memory: %s",
                    session_id, exc,
                )
                session = await self._keep_in_memory(
                    cached, {}, self.state(session_id).generation,
                )
        if session is None or (user_id is not None and session.user_id != user_id):
            raise SessionNotFoundError(f"Session not found: session_id={session_id}")
        return session

    async def list_sessions(self, user_id: str) -> list[DiagnosisSession]:
        """All of *user_id*'s sessions, newest first."""
        by_id = {s.id: s for s in await self._store.list_by_user(user_id)}
        for session in await self._fallback.list_by_user(user_id):
            by_id[session.id] = session
        return sorted(by_id.values(), key=lambda s: s.created_at, reverse=True)

    async def delete_session(self, session_id: str, user_id: str) -> bool:
        """Delete an owned session; in-flight results for it are discarded."""
        deleted = await self._store.delete(session_id, user_id)
        deleted = await self._fallback.delete(session_id, user_id) or deleted
        if deleted:
            logger.info("Deleted session %s", session_id)
            await self._dispatch(session_id, Reset(reason="deleted"))
            lock = self._locks.get(session_id)
            if lock is not None and lock.locked():
                self._deleted.add(session_id)
            self._forget(session_id)
        return deleted

    async def load_session(
        self,
        session_id: str,
        user_id: str | None = None,
        *,
        auto_continue: bool = False,
    ) -> DiagnosisSession:
        """Load a session; optionally resume one stalled after the GP stage.

        With ``auto_continue`` a session holding a General Physician response
        but no Specialist Doctor response runs one step before returning.
        """
        session = await self.get_session(session_id, user_id)
        await self._dispatch(session_id, SessionLoaded(session))

        if (
            auto_continue
            and not session.is_completed
            and session.general_physician_response is not None
            and session.specialist_doctor_response is None
        ):
            logger.info("Auto-continuing session %s at the specialist stage", session_id)
            await self.process_next_step(session_id, user_id)
            session = await self.get_session(session_id, user_id)
        return session

    async def reset(self, session_id: str) -> None:
        """Abandon in-flight work for *session_id*; late results are discarded."""
        if session_id not in self._states:
            return
        await self._dispatch(session_id, Reset())

    # ==================================================================
    # Transitions
    # ==================================================================

    async def process_next_step(
        self,
        session_id: str,
        user_id: str | None = None,
        *,
        on_chunk: StreamCallback | None = None,
    ) -> StepOutcome:
        """Run the stage at ``current_step`` and persist its result.

        Raises:
            SessionNotFoundError: unknown or foreign session.
            PreconditionError: a prerequisite stage response is missing; the
                session is left untouched.
            ValidationError: the stored input cannot be sent to the stage.
        """
        if session_id in self._deleted:
            raise SessionNotFoundError(f"Session not found: session_id={session_id}")
        lock = self._lock(session_id)
        try:
            async with lock:
                return await self._step(session_id, user_id, on_chunk)
        finally:
            if not lock.locked():
                self._deleted.discard(session_id)
                if session_id not in self._states:
                    self._locks.pop(session_id, None)

    async def run_to_completion(
        self,
        session_id: str,
        user_id: str | None = None,
        *,
        on_chunk: StreamCallback | None = None,
    ) -> StepOutcome:
        """Process steps until the session completes or a step fails."""
        outcome: StepOutcome | None = None
        while outcome is None or (outcome.success and outcome.step_after < COMPLETED_STEP):
            try:
                outcome = await self.process_next_step(
                    session_id, user_id, on_chunk=on_chunk,
                )
            except PreconditionError as exc:
                session = await self.get_session(session_id, user_id)
                return StepOutcome(
                    success=False,
                    session_id=session_id,
                    stage=session.next_stage,
                    step_before=session.current_step,
                    step_after=session.current_step,
                    status=session.status.value,
                    error_kind="precondition",
                    error=str(exc),
                    warnings=session.warnings,
                )
        return outcome

    async def _step(
        self,
        session_id: str,
        user_id: str | None,
        on_chunk: StreamCallback | None,
    ) -> StepOutcome:
        session = await self.get_session(session_id, user_id)
        step = session.current_step

        if session.is_completed or step >= COMPLETED_STEP:
            return self._outcome(
                session, None, step, success=False,
                error_kind="completed", error=ALREADY_COMPLETE,
            )

        stage = STAGE_ORDER[step]
        missing = [s for s in PREREQUISITES[step] if session.response(s) is None]
        if missing:
            message = f"{STAGE_NAMES[missing[0]]} response required before {STAGE_NAMES[stage]}"
            logger.warning("Session %s: %s", session_id, message)
            raise PreconditionError(message)

        generation = self.state(session_id).generation
        await self._dispatch(session_id, StepStarted(stage=stage, generation=generation))

        if step == 0 and not session.user_input.has_medical_report:
            logger.info("Session %s has no medical report; skipping %s", session_id, stage)
            updated = await self._save(session, {"current_step": 1}, generation)
            if updated is None:
                return self._outcome(
                    session, stage, step, success=False,
                    error_kind="discarded", error=DISCARDED,
                )
            await self._dispatch(session_id, StageSkipped(updated, generation))
            return self._outcome(updated, stage, step, success=True, skipped=True)

        callback = None
        if on_chunk is not None:
            async def callback(text: str, is_complete: bool) -> None:
                event = ChunkReceived(text, is_complete, generation)
                if is_stale(self.state(session_id), event):
                    return
                await self._dispatch(session_id, event)
                await emit_chunk(on_chunk, text, is_complete)

        processor = self._processors[stage]
        try:
            run = await processor.execute(
                session.user_input, session.responses(), on_chunk=callback,
            )
        except UpstreamError as exc:
            if self._discarded(session_id, generation):
                return self._outcome(
                    session, stage, step, success=False,
                    error_kind="discarded", error=str(exc),
                )
            logger.error("Stage %s failed for session %s: %s", stage, session_id, exc)
            updated = await self._save(
                session,
                {"status": SessionStatus.ERROR, "error_message": str(exc)},
                generation,
            )
            if updated is None:
                return self._outcome(
                    session, stage, step, success=False,
                    error_kind="discarded", error=str(exc),
                )
            await self._dispatch(session_id, StageFailed(str(exc), generation, updated))
            return self._outcome(
                updated, stage, step, success=False,
                error_kind="upstream", error=str(exc),
            )
        except ValidationError as exc:
            await self._dispatch(session_id, StageFailed(str(exc), generation))
            raise

        if self._discarded(session_id, generation):
            return self._outcome(
                session, stage, step, success=False,
                error_kind="discarded", error=DISCARDED,
            )

        next_step = step + 1
        fields: dict[str, Any] = {
            response_field(stage): run.response.model_dump(mode="json"),
            "raw_responses": {**session.raw_responses, stage: run.raw_text},
            "current_step": next_step,
            "status": (
                SessionStatus.COMPLETED if next_step == COMPLETED_STEP
                else SessionStatus.IN_PROGRESS
            ),
            "error_message": None,
        }
        updated = await self._save(session, fields, generation)
        if updated is None:
            return self._outcome(
                session, stage, step, success=False,
                error_kind="discarded", error=DISCARDED,
            )
        await self._dispatch(session_id, StageSucceeded(updated, generation))
        logger.info(
            "Session %s completed %s (step %d -> %d)",
            session_id, stage, step, next_step,
        )

        if run.streamed and session_id in self._states:
            await asyncio.sleep(self._settle_delay)
            await self._dispatch(session_id, StreamingSettled(generation))

        return self._outcome(updated, stage, step, success=True)

    # ==================================================================
    # Helpers
    # ==================================================================

    def _discarded(self, session_id: str, generation: int) -> bool:
        if (
            session_id in self._deleted
            or self.state(session_id).generation != generation
        ):
            logger.info("Discarding stale stage result for session %s", session_id)
            return True
        return False

    async def _save(
        self,
        session: DiagnosisSession,
        fields: dict[str, Any],
        generation: int,
    ) -> DiagnosisSession | None:
        """:meth:`_persist`, or ``None`` if the session was reset or deleted meanwhile."""
        try:
            updated = await self._persist(session, fields, generation)
        except SessionNotFoundError:
            if self._discarded(session.id, generation):
                return None
            raise
        if self._discarded(session.id, generation):
            if session.id in self._deleted:
                # a fallback copy written after the delete must not survive it
                await self._fallback.delete(session.id, session.user_id)
            return None
        return updated

    async def _persist(
        self,
        session: DiagnosisSession,
        fields: dict[str, Any],
        generation: int,
    ) -> DiagnosisSession:
        """Write *fields* and return the re-fetched session.

        Falls back to the in-memory store when the primary store fails.
        """
        if session.durable:
            try:
                await self._store.update(session.id, fields)
                refreshed = await self._store.get(session.id)
            except PersistenceError as exc:
                logger.warning(
                    "Could not persist session %s, keeping it in memory: %s",
                    session.id, exc,
                )
            else:
                if refreshed is None:
                    raise SessionNotFoundError(
                        f"Session not found: session_id={session.id}"
                    )
                return refreshed
            return await self._keep_in_memory(session, fields, generation)

        await self._fallback.update(session.id, fields)
        refreshed = await self._fallback.get(session.id)
        if refreshed is None:
            raise SessionNotFoundError(f"Session not found: session_id={session.id}")
        return refreshed

    async def _keep_in_memory(
        self,
        session: DiagnosisSession,
        fields: dict[str, Any],
        generation: int,
    ) -> DiagnosisSession:
        """Mirror *session* (with *fields* applied) into the fallback store."""
        data = session.model_dump()
        data.update(fields)
        data["durable"] = False
        if NOT_DURABLY_SAVED not in data["warnings"]:
            data["warnings"] = [*data["warnings"], NOT_DURABLY_SAVED]
        ephemeral = DiagnosisSession.model_validate(data)
        self._fallback.put(ephemeral)
        await self._dispatch(session.id, PersistenceFailed(NOT_DURABLY_SAVED, generation))
        return ephemeral.model_copy(deep=True)

    @staticmethod
    def _outcome(
        session: DiagnosisSession,
        stage: str | None,
        step_before: int,
        *,
        success: bool,
        skipped: bool = False,
        error_kind: str | None = None,
        error: str | None = None,
    ) -> StepOutcome:
        return StepOutcome(
            success=success,
            session_id=session.id,
            stage=stage,
            step_before=step_before,
            step_after=session.current_step,
            status=session.status.value,
            skipped=skipped,
            error_kind=error_kind,
            error=error,
            warnings=list(session.warnings),
        )
