"""Pipeline progress state and its reducer.

``PipelineState`` is an immutable snapshot of one session's processing
progress: the latest session copy, whether a stage is running or
streaming, the text streamed so far, and the last error.  It only changes
through :func:`reduce`, which maps ``(state, event) -> new state`` with no
I/O, so the orchestrator's callbacks dispatch events instead of mutating
shared variables.

Every in-flight event carries the ``generation`` it was started under.
``Reset`` bumps the generation; events from an older generation are
ignored, which is how results for an abandoned session are discarded.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Union

from radiance_pipeline.models.session import DiagnosisSession


@dataclass(frozen=True)
class PipelineState:
    session: DiagnosisSession | None = None
    is_processing: bool = False
    is_streaming: bool = False
    streaming_text: str = ""
    current_stage: str | None = None
    error: str | None = None
    warnings: tuple[str, ...] = ()
    generation: int = 0


# ======================================================================
# Events
# ======================================================================


@dataclass(frozen=True)
class SessionLoaded:
    session: DiagnosisSession


@dataclass(frozen=True)
class StepStarted:
    stage: str
    generation: int


@dataclass(frozen=True)
class ChunkReceived:
    """A streamed delta, or the full text when ``is_complete`` is set."""

    text: str
    is_complete: bool
    generation: int


@dataclass(frozen=True)
class StageSucceeded:
    session: DiagnosisSession
    generation: int


@dataclass(frozen=True)
class StageSkipped:
    session: DiagnosisSession
    generation: int


@dataclass(frozen=True)
class StageFailed:
    error: str
    generation: int
    session: DiagnosisSession | None = None


@dataclass(frozen=True)
class PersistenceFailed:
    warning: str
    generation: int


@dataclass(frozen=True)
class StreamingSettled:
    generation: int


@dataclass(frozen=True)
class Reset:
    reason: str = field(default="reset")


Event = Union[
    SessionLoaded,
    StepStarted,
    ChunkReceived,
    StageSucceeded,
    StageSkipped,
    StageFailed,
    PersistenceFailed,
    StreamingSettled,
    Reset,
]


# ======================================================================
# Reducer
# ======================================================================


def is_stale(state: PipelineState, event: Event) -> bool:
    """True when *event* belongs to a generation that has been reset."""
    generation = getattr(event, "generation", None)
    return generation is not None and generation != state.generation


def _add_warning(warnings: tuple[str, ...], warning: str) -> tuple[str, ...]:
    return warnings if warning in warnings else warnings + (warning,)


def reduce(state: PipelineState, event: Event) -> PipelineState:
    """Return the state that follows *state* after *event*.

    Stale events return *state* unchanged (the same object).
    """
    if is_stale(state, event):
        return state

    if isinstance(event, SessionLoaded):
        warnings = state.warnings
        for warning in event.session.warnings:
            warnings = _add_warning(warnings, warning)
        return replace(
            state,
            session=event.session,
            error=event.session.error_message,
            warnings=warnings,
        )

    if isinstance(event, StepStarted):
        return replace(
            state,
            is_processing=True,
            is_streaming=False,
            streaming_text="",
            current_stage=event.stage,
            error=None,
        )

    if isinstance(event, ChunkReceived):
        text = event.text if event.is_complete else state.streaming_text + event.text
        return replace(state, is_streaming=True, streaming_text=text)

    if isinstance(event, (StageSucceeded, StageSkipped)):
        warnings = state.warnings
        for warning in event.session.warnings:
            warnings = _add_warning(warnings, warning)
        return replace(
            state,
            session=event.session,
            is_processing=False,
            current_stage=None,
            error=None,
            warnings=warnings,
        )

    if isinstance(event, StageFailed):
        return replace(
            state,
            session=event.session if event.session is not None else state.session,
            is_processing=False,
            is_streaming=False,
            streaming_text="",
            error=event.error,
        )

    if isinstance(event, PersistenceFailed):
        return replace(state, warnings=_add_warning(state.warnings, event.warning))

    if isinstance(event, StreamingSettled):
        return replace(state, is_streaming=False, streaming_text="")

    if isinstance(event, Reset):
        return PipelineState(generation=state.generation + 1)

    raise TypeError(f"Unknown pipeline event: {type(event).__name__}")
