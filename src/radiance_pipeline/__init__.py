"""radiance_pipeline — Chain-diagnosis SDK.

Public API:
    DiagnosisPipeline    — orchestrator for the eight-stage diagnosis chain
    PipelineState        — immutable progress snapshot, changed by ``reduce``
    build_processors     — instantiate the eight stage processors
    RoleCatalog          — loads role definitions from YAML
    PromptManager        — Jinja2 system-prompt renderer
    normalize            — build canonical ``PipelineUserInput`` from raw forms
    coerce               — best-effort structured parse of model output

Collaborator interfaces:
    CompletionClient     — chat-completion endpoint (``PerplexityClient``,
                           ``DemoCompletionClient``)
    SessionStore         — ``DatabaseSessionStore`` / ``InMemorySessionStore``
    FileStorage          — object store for uploaded reports
                           (``LocalFallbackStorage`` keeps failed uploads)
    ReportTextExtractor  — report text extraction (``StubTextExtractor``)

Errors:
    ValidationError, PreconditionError, SessionNotFoundError,
    UpstreamError, PersistenceError
"""

from radiance_pipeline.coercion import coerce, coerce_to_text
from radiance_pipeline.errors import (
    PersistenceError,
    PreconditionError,
    SessionNotFoundError,
    UpstreamError,
    ValidationError,
)
from radiance_pipeline.files import LocalFallbackStorage
from radiance_pipeline.interfaces import (
    CompletionClient,
    FileStorage,
    ReportTextExtractor,
    SessionStore,
)
from radiance_pipeline.llm import DemoCompletionClient, PerplexityClient, build_client
from radiance_pipeline.models import (
    DiagnosisSession,
    PipelineUserInput,
    SessionInfo,
    StageResponse,
    StepOutcome,
)
from radiance_pipeline.normalizer import StubTextExtractor, normalize
from radiance_pipeline.pipeline import DiagnosisPipeline
from radiance_pipeline.prompt import PromptManager
from radiance_pipeline.roles import RoleCatalog
from radiance_pipeline.stages import StageProcessor, build_processors
from radiance_pipeline.state import PipelineState, reduce
from radiance_pipeline.store import DatabaseSessionStore, InMemorySessionStore

__all__ = [
    # Orchestration
    "DiagnosisPipeline",
    "PipelineState",
    "reduce",
    "StageProcessor",
    "build_processors",
    "RoleCatalog",
    "PromptManager",
    # Input / output
    "normalize",
    "coerce",
    "coerce_to_text",
    "DiagnosisSession",
    "PipelineUserInput",
    "SessionInfo",
    "StageResponse",
    "StepOutcome",
    # Collaborators
    "CompletionClient",
    "PerplexityClient",
    "DemoCompletionClient",
    "build_client",
    "SessionStore",
    "DatabaseSessionStore",
    "InMemorySessionStore",
    "FileStorage",
    "LocalFallbackStorage",
    "ReportTextExtractor",
    "StubTextExtractor",
    # Errors
    "ValidationError",
    "PreconditionError",
    "SessionNotFoundError",
    "UpstreamError",
    "PersistenceError",
]
