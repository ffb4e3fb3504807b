"""Abstract interfaces for the collaborators the pipeline depends on.

These ABCs define the narrow contracts the core needs.  Concrete
implementations ship alongside (``llm``, ``normalizer``, ``store``) but
callers may substitute their own, e.g. a different model vendor or an
object store other than the default.

Typical integration flow::

    client: CompletionClient = build_client(api_key)
    store: SessionStore = DatabaseSessionStore(get_session_factory())

    user_input = await normalize(user_id, profile, form, files, extractor=...)
    pipeline = DiagnosisPipeline(store, build_processors(client))
    session, warnings = await pipeline.start_session(user_id, user_input)
    outcome = await pipeline.run_to_completion(session.id)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from radiance_pipeline.models.completion import CompletionRequest, CompletionResult
from radiance_pipeline.models.input import FileMetadata
from radiance_pipeline.models.session import DiagnosisSession


class CompletionClient(ABC):
    """Chat-completion endpoint.

    Implementations raise :class:`~radiance_pipeline.errors.UpstreamError`
    on HTTP failure, non-2xx status or timeout.
    """

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """Send *request* and return the full assistant message."""
        ...

    @abstractmethod
    def stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        """Send *request* with streaming enabled and yield content deltas."""
        ...


class FileStorage(ABC):
    """Object store holding uploaded medical reports.

    ``upload`` owns upload failures: an implementation either raises or
    degrades to a local temporary copy whose bytes ``read_local`` returns
    (see :class:`~radiance_pipeline.files.LocalFallbackStorage`).
    """

    @abstractmethod
    async def upload(
        self, content: bytes, *, name: str, content_type: str, user_id: str,
    ) -> FileMetadata:
        ...

    @abstractmethod
    async def get_signed_url(self, path: str, ttl_seconds: int = 60) -> str:
        """Return a short-lived URL for *path*."""
        ...

    @abstractmethod
    async def delete(self, file_id: str, user_id: str) -> bool:
        ...

    async def read_local(self, path: str) -> bytes | None:
        """Content held in-process for *path*; ``None`` for stored files."""
        return None


class ReportTextExtractor(ABC):
    """Turns an uploaded non-image report into plain text for the prompt."""

    @abstractmethod
    async def extract(self, file: FileMetadata) -> str:
        """Return extracted text, or ``""`` when nothing could be extracted."""
        ...


class SessionStore(ABC):
    """Storage capability the pipeline is parameterised over.

    Contract:
      - ``create``/``get``/``update`` raise
        :class:`~radiance_pipeline.errors.PersistenceError` when the
        backing store is unavailable; ``get`` returns ``None`` when the
        session does not exist.
      - ``list_by_user`` never raises; it returns ``[]`` on failure.
      - ``delete`` verifies ownership, removes dependent chat history, and
        returns ``False`` (never raises) when nothing was deleted.
    """

    @abstractmethod
    async def create(self, session: DiagnosisSession) -> DiagnosisSession:
        ...

    @abstractmethod
    async def get(self, session_id: str) -> DiagnosisSession | None:
        ...

    @abstractmethod
    async def list_by_user(self, user_id: str) -> list[DiagnosisSession]:
        ...

    @abstractmethod
    async def update(self, session_id: str, fields: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def delete(self, session_id: str, user_id: str) -> bool:
        ...
