"""Upload degradation — keep a report in-process when the object store fails.

:class:`LocalFallbackStorage` wraps any :class:`FileStorage`.  An upload the
wrapped store rejects is kept in memory under a ``local/<user>/<id>/<name>``
path instead, so the submission still carries its report.  Such files have
no URL; :class:`~radiance_pipeline.normalizer.StubTextExtractor` reads them
through :meth:`FileStorage.read_local`.  Local copies live as long as the
process.
"""

from __future__ import annotations

import logging
import uuid

from radiance_pipeline.interfaces import FileStorage
from radiance_pipeline.models.input import FileMetadata

logger = logging.getLogger(__name__)

LOCAL_PREFIX = "local/"


class LocalFallbackStorage(FileStorage):
    """:class:`FileStorage` that degrades failed uploads to in-memory copies."""

    def __init__(self, primary: FileStorage) -> None:
        self._primary = primary
        # path -> content
        self._local: dict[str, bytes] = {}

    async def upload(
        self, content: bytes, *, name: str, content_type: str, user_id: str,
    ) -> FileMetadata:
        try:
            return await self._primary.upload(
                content, name=name, content_type=content_type, user_id=user_id,
            )
        except Exception as exc:
            file_id = str(uuid.uuid4())
            path = f"{LOCAL_PREFIX}{user_id}/{file_id}/{name}"
            logger.warning(
                "Upload of %s failed (%s); keeping it in memory as %s", name, exc, path,
            )
            self._local[path] = content
            return FileMetadata(
                id=file_id, name=name, size=len(content), type=content_type, path=path,
            )

    async def get_signed_url(self, path: str, ttl_seconds: int = 60) -> str:
        if path.startswith(LOCAL_PREFIX):
            raise ValueError(f"{path} is held in memory and has no URL")
        return await self._primary.get_signed_url(path, ttl_seconds)

    async def delete(self, file_id: str, user_id: str) -> bool:
        prefix = f"{LOCAL_PREFIX}{user_id}/{file_id}/"
        for path in list(self._local):
            if path.startswith(prefix):
                del self._local[path]
                return True
        return await self._primary.delete(file_id, user_id)

    async def read_local(self, path: str) -> bytes | None:
        return self._local.get(path)
