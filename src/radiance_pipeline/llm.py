"""Chat-completion clients.

``PerplexityClient`` talks to the Perplexity chat-completions API over
httpx, with optional server-sent-event streaming.  ``DemoCompletionClient``
is used when no API key is configured: it returns each role's canned demo
payload, marked as a mock in both ``role_name`` and ``disclaimer`` so demo
output can never be mistaken for real analysis.

Use :func:`build_client` to pick the right one from settings.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from radiance_pipeline.constants import (
    DEFAULT_API_BASE_URL,
    LLM_TIMEOUT_SECONDS,
    MOCK_DISCLAIMER_NOTE,
    MOCK_ROLE_SUFFIX,
)
from radiance_pipeline.errors import UpstreamError
from radiance_pipeline.interfaces import CompletionClient
from radiance_pipeline.models.completion import CompletionRequest, CompletionResult
from radiance_pipeline.roles import RoleCatalog

logger = logging.getLogger(__name__)

_COMPLETIONS_PATH = "/chat/completions"
_SSE_PREFIX = "data:"
_SSE_DONE = "[DONE]"


def parse_sse_line(line: str) -> str | None:
    """Return the content delta carried by one SSE line, if any.

    Malformed ``data:`` payloads are skipped; a stream with one bad event
    should still deliver the rest.
    """
    line = line.strip()
    if not line.startswith(_SSE_PREFIX):
        return None
    data = line[len(_SSE_PREFIX):].strip()
    if not data or data == _SSE_DONE:
        return None
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed SSE event: %.80s", data)
        return None
    try:
        return event["choices"][0]["delta"].get("content") or None
    except (KeyError, IndexError, TypeError, AttributeError):
        return None


class PerplexityClient(CompletionClient):
    """httpx client for the Perplexity chat-completions endpoint.

    Args:
        api_key: bearer token.
        base_url: API root; ``/chat/completions`` is appended.
        timeout: per-request timeout in seconds.  Expiry raises
            :class:`UpstreamError`.
        transport: optional httpx transport (tests pass ``MockTransport``).
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout: float = LLM_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            transport=self._transport,
        )

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        payload = request.to_payload(stream=False)
        async with self._client() as client:
            try:
                response = await client.post(_COMPLETIONS_PATH, json=payload)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise UpstreamError(
                    exc.response.status_code, exc.response.text,
                ) from exc
            except httpx.HTTPError as exc:
                raise UpstreamError(None, str(exc) or type(exc).__name__) from exc

        try:
            data: dict[str, Any] = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise UpstreamError(response.status_code, response.text) from exc

        return CompletionResult(
            content=content or "",
            model=data.get("model") or request.model,
            usage=data.get("usage") or {},
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        payload = request.to_payload(stream=True)
        async with self._client() as client:
            try:
                async with client.stream(
                    "POST", _COMPLETIONS_PATH, json=payload,
                ) as response:
                    if response.status_code >= 400:
                        body = await response.aread()
                        raise UpstreamError(
                            response.status_code,
                            body.decode("utf-8", errors="replace"),
                        )
                    async for line in response.aiter_lines():
                        delta = parse_sse_line(line)
                        if delta:
                            yield delta
            except httpx.HTTPError as exc:
                raise UpstreamError(None, str(exc) or type(exc).__name__) from exc


class DemoCompletionClient(CompletionClient):
    """Deterministic stand-in used when no API key is configured.

    Returns the role's ``demo`` payload from the role catalog as JSON text.
    Streaming replays the same text in fixed-size chunks.
    """

    def __init__(self, catalog: RoleCatalog, *, chunk_size: int = 64) -> None:
        self._catalog = catalog
        self._chunk_size = chunk_size

    def render(self, request: CompletionRequest) -> str:
        spec = self._catalog.get(request.stage)
        payload = dict(spec.demo)
        payload["role_name"] = f"{request.role_name or spec.display_name()}{MOCK_ROLE_SUFFIX}"
        payload["disclaimer"] = f"{MOCK_DISCLAIMER_NOTE} {spec.default_disclaimer}".strip()
        return json.dumps(payload, ensure_ascii=False)

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        logger.info("Demo completion for stage %s (no API key configured)", request.stage)
        return CompletionResult(content=self.render(request), model=f"{request.model}-demo")

    async def stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        text = self.render(request)
        for i in range(0, len(text), self._chunk_size):
            yield text[i:i + self._chunk_size]
            await asyncio.sleep(0)


def build_client(
    api_key: str | None,
    *,
    catalog: RoleCatalog,
    base_url: str = DEFAULT_API_BASE_URL,
    timeout: float = LLM_TIMEOUT_SECONDS,
) -> CompletionClient:
    """Return a live client, or the demo client when *api_key* is empty."""
    if not api_key:
        logger.warning("No model API key configured; using demo completion client")
        return DemoCompletionClient(catalog)
    return PerplexityClient(api_key, base_url=base_url, timeout=timeout)
