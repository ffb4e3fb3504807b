"""Completion client tests — httpx wire format, SSE parsing, error mapping.

``PerplexityClient`` is exercised against ``httpx.MockTransport`` handlers
that assert on the outgoing request and return canned responses.  The
demo client and ``build_client`` selection are covered at the end.
"""

import json

import httpx
import pytest

from radiance_pipeline.constants import MOCK_DISCLAIMER_NOTE, RAW_EXCERPT_LIMIT
from radiance_pipeline.errors import UpstreamError
from radiance_pipeline.llm import (
    DemoCompletionClient,
    PerplexityClient,
    build_client,
    parse_sse_line,
)
from radiance_pipeline.models.completion import CompletionRequest


def make_request(stage="general_physician", **overrides):
    data = {
        "stage": stage,
        "role_name": "General Physician AI (Radiance AI)",
        "model": "sonar-pro",
        "messages": [
            {"role": "system", "content": "You are a GP."},
            {"role": "user", "content": "{}"},
        ],
    }
    data.update(overrides)
    return CompletionRequest(**data)


def sse_body(*deltas, done=True):
    lines = []
    for delta in deltas:
        event = {"choices": [{"delta": {"content": delta}}]}
        lines.append(f"data: {json.dumps(event)}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def client_with(handler):
    return PerplexityClient(
        "test-key",
        base_url="https://api.example.test/",
        transport=httpx.MockTransport(handler),
    )


# =====================================================================
# SSE line parsing
# =====================================================================


class TestParseSseLine:

    def test_content_delta(self):
        line = 'data: {"choices": [{"delta": {"content": "Hel"}}]}'
        assert parse_sse_line(line) == "Hel"

    @pytest.mark.parametrize("line", [
        "",
        ": keep-alive",
        "event: message",
        "data: [DONE]",
        "data: {not json",
        'data: {"choices": []}',
        'data: {"choices": [{"delta": {}}]}',
        'data: {"choices": [{"delta": {"content": ""}}]}',
    ])
    def test_lines_without_content(self, line):
        assert parse_sse_line(line) is None


# =====================================================================
# Non-streaming completion
# =====================================================================


class TestComplete:

    @pytest.mark.asyncio
    async def test_request_body_and_response(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "model": "sonar-pro",
                "choices": [{"message": {"content": '{"role_name": "GP"}'}}],
                "usage": {"total_tokens": 42},
            })

        result = await client_with(handler).complete(make_request(max_tokens=3000))

        assert seen["url"] == "https://api.example.test/chat/completions"
        assert seen["auth"] == "Bearer test-key"
        body = seen["body"]
        assert body["stream"] is False
        assert body["temperature"] == 0.1
        assert body["top_p"] == 0.95
        assert body["max_tokens"] == 3000
        assert "stage" not in body and "role_name" not in body, (
            "local metadata must not be sent upstream"
        )
        assert result.content == '{"role_name": "GP"}'
        assert result.usage == {"total_tokens": 42}

    @pytest.mark.asyncio
    async def test_non_2xx_raises_upstream_error(self):
        def handler(request):
            return httpx.Response(429, text="rate limited " + "x" * 1000)

        with pytest.raises(UpstreamError) as exc_info:
            await client_with(handler).complete(make_request())

        assert exc_info.value.status_code == 429
        assert exc_info.value.body.startswith("rate limited")
        assert len(exc_info.value.body) == RAW_EXCERPT_LIMIT

    @pytest.mark.asyncio
    async def test_malformed_body_raises_upstream_error(self):
        def handler(request):
            return httpx.Response(200, json={"error": "no choices"})

        with pytest.raises(UpstreamError) as exc_info:
            await client_with(handler).complete(make_request())
        assert exc_info.value.status_code == 200

    @pytest.mark.asyncio
    async def test_network_error_raises_upstream_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(UpstreamError) as exc_info:
            await client_with(handler).complete(make_request())
        assert exc_info.value.status_code is None
        assert "connection refused" in str(exc_info.value)


# =====================================================================
# Streaming completion
# =====================================================================


class TestStream:

    @pytest.mark.asyncio
    async def test_yields_content_deltas(self):
        def handler(request):
            assert json.loads(request.content)["stream"] is True
            return httpx.Response(
                200,
                content=sse_body('{"role_', 'name": ', '"GP"}'),
                headers={"Content-Type": "text/event-stream"},
            )

        deltas = [d async for d in client_with(handler).stream(make_request())]
        assert deltas == ['{"role_', 'name": ', '"GP"}']
        assert "".join(deltas) == '{"role_name": "GP"}'

    @pytest.mark.asyncio
    async def test_error_status_raises_before_any_delta(self):
        def handler(request):
            return httpx.Response(503, text="overloaded")

        with pytest.raises(UpstreamError) as exc_info:
            async for _ in client_with(handler).stream(make_request()):
                pass
        assert exc_info.value.status_code == 503
        assert exc_info.value.body == "overloaded"


# =====================================================================
# Demo client & selection
# =====================================================================


class TestDemoClient:

    @pytest.mark.asyncio
    async def test_payload_is_marked_as_mock(self, catalog):
        result = await DemoCompletionClient(catalog).complete(make_request())
        payload = json.loads(result.content)
        assert payload["role_name"] == "General Physician AI (Radiance AI) - MOCK"
        assert payload["disclaimer"].startswith(MOCK_DISCLAIMER_NOTE)
        assert payload["recommended_specialist_type"] == "ENT Specialist"

    @pytest.mark.asyncio
    async def test_stream_replays_same_text(self, catalog):
        client = DemoCompletionClient(catalog, chunk_size=10)
        request = make_request(stage="pathologist", role_name="Pathologist AI (Radiance AI)")
        chunks = [c async for c in client.stream(request)]
        full = (await client.complete(request)).content
        assert len(chunks) > 1
        assert "".join(chunks) == full

    def test_build_client_selects_by_api_key(self, catalog):
        assert isinstance(build_client(None, catalog=catalog), DemoCompletionClient)
        assert isinstance(build_client("", catalog=catalog), DemoCompletionClient)
        assert isinstance(build_client("key", catalog=catalog), PerplexityClient)
