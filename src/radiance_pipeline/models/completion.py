"""Chat-completion request/response models.

``CompletionRequest`` mirrors the upstream JSON body; ``stage`` and
``role_name`` are local metadata (never sent upstream) that let the demo
client build the right canned payload.
"""

from typing import Any

from pydantic import BaseModel, Field

from radiance_pipeline.constants import LLM_MAX_TOKENS, LLM_TEMPERATURE, LLM_TOP_P


class CompletionRequest(BaseModel):
    stage: str
    # Display name the response should carry; local only
    role_name: str = ""
    model: str
    # [{role, content}] where content is a string or a list of
    # {type: "text"|"image_url", ...} parts for multimodal requests
    messages: list[dict[str, Any]]
    temperature: float = LLM_TEMPERATURE
    max_tokens: int = LLM_MAX_TOKENS
    top_p: float = LLM_TOP_P

    def to_payload(self, *, stream: bool) -> dict[str, Any]:
        """Upstream request body."""
        body = self.model_dump(exclude={"stage", "role_name"})
        body["stream"] = stream
        return body


class CompletionResult(BaseModel):
    content: str
    model: str = ""
    usage: dict[str, Any] = Field(default_factory=dict)
