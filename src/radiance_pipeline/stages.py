"""Stage processors — one per specialist role.

Every processor follows the same recipe:

  1. Build the role's system prompt (Jinja2) and a JSON user payload that
     embeds the canonical user input plus the ``reference_data_for_next_role``
     blocks of its prerequisite stages, never later ones.
  2. Call the completion client, streaming deltas to an optional callback.
  3. Coerce the raw text into a dict, adapt legacy shapes, backfill
     required fields with the role's safe defaults, and validate into the
     role's response model.

Processors never check stage ordering; :class:`DiagnosisPipeline` does.
Upstream failures propagate as :class:`UpstreamError`.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import date
from typing import Any

from radiance_pipeline.coercion import coerce
from radiance_pipeline.constants import (
    LLM_TEMPERATURE,
    LLM_TIMEOUT_SECONDS,
    LLM_TOP_P,
    REFERENCE_INPUTS,
    STAGE_ORDER,
    UNSTRUCTURED_PLACEHOLDER,
)
from radiance_pipeline.errors import UpstreamError, ValidationError
from radiance_pipeline.interfaces import CompletionClient
from radiance_pipeline.models.completion import CompletionRequest
from radiance_pipeline.models.input import PipelineUserInput
from radiance_pipeline.models.responses import (
    RESPONSE_MODELS,
    StageResponse,
    adapt_legacy_specialist,
)
from radiance_pipeline.prompt import PromptManager
from radiance_pipeline.roles import RoleCatalog, RoleSpec

logger = logging.getLogger(__name__)

# on_chunk(text, is_complete): deltas arrive with is_complete=False, then one
# final call carries the full accumulated text with is_complete=True.
StreamCallback = Callable[[str, bool], Awaitable[None] | None]

DEFAULT_SPECIALIST_TYPE = "General Practitioner"


@dataclass
class StageRun:
    """Everything one processor call produced."""

    response: StageResponse
    raw_text: str
    streamed: bool


async def emit_chunk(callback: StreamCallback, text: str, is_complete: bool) -> None:
    result = callback(text, is_complete)
    if inspect.isawaitable(result):
        await result


class StageProcessor:
    """Base processor; subclasses set ``stage`` and override the hooks.

    Args:
        client: completion endpoint.
        catalog: loaded role catalog.
        prompts: prompt renderer (a default one is created if omitted).
        timeout: upper bound in seconds for one upstream call, including
            the whole stream.
    """

    stage: str = ""

    def __init__(
        self,
        client: CompletionClient,
        catalog: RoleCatalog,
        prompts: PromptManager | None = None,
        *,
        timeout: float = LLM_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._catalog = catalog
        self._prompts = prompts or PromptManager()
        self._timeout = timeout

    @property
    def spec(self) -> RoleSpec:
        return self._catalog.get(self.stage)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process(
        self,
        user_input: PipelineUserInput,
        prior: Mapping[str, dict[str, Any]],
        *,
        on_chunk: StreamCallback | None = None,
    ) -> StageResponse:
        """Run the stage and return its validated structured response."""
        run = await self.execute(user_input, prior, on_chunk=on_chunk)
        return run.response

    async def execute(
        self,
        user_input: PipelineUserInput,
        prior: Mapping[str, dict[str, Any]],
        *,
        on_chunk: StreamCallback | None = None,
    ) -> StageRun:
        """Like :meth:`process` but also returns the raw upstream text."""
        role_name = self.role_name(prior)
        request = CompletionRequest(
            stage=self.stage,
            role_name=role_name,
            model=self.spec.model,
            messages=[
                {"role": "system", "content": self.system_prompt(user_input, prior, role_name)},
                {"role": "user", "content": self.user_content(user_input, prior)},
            ],
            temperature=LLM_TEMPERATURE,
            max_tokens=self.spec.max_tokens,
            top_p=LLM_TOP_P,
        )

        streamed = on_chunk is not None and self.supports_streaming(user_input)
        logger.info(
            "Running stage %s (model=%s, streaming=%s)",
            self.stage, request.model, streamed,
        )
        try:
            if streamed:
                raw_text = await asyncio.wait_for(
                    self._stream(request, on_chunk), self._timeout,
                )
            else:
                result = await asyncio.wait_for(
                    self._client.complete(request), self._timeout,
                )
                raw_text = result.content
        except asyncio.TimeoutError as exc:
            raise UpstreamError(
                None, f"{self.stage} timed out after {self._timeout:g}s",
            ) from exc

        response = self.finalize(raw_text, user_input, prior, role_name)
        if response.is_fallback:
            logger.warning("Stage %s produced a fallback response", self.stage)
        return StageRun(response=response, raw_text=raw_text, streamed=streamed)

    def finalize(
        self,
        raw_text: str,
        user_input: PipelineUserInput,
        prior: Mapping[str, dict[str, Any]],
        role_name: str,
    ) -> StageResponse:
        """Coerce, adapt, backfill and validate *raw_text*."""
        data = coerce(raw_text, fallback=self._fallback_fields(role_name))
        data = self.adapt(data)
        data = self.backfill(data, role_name, user_input)
        return RESPONSE_MODELS[self.stage].model_validate(data)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def role_name(self, prior: Mapping[str, dict[str, Any]]) -> str:
        return self.spec.display_name()

    def supports_streaming(self, user_input: PipelineUserInput) -> bool:
        return True

    def system_prompt(
        self,
        user_input: PipelineUserInput,
        prior: Mapping[str, dict[str, Any]],
        role_name: str,
    ) -> str:
        return self._prompts.render_system(self.spec, role_name=role_name)

    def payload(
        self,
        user_input: PipelineUserInput,
        prior: Mapping[str, dict[str, Any]],
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"user_input": user_input.model_dump(mode="json")}
        payload.update(self.references(prior))
        return payload

    def user_content(
        self,
        user_input: PipelineUserInput,
        prior: Mapping[str, dict[str, Any]],
    ) -> str | list[dict[str, Any]]:
        return self._prompts.render_payload(self.payload(user_input, prior))

    def adapt(self, data: dict[str, Any]) -> dict[str, Any]:
        return data

    def backfill(
        self,
        data: dict[str, Any],
        role_name: str,
        user_input: PipelineUserInput,
    ) -> dict[str, Any]:
        """Fill missing or wrongly-typed required fields with role defaults."""
        data = dict(data)
        filled = []
        if not isinstance(data.get("role_name"), str) or not data["role_name"].strip():
            data["role_name"] = role_name
            filled.append("role_name")

        for key, default in self.spec.defaults.items():
            value = data.get(key)
            if value is None or not isinstance(value, type(default)) or (
                isinstance(default, str) and key == "disclaimer" and not value.strip()
            ):
                data[key] = copy.deepcopy(default)
                filled.append(key)
            elif isinstance(default, dict) and default:
                merged = dict(value)
                for sub_key, sub_default in default.items():
                    merged.setdefault(sub_key, copy.deepcopy(sub_default))
                data[key] = merged

        if filled:
            logger.info("Stage %s backfilled fields: %s", self.stage, ", ".join(filled))
        return data

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def references(self, prior: Mapping[str, dict[str, Any]]) -> dict[str, Any]:
        """``reference_data_for_next_role`` blocks of this stage's inputs."""
        refs = {}
        for key, source in REFERENCE_INPUTS[self.stage].items():
            response = prior.get(source)
            if response:
                refs[key] = response.get("reference_data_for_next_role") or {}
        return refs

    def _fallback_fields(self, role_name: str) -> dict[str, Any]:
        fields: dict[str, Any] = {"role_name": role_name}
        for name in self.spec.fallback_fields:
            if isinstance(self.spec.defaults.get(name), list):
                fields[name] = [UNSTRUCTURED_PLACEHOLDER]
            else:
                fields[name] = UNSTRUCTURED_PLACEHOLDER
        return fields

    async def _stream(self, request: CompletionRequest, on_chunk: StreamCallback) -> str:
        parts: list[str] = []
        async for delta in self._client.stream(request):
            parts.append(delta)
            await emit_chunk(on_chunk, delta, False)
        full_text = "".join(parts)
        await emit_chunk(on_chunk, full_text, True)
        return full_text


# ======================================================================
# Role processors
# ======================================================================


class MedicalAnalystProcessor(StageProcessor):
    """Analyses an attached report; image reports are sent as multi-part content."""

    stage = "medical_analyst"

    def supports_streaming(self, user_input: PipelineUserInput) -> bool:
        report = user_input.medical_report
        return not (report is not None and report.is_image)

    def system_prompt(self, user_input, prior, role_name):
        report = self._require_report(user_input)
        return self._prompts.render_system(
            self.spec, role_name=role_name, report=report, has_image=report.is_image,
        )

    def user_content(self, user_input, prior):
        report = self._require_report(user_input)
        if report.is_image:
            if not report.image_url.startswith(("http://", "https://")):
                raise ValidationError(
                    "Image URL must start with http:// or https://",
                    field="medical_report.image_url",
                )
            return self._prompts.render_image_request(user_input, report.image_url)

        return self._prompts.render_payload({
            "patient_info": {
                "age": user_input.user_details.age,
                "gender": user_input.user_details.gender,
                "symptoms": user_input.symptoms_info.symptoms_list,
                "medical_history": user_input.medical_info.medical_conditions,
            },
            "medical_report": {
                "type": report.type or "Unknown",
                "name": report.name or "Unknown",
                "text": report.text or "",
            },
        })

    @staticmethod
    def _require_report(user_input: PipelineUserInput):
        if not user_input.has_medical_report:
            raise ValidationError(
                "Medical Analyst requires a medical report", field="medical_report",
            )
        return user_input.medical_report


class GeneralPhysicianProcessor(StageProcessor):
    stage = "general_physician"

    def payload(self, user_input, prior):
        payload = super().payload(user_input, prior)
        payload["no_medical_report"] = "medical_analyst" not in prior
        return payload


class SpecialistDoctorProcessor(StageProcessor):
    """Acts as whichever specialist the General Physician recommended."""

    stage = "specialist_doctor"

    @staticmethod
    def specialist_type(prior: Mapping[str, dict[str, Any]]) -> str:
        gp = prior.get("general_physician") or {}
        value = gp.get("recommended_specialist_type")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return DEFAULT_SPECIALIST_TYPE

    def role_name(self, prior):
        return self.spec.display_name(specialist_type=self.specialist_type(prior))

    def system_prompt(self, user_input, prior, role_name):
        return self._prompts.render_system(
            self.spec, role_name=role_name, specialist_type=self.specialist_type(prior),
        )

    def adapt(self, data):
        return adapt_legacy_specialist(data)


class PathologistProcessor(StageProcessor):
    stage = "pathologist"


class NutritionistProcessor(StageProcessor):
    stage = "nutritionist"


class PharmacistProcessor(StageProcessor):
    stage = "pharmacist"


class FollowUpSpecialistProcessor(StageProcessor):
    stage = "follow_up_specialist"


class SummarizerProcessor(StageProcessor):
    """Compiles the patient-facing report from every earlier response."""

    stage = "summarizer"

    def system_prompt(self, user_input, prior, role_name):
        return self._prompts.render_system(
            self.spec, role_name=role_name, report_date=date.today().isoformat(),
        )

    def payload(self, user_input, prior):
        earlier = STAGE_ORDER[:STAGE_ORDER.index(self.stage)]
        return {
            "user_input": user_input.model_dump(mode="json"),
            "all_ai_responses": {s: prior[s] for s in earlier if prior.get(s)},
        }

    def backfill(self, data, role_name, user_input):
        data = super().backfill(data, role_name, user_input)
        details = user_input.user_details
        if not data.get("report_generated_for"):
            full_name = f"{details.first_name} {details.last_name}".strip()
            data["report_generated_for"] = full_name or "Patient"
        if not data.get("report_date"):
            data["report_date"] = date.today().isoformat()
        return data


_PROCESSOR_CLASSES: tuple[type[StageProcessor], ...] = (
    MedicalAnalystProcessor,
    GeneralPhysicianProcessor,
    SpecialistDoctorProcessor,
    PathologistProcessor,
    NutritionistProcessor,
    PharmacistProcessor,
    FollowUpSpecialistProcessor,
    SummarizerProcessor,
)


def build_processors(
    client: CompletionClient,
    catalog: RoleCatalog | None = None,
    prompts: PromptManager | None = None,
    *,
    timeout: float = LLM_TIMEOUT_SECONDS,
) -> dict[str, StageProcessor]:
    """Instantiate all eight processors keyed by stage."""
    if catalog is None:
        catalog = RoleCatalog().load()
    prompts = prompts or PromptManager()
    return {
        cls.stage: cls(client, catalog, prompts, timeout=timeout)
        for cls in _PROCESSOR_CLASSES
    }
