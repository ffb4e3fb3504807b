"""Stage processor tests with scripted completion clients.

``ScriptedClient`` replays canned model output (or raises canned errors)
and records every ``CompletionRequest`` so tests can inspect prompts,
payloads and request parameters without network access.  Other test
modules import it together with ``make_user_input``.

Test scenarios:
  - Request parameters: temperature, top_p, per-role model and max_tokens
  - Payload references: only prerequisite stages' reference blocks
  - Demo client output: MOCK role name and mock disclaimer
  - Backfill of missing / wrongly-typed fields; fallback on garbage output
  - Legacy Specialist Doctor shape adapted to the canonical shape
  - Streaming callback contract (deltas, then one complete call)
  - Medical Analyst image handling and URL validation
  - Upstream errors and timeouts propagate as UpstreamError
"""

import asyncio
import json
from collections.abc import AsyncIterator

import pytest

from radiance_pipeline.constants import (
    LLM_TEMPERATURE,
    LLM_TOP_P,
    MOCK_DISCLAIMER_NOTE,
    MOCK_ROLE_SUFFIX,
    UNSTRUCTURED_PLACEHOLDER,
)
from radiance_pipeline.errors import UpstreamError, ValidationError
from radiance_pipeline.interfaces import CompletionClient
from radiance_pipeline.models.completion import CompletionRequest, CompletionResult
from radiance_pipeline.models.input import (
    MedicalReport,
    PipelineUserInput,
    SymptomsInfo,
    UserDetails,
)
from radiance_pipeline.models.responses import SpecialistDoctorResponse
from radiance_pipeline.stages import build_processors


# =====================================================================
# Test doubles (shared with other test modules)
# =====================================================================


def make_user_input(report: MedicalReport | None = None, **details) -> PipelineUserInput:
    """Canonical input for a 30-year-old with fever and sore throat."""
    return PipelineUserInput(
        user_details=UserDetails(
            id=details.pop("id", "user1"),
            first_name=details.pop("first_name", "Sam"),
            last_name=details.pop("last_name", "Rivera"),
            gender="Male",
            age=30,
            birth_year=1996,
            **details,
        ),
        symptoms_info=SymptomsInfo(symptoms_list=["fever", "sore throat"], duration="3 days"),
        medical_report=report,
    )


class ScriptedClient(CompletionClient):
    """Replays scripted outputs in order; an ``Exception`` entry is raised.

    When the script runs out, ``default`` is returned for every call.
    """

    def __init__(self, *outputs, default: str | None = None, chunk_size: int = 8):
        self.outputs = list(outputs)
        self.default = default
        self.chunk_size = chunk_size
        self.requests: list[CompletionRequest] = []
        self.streamed: list[bool] = []

    def _next(self, request: CompletionRequest) -> str:
        self.requests.append(request)
        output = self.outputs.pop(0) if self.outputs else self.default
        if isinstance(output, Exception):
            raise output
        if output is None:
            raise AssertionError(f"No scripted output left for stage {request.stage}")
        return output

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self.streamed.append(False)
        return CompletionResult(content=self._next(request), model=request.model)

    async def stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        self.streamed.append(True)
        text = self._next(request)
        for i in range(0, len(text), self.chunk_size):
            yield text[i:i + self.chunk_size]


class SlowClient(CompletionClient):
    """Never answers within any reasonable timeout."""

    async def complete(self, request):
        await asyncio.sleep(10)
        return CompletionResult(content="{}")

    async def stream(self, request):
        await asyncio.sleep(10)
        yield "{}"


def user_payload(request: CompletionRequest) -> dict:
    """Decode the JSON user message of a recorded request."""
    return json.loads(request.messages[1]["content"])


def system_prompt(request: CompletionRequest) -> str:
    return request.messages[0]["content"]


GP_OUTPUT = json.dumps({
    "role_name": "General Physician AI (Radiance AI)",
    "disclaimer": "Consult a doctor.",
    "preliminary_symptom_analysis": ["Likely viral"],
    "recommended_specialist_type": "Cardiologist",
    "reference_data_for_next_role": {"gp_summary_of_case": "GP summary"},
})

PRIOR = {
    "general_physician": {
        "recommended_specialist_type": "Cardiologist",
        "reference_data_for_next_role": {"gp_summary_of_case": "GP summary"},
    },
    "specialist_doctor": {
        "reference_data_for_next_role": {"specialist_assessment_summary": "Spec summary"},
    },
    "pathologist": {
        "reference_data_for_next_role": {"pathology_summary": "Path summary"},
    },
    "nutritionist": {
        "reference_data_for_next_role": {"nutrition_summary": "Nutrition summary"},
    },
}


# =====================================================================
# Fixtures
# =====================================================================


@pytest.fixture
def user_input():
    return make_user_input()


def processors_for(client, catalog, prompts, **kwargs):
    return build_processors(client, catalog, prompts, **kwargs)


# =====================================================================
# Request construction
# =====================================================================


class TestRequests:
    """What each processor sends upstream."""

    @pytest.mark.asyncio
    async def test_request_parameters(self, catalog, prompts, user_input):
        client = ScriptedClient(default=GP_OUTPUT)
        procs = processors_for(client, catalog, prompts)

        await procs["general_physician"].process(user_input, {})
        await procs["summarizer"].process(user_input, PRIOR)

        gp, summary = client.requests
        assert gp.temperature == LLM_TEMPERATURE == 0.1
        assert gp.top_p == LLM_TOP_P == 0.95
        assert gp.model == catalog.get("general_physician").model
        assert gp.max_tokens == 2000
        assert summary.max_tokens == catalog.get("summarizer").max_tokens
        assert gp.messages[0]["role"] == "system"
        assert gp.messages[1]["role"] == "user"

    @pytest.mark.asyncio
    async def test_gp_flags_missing_report(self, catalog, prompts, user_input):
        client = ScriptedClient(GP_OUTPUT)
        await processors_for(client, catalog, prompts)["general_physician"].process(user_input, {})

        payload = user_payload(client.requests[0])
        assert payload["no_medical_report"] is True
        assert payload["user_input"]["symptoms_info"]["symptoms_list"] == ["fever", "sore throat"]
        assert "reference_data_from_medical_analyst" not in payload

    @pytest.mark.asyncio
    async def test_only_prerequisite_references_are_sent(self, catalog, prompts, user_input):
        client = ScriptedClient(default=json.dumps({"disclaimer": "d"}))
        await processors_for(client, catalog, prompts)["pathologist"].process(user_input, PRIOR)

        payload = user_payload(client.requests[0])
        assert payload["reference_data_from_specialist"] == {
            "specialist_assessment_summary": "Spec summary",
        }
        assert "reference_data_from_nutritionist" not in payload, (
            "a stage must never see later stages' output"
        )
        assert "reference_data_from_gp" not in payload

    @pytest.mark.asyncio
    async def test_summarizer_receives_all_earlier_responses(self, catalog, prompts, user_input):
        client = ScriptedClient(json.dumps({"report_title": "Report"}))
        response = await processors_for(client, catalog, prompts)["summarizer"].process(
            user_input, PRIOR,
        )

        payload = user_payload(client.requests[0])
        assert set(payload["all_ai_responses"]) == set(PRIOR)
        assert response.report_generated_for == "Sam Rivera"
        assert response.report_date, "report_date is backfilled"


# =====================================================================
# Response handling
# =====================================================================


class TestResponses:

    @pytest.mark.asyncio
    async def test_demo_client_marks_output_as_mock(self, catalog, prompts, demo_client, user_input):
        response = await processors_for(demo_client, catalog, prompts)["general_physician"].process(
            user_input, {},
        )
        assert response.role_name.endswith(MOCK_ROLE_SUFFIX)
        assert response.disclaimer.startswith(MOCK_DISCLAIMER_NOTE)
        assert response.recommended_specialist_type == "ENT Specialist"

    @pytest.mark.asyncio
    async def test_missing_and_wrongly_typed_fields_are_backfilled(self, catalog, prompts, user_input):
        client = ScriptedClient(json.dumps({
            "preliminary_symptom_analysis": "should be a list",
            "reference_data_for_next_role": {"gp_summary_of_case": "kept"},
        }))
        response = await processors_for(client, catalog, prompts)["general_physician"].process(
            user_input, {},
        )
        defaults = catalog.get("general_physician").defaults

        assert response.role_name == "General Physician AI (Radiance AI)"
        assert response.disclaimer == defaults["disclaimer"]
        assert response.preliminary_symptom_analysis == []
        assert response.recommended_specialist_type == "General Practitioner"
        assert response.reference_data_for_next_role["gp_summary_of_case"] == "kept"
        assert response.reference_data_for_next_role["analyst_ref_if_any"] == "N/A", (
            "missing reference sub-keys are merged from defaults"
        )

    @pytest.mark.asyncio
    async def test_garbage_output_becomes_fallback(self, catalog, prompts, user_input):
        client = ScriptedClient("<html>upstream exploded</html>")
        response = await processors_for(client, catalog, prompts)["pharmacist"].process(
            user_input, PRIOR,
        )
        dumped = response.model_dump()

        assert response.is_fallback
        assert response.disclaimer
        assert UNSTRUCTURED_PLACEHOLDER in json.dumps(dumped)
        assert response.role_name == "Pharmacist AI (Radiance AI)"

    @pytest.mark.asyncio
    async def test_execute_returns_raw_text(self, catalog, prompts, user_input):
        raw = "```json\n" + GP_OUTPUT + "\n```"
        client = ScriptedClient(raw)
        run = await processors_for(client, catalog, prompts)["general_physician"].execute(
            user_input, {},
        )
        assert run.raw_text == raw
        assert run.streamed is False
        assert run.response.recommended_specialist_type == "Cardiologist"


class TestSpecialist:
    """Specialist Doctor takes its identity from the GP referral."""

    @pytest.mark.asyncio
    async def test_prompt_and_role_name_follow_gp(self, catalog, prompts, user_input):
        client = ScriptedClient(json.dumps({"key_takeaways_for_patient": ["Rest"]}))
        response = await processors_for(client, catalog, prompts)["specialist_doctor"].process(
            user_input, PRIOR,
        )

        assert "Cardiologist" in system_prompt(client.requests[0])
        assert response.role_name == "Cardiologist AI (Radiance AI)"
        payload = user_payload(client.requests[0])
        assert payload["reference_data_from_gp"] == {"gp_summary_of_case": "GP summary"}

    @pytest.mark.asyncio
    async def test_missing_referral_defaults_to_general_practitioner(self, catalog, prompts, user_input):
        client = ScriptedClient(json.dumps({}))
        prior = {"general_physician": {"recommended_specialist_type": "  "}}
        response = await processors_for(client, catalog, prompts)["specialist_doctor"].process(
            user_input, prior,
        )
        assert response.role_name == "General Practitioner AI (Radiance AI)"

    @pytest.mark.asyncio
    async def test_legacy_shape_is_adapted(self, catalog, prompts, user_input):
        legacy = {
            "role_name": "Cardiologist AI (Radiance AI)",
            "disclaimer": "d",
            "condition": "Myocarditis",
            "supporting_evidence": ["fever", "chest pain"],
            "secondary_considerations": ["Pericarditis"],
            "recommended_investigations": {
                "imaging": ["Echocardiogram"],
                "laboratory": ["Troponin"],
            },
            "diagnostic_considerations": "Consider viral myocarditis.",
            "management_recommendations": "Cardiology follow-up.",
            "monitoring_parameters": ["Heart rate"],
            "contraindications": ["Strenuous exercise"],
        }
        client = ScriptedClient(json.dumps(legacy))
        response = await processors_for(client, catalog, prompts)["specialist_doctor"].process(
            user_input, PRIOR,
        )

        assert isinstance(response, SpecialistDoctorResponse)
        assessment = response.specialized_assessment_and_potential_conditions
        assert assessment[0]["condition_hypothesis"] == "Myocarditis"
        assert assessment[0]["symptoms_match"] == ["fever", "chest pain"]
        approach = response.recommended_diagnostic_and_management_approach
        assert approach["further_investigations_suggested"] == ["Echocardiogram", "Troponin"]
        assert response.key_takeaways_for_patient == [
            "Consider viral myocarditis.",
            "Cardiology follow-up.",
        ]
        reference = response.reference_data_for_next_role
        assert reference["potential_conditions_considered"] == ["Myocarditis", "Pericarditis"]
        assert "condition" not in response.model_dump(), "legacy keys must not leak through"


# =====================================================================
# Streaming
# =====================================================================


class TestStreaming:

    @pytest.mark.asyncio
    async def test_chunks_then_one_complete_call(self, catalog, prompts, user_input):
        client = ScriptedClient(GP_OUTPUT, chunk_size=16)
        calls: list[tuple[str, bool]] = []

        def on_chunk(text, is_complete):
            calls.append((text, is_complete))

        run = await processors_for(client, catalog, prompts)["general_physician"].execute(
            user_input, {}, on_chunk=on_chunk,
        )

        assert run.streamed
        deltas = [text for text, done in calls if not done]
        completes = [text for text, done in calls if done]
        assert len(deltas) > 1
        assert completes == [GP_OUTPUT], "exactly one final call with the full text"
        assert calls[-1] == (GP_OUTPUT, True)
        assert "".join(deltas) == GP_OUTPUT

    @pytest.mark.asyncio
    async def test_async_callbacks_are_awaited(self, catalog, prompts, user_input):
        client = ScriptedClient(GP_OUTPUT)
        received: list[str] = []

        async def on_chunk(text, is_complete):
            await asyncio.sleep(0)
            received.append(text)

        await processors_for(client, catalog, prompts)["general_physician"].process(
            user_input, {}, on_chunk=on_chunk,
        )
        assert received[-1] == GP_OUTPUT


# =====================================================================
# Medical Analyst
# =====================================================================


class TestMedicalAnalyst:

    @pytest.mark.asyncio
    async def test_text_report_payload(self, catalog, prompts):
        report = MedicalReport(url="https://x/cbc.txt", name="cbc.txt", type="text/plain", text="WBC 11.8")
        client = ScriptedClient(json.dumps({"report_type_analyzed": "CBC"}))
        response = await processors_for(client, catalog, prompts)["medical_analyst"].process(
            make_user_input(report), {},
        )

        payload = user_payload(client.requests[0])
        assert payload["medical_report"]["text"] == "WBC 11.8"
        assert payload["patient_info"]["symptoms"] == ["fever", "sore throat"]
        assert response.report_type_analyzed == "CBC"

    @pytest.mark.asyncio
    async def test_image_report_is_multipart_and_not_streamed(self, catalog, prompts):
        report = MedicalReport(image_url="https://cdn.example/xray.png")
        client = ScriptedClient(json.dumps({"image_analysis": "clear"}))
        calls = []

        run = await processors_for(client, catalog, prompts)["medical_analyst"].execute(
            make_user_input(report), {}, on_chunk=lambda t, d: calls.append(t),
        )

        content = client.requests[0].messages[1]["content"]
        assert [part["type"] for part in content] == ["text", "image_url"]
        assert content[1]["image_url"]["url"] == "https://cdn.example/xray.png"
        assert run.streamed is False
        assert client.streamed == [False]
        assert calls == [], "image requests never stream"

    @pytest.mark.asyncio
    async def test_non_http_image_url_rejected(self, catalog, prompts):
        report = MedicalReport(image_url="file:///etc/passwd")
        client = ScriptedClient(default="{}")
        with pytest.raises(ValidationError):
            await processors_for(client, catalog, prompts)["medical_analyst"].process(
                make_user_input(report), {},
            )
        assert client.requests == [], "nothing is sent for an invalid URL"

    @pytest.mark.asyncio
    async def test_missing_report_rejected(self, catalog, prompts, user_input):
        client = ScriptedClient(default="{}")
        with pytest.raises(ValidationError):
            await processors_for(client, catalog, prompts)["medical_analyst"].process(user_input, {})


# =====================================================================
# Upstream failures
# =====================================================================


class TestUpstreamFailures:

    @pytest.mark.asyncio
    async def test_upstream_error_propagates(self, catalog, prompts, user_input):
        client = ScriptedClient(UpstreamError(500, "boom"))
        with pytest.raises(UpstreamError) as exc_info:
            await processors_for(client, catalog, prompts)["nutritionist"].process(user_input, PRIOR)
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_timeout_becomes_upstream_error(self, catalog, prompts, user_input):
        procs = processors_for(SlowClient(), catalog, prompts, timeout=0.01)
        with pytest.raises(UpstreamError) as exc_info:
            await procs["general_physician"].process(user_input, {})
        assert exc_info.value.status_code is None
        assert "timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_streaming_timeout(self, catalog, prompts, user_input):
        procs = processors_for(SlowClient(), catalog, prompts, timeout=0.01)
        with pytest.raises(UpstreamError):
            await procs["general_physician"].process(
                user_input, {}, on_chunk=lambda t, d: None,
            )
