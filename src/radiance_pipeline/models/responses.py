"""Structured stage responses — one canonical model per specialist role.

Every response carries ``role_name``, ``disclaimer`` and
``reference_data_for_next_role`` (the compact hand-off block that later
stages receive instead of the full response).  Field types are kept loose
(``list[Any]``, ``dict[str, Any]``) because the upstream model nests
objects inconsistently; ``extra="allow"`` preserves anything the model adds,
including the ``is_fallback`` / ``raw_response_excerpt`` audit fields that
coercion fallbacks carry.

Older Specialist Doctor output used a flat shape (``condition``,
``supporting_evidence``, ``recommended_investigations`` ...).
:func:`adapt_legacy_specialist` maps it into the canonical shape at the
boundary so the rest of the SDK only ever sees one shape.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StageResponse(BaseModel):
    """Fields shared by every stage response."""

    model_config = ConfigDict(extra="allow")

    role_name: str
    disclaimer: str
    reference_data_for_next_role: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_fallback(self) -> bool:
        return bool((self.model_extra or {}).get("is_fallback"))


class MedicalAnalystResponse(StageResponse):
    report_type_analyzed: str = ""
    image_analysis: Any = None
    key_findings_from_report: list[Any] = Field(default_factory=list)
    abnormalities_highlighted: list[Any] = Field(default_factory=list)
    clinical_correlation_points_for_gp: list[Any] = Field(default_factory=list)


class GeneralPhysicianResponse(StageResponse):
    patient_summary_review: Any = None
    medical_analyst_findings_summary: str = ""
    preliminary_symptom_analysis: list[Any] = Field(default_factory=list)
    potential_areas_of_concern: list[Any] = Field(default_factory=list)
    recommended_specialist_type: str = ""
    general_initial_advice: list[Any] = Field(default_factory=list)
    questions_for_specialist_consultation: list[Any] = Field(default_factory=list)


class SpecialistDoctorResponse(StageResponse):
    patient_case_review_from_specialist_viewpoint: dict[str, Any] = Field(default_factory=dict)
    specialized_assessment_and_potential_conditions: list[Any] = Field(default_factory=list)
    recommended_diagnostic_and_management_approach: dict[str, Any] = Field(default_factory=dict)
    key_takeaways_for_patient: list[Any] = Field(default_factory=list)


class PathologistResponse(StageResponse):
    context_from_specialist: dict[str, Any] = Field(default_factory=dict)
    pathological_insights_for_potential_conditions: list[Any] = Field(default_factory=list)
    notes_on_test_interpretation: list[Any] = Field(default_factory=list)


class NutritionistResponse(StageResponse):
    nutritional_assessment_overview: dict[str, Any] = Field(default_factory=dict)
    general_dietary_goals: list[Any] = Field(default_factory=list)
    dietary_recommendations: dict[str, Any] = Field(default_factory=dict)
    addressing_weight_concerns: Any = None


class PharmacistResponse(StageResponse):
    patient_medication_profile_review: dict[str, Any] = Field(default_factory=dict)
    medication_classes_potentially_relevant: list[Any] = Field(default_factory=list)
    key_pharmacological_considerations: list[Any] = Field(default_factory=list)


class FollowUpSpecialistResponse(StageResponse):
    synthesis_of_case_progression: str = ""
    symptom_monitoring_guidelines: list[Any] = Field(default_factory=list)
    recommended_follow_up_guidance: list[Any] = Field(default_factory=list)
    when_to_seek_urgent_medical_care_RED_FLAGS: list[Any] = Field(default_factory=list)
    reinforcement_of_key_advice: list[Any] = Field(default_factory=list)


class SummarizerResponse(StageResponse):
    report_title: str = ""
    report_generated_for: str = ""
    report_date: str = ""
    introduction: str = ""
    patient_information_summary: Any = None
    potential_diagnoses: list[Any] = Field(default_factory=list)
    recommended_tests: list[Any] = Field(default_factory=list)
    medication_guidance: Any = None
    dietary_lifestyle_recommendations: Any = None
    radiance_ai_team_journey_overview: Any = None
    key_takeaways_and_recommendations_for_patient: list[Any] = Field(default_factory=list)
    final_disclaimer_from_radiance_ai: str = ""


RESPONSE_MODELS: dict[str, type[StageResponse]] = {
    "medical_analyst": MedicalAnalystResponse,
    "general_physician": GeneralPhysicianResponse,
    "specialist_doctor": SpecialistDoctorResponse,
    "pathologist": PathologistResponse,
    "nutritionist": NutritionistResponse,
    "pharmacist": PharmacistResponse,
    "follow_up_specialist": FollowUpSpecialistResponse,
    "summarizer": SummarizerResponse,
}


# ---------------------------------------------------------------------------
# Legacy shape adapter
# ---------------------------------------------------------------------------

# Keys that only appear in the older flat Specialist Doctor output.
_LEGACY_SPECIALIST_KEYS = frozenset({
    "condition",
    "contraindications",
    "supporting_evidence",
    "monitoring_parameters",
    "if_infectious_etiology",
    "secondary_considerations",
    "recommended_investigations",
    "diagnostic_considerations",
    "management_recommendations",
})


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def is_legacy_specialist(payload: dict[str, Any]) -> bool:
    """True when *payload* uses the flat legacy shape and lacks the canonical one."""
    if "specialized_assessment_and_potential_conditions" in payload:
        return False
    return bool(_LEGACY_SPECIALIST_KEYS & payload.keys())


def adapt_legacy_specialist(payload: dict[str, Any]) -> dict[str, Any]:
    """Map a legacy flat Specialist Doctor payload into the canonical shape.

    Canonical payloads are returned unchanged.  Unknown extra keys are kept
    so nothing the model produced is lost.
    """
    if not is_legacy_specialist(payload):
        return payload

    investigations = payload.get("recommended_investigations") or {}
    if isinstance(investigations, dict):
        further = _as_list(investigations.get("imaging")) + _as_list(
            investigations.get("laboratory")
        )
    else:
        further = _as_list(investigations)

    takeaways = [
        text
        for text in (
            payload.get("diagnostic_considerations"),
            payload.get("management_recommendations"),
        )
        if isinstance(text, str) and text.strip()
    ]

    condition = payload.get("condition") or ""
    supporting = _as_list(payload.get("supporting_evidence"))
    secondary = _as_list(payload.get("secondary_considerations"))

    adapted = {
        k: v for k, v in payload.items() if k not in _LEGACY_SPECIALIST_KEYS
    }
    adapted.update({
        "patient_case_review_from_specialist_viewpoint": {
            "key_information_from_gp_referral": "",
            "medical_analyst_data_consideration": "N/A",
            "specialist_focus_points": _as_list(payload.get("contraindications")),
        },
        "specialized_assessment_and_potential_conditions": (
            [{
                "condition_hypothesis": condition,
                "reasoning": payload.get("diagnostic_considerations") or "",
                "symptoms_match": supporting,
            }]
            if condition else []
        ),
        "recommended_diagnostic_and_management_approach": {
            "further_investigations_suggested": further,
            "general_management_principles": _as_list(
                payload.get("if_infectious_etiology")
            ),
            "lifestyle_and_supportive_care_notes": _as_list(
                payload.get("monitoring_parameters")
            ),
        },
        "key_takeaways_for_patient": takeaways,
    })

    reference = dict(adapted.get("reference_data_for_next_role") or {})
    reference.setdefault(
        "specialist_assessment_summary",
        payload.get("diagnostic_considerations") or condition,
    )
    reference.setdefault(
        "potential_conditions_considered",
        ([condition] if condition else []) + secondary,
    )
    reference.setdefault(
        "management_direction", payload.get("management_recommendations") or "",
    )
    adapted["reference_data_for_next_role"] = reference
    return adapted
