"""Single-report analysis — run the Medical Analyst stage outside a session.

Nothing is persisted.  The response has the same shape as a session's
``medical_analyst_response``.
"""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field, field_validator

from radiance_pipeline.models.input import (
    MedicalReport,
    PipelineUserInput,
    SymptomsInfo,
    UserDetails,
)
from radiance_pipeline.normalizer import parse_symptoms
from radiance_pipeline.stages import StageProcessor

from radiance_server.dependencies import get_processors, get_user_id

router = APIRouter(tags=["analysis"])

# Used when the caller sends no symptoms alongside the report
UNSPECIFIED_SYMPTOMS = ["Not specified"]
# Report type given to a report sent as plain text
PLAIN_TEXT_REPORT_TYPE = "Medical Report"


# ------------------------------------------------------------------
# Request models
# ------------------------------------------------------------------

class PatientInfo(BaseModel):
    age: int | None = None
    gender: str = ""
    symptoms: str = ""
    medical_history: str = Field(default="", alias="medicalHistory")

    model_config = ConfigDict(populate_by_name=True)


class AnalyzeReportRequest(BaseModel):
    """Body for POST /analysis/medical-report."""
    medical_report: MedicalReport = Field(alias="medicalReport")
    patient_info: PatientInfo = Field(default_factory=PatientInfo, alias="patientInfo")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("medical_report", mode="before")
    @classmethod
    def _wrap_plain_text(cls, value: Any) -> Any:
        # a bare string is the report text itself
        if isinstance(value, str):
            return {"text": value, "type": PLAIN_TEXT_REPORT_TYPE}
        return value


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------

@router.post("/analysis/medical-report")
async def analyze_medical_report(
    body: AnalyzeReportRequest,
    user_id: str = Depends(get_user_id),
    processors: dict[str, StageProcessor] = Depends(get_processors),
) -> dict[str, Any]:
    """Analyse one report with the Medical Analyst role.

    ``medicalReport`` is either a report object or the report text as a
    plain string.

    Raises 422 when the report has neither an image nor text, or the
    image URL is not http(s); 502 when the model call fails.
    """
    patient = body.patient_info
    user_input = PipelineUserInput(
        user_details=UserDetails(id=user_id, gender=patient.gender, age=patient.age),
        symptoms_info=SymptomsInfo(
            symptoms_list=parse_symptoms(patient.symptoms) or UNSPECIFIED_SYMPTOMS,
        ),
        medical_info={"medical_conditions": patient.medical_history},
        medical_report=body.medical_report,
    )
    response = await processors["medical_analyst"].process(user_input, {})
    return response.model_dump(mode="json")
