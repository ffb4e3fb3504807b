"""Pydantic models for the chain-diagnosis SDK."""

from radiance_pipeline.models.completion import CompletionRequest, CompletionResult
from radiance_pipeline.models.input import (
    FileMetadata,
    HealthMetrics,
    MedicalInfo,
    MedicalReport,
    PipelineUserInput,
    SymptomsInfo,
    UserDetails,
)
from radiance_pipeline.models.responses import (
    RESPONSE_MODELS,
    FollowUpSpecialistResponse,
    GeneralPhysicianResponse,
    MedicalAnalystResponse,
    NutritionistResponse,
    PathologistResponse,
    PharmacistResponse,
    SpecialistDoctorResponse,
    StageResponse,
    SummarizerResponse,
    adapt_legacy_specialist,
)
from radiance_pipeline.models.session import (
    DiagnosisSession,
    SessionInfo,
    StepOutcome,
)

__all__ = [
    # Input
    "FileMetadata",
    "HealthMetrics",
    "MedicalInfo",
    "MedicalReport",
    "PipelineUserInput",
    "SymptomsInfo",
    "UserDetails",
    # Completion
    "CompletionRequest",
    "CompletionResult",
    # Stage responses
    "RESPONSE_MODELS",
    "StageResponse",
    "MedicalAnalystResponse",
    "GeneralPhysicianResponse",
    "SpecialistDoctorResponse",
    "PathologistResponse",
    "NutritionistResponse",
    "PharmacistResponse",
    "FollowUpSpecialistResponse",
    "SummarizerResponse",
    "adapt_legacy_specialist",
    # Session
    "DiagnosisSession",
    "SessionInfo",
    "StepOutcome",
]
