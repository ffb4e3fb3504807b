"""Canonical pipeline input — the normalised shape every stage consumes.

Produced by :func:`radiance_pipeline.normalizer.normalize` and stored
unchanged on the session.  Optional text fields default to ``""`` so
prompt construction never has to special-case missing values.
"""

from pydantic import BaseModel, Field, model_validator


class UserDetails(BaseModel):
    """Patient demographics."""

    id: str
    first_name: str = ""
    last_name: str = ""
    country: str = ""
    state: str = ""
    city: str = ""
    zip_code: str = ""
    gender: str = ""
    birth_year: int | None = None
    age: int | None = None


class HealthMetrics(BaseModel):
    """Body measurements; ``bmi`` is derived by the normalizer."""

    height: float | None = None  # cm
    weight: float | None = None  # kg
    bmi: float | None = None
    dietary_preference: str = "Not specified"


class SymptomsInfo(BaseModel):
    symptoms_list: list[str] = Field(min_length=1)
    duration: str = ""


class MedicalInfo(BaseModel):
    allergies: str = ""
    medications: str = ""
    medical_conditions: str = ""
    health_history: str = ""


class MedicalReport(BaseModel):
    """A single attached report: an image reference OR extracted text.

    Image reports carry only ``image_url`` so the model never receives an
    image together with possibly-conflicting OCR text.
    """

    image_url: str | None = None
    url: str | None = None
    name: str | None = None
    type: str | None = None
    text: str | None = None

    @model_validator(mode="after")
    def _image_xor_text(self) -> "MedicalReport":
        if self.image_url and self.text:
            raise ValueError("medical_report cannot carry both image_url and text")
        return self

    @property
    def is_image(self) -> bool:
        return bool(self.image_url)

    @property
    def has_content(self) -> bool:
        return bool(self.image_url or self.text)


class PipelineUserInput(BaseModel):
    """Everything the stage processors know about the patient."""

    user_details: UserDetails
    health_metrics: HealthMetrics = Field(default_factory=HealthMetrics)
    symptoms_info: SymptomsInfo
    medical_info: MedicalInfo = Field(default_factory=MedicalInfo)
    medical_report: MedicalReport | None = None

    @property
    def has_medical_report(self) -> bool:
        return self.medical_report is not None and self.medical_report.has_content


class FileMetadata(BaseModel):
    """Uploaded file descriptor returned by the file-storage collaborator."""

    id: str
    name: str
    size: int = 0
    type: str = ""
    path: str = ""
    public_url: str = ""

    @property
    def is_image(self) -> bool:
        return self.type.startswith("image/")
