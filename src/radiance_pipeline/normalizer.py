"""Input normalizer — raw profile + symptom form + files -> ``PipelineUserInput``.

Rules:
  - Symptoms: comma-split, trimmed, empties dropped; an empty result is a
    :class:`ValidationError`.
  - Age: ``current_year - birth_year`` when a birth year is known, else the
    form's age string; birth year is back-filled from the age when missing.
  - BMI: ``weight / (height_m ** 2)`` rounded to one decimal, only when
    both height (cm) and weight (kg) are present.
  - Report: only the first file is used.  Images become ``{image_url}``
    only; anything else becomes ``{url, name, type, text}`` with text from
    a :class:`ReportTextExtractor`.
  - Optional text fields default to ``""``; dietary preference defaults to
    ``"Not specified"``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import date
from typing import Any

import httpx

from radiance_pipeline.errors import ValidationError
from radiance_pipeline.interfaces import FileStorage, ReportTextExtractor
from radiance_pipeline.models.input import (
    FileMetadata,
    HealthMetrics,
    MedicalInfo,
    MedicalReport,
    PipelineUserInput,
    SymptomsInfo,
    UserDetails,
)

logger = logging.getLogger(__name__)

# Signed URLs for report extraction only need to outlive one fetch.
SIGNED_URL_TTL_SECONDS = 60

PDF_PLACEHOLDER_TEXT = (
    "Text extraction for PDF reports is not available; "
    "the report was attached by the patient."
)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def parse_symptoms(raw: str | None) -> list[str]:
    """``"fever, cough ,  headache"`` -> ``["fever", "cough", "headache"]``."""
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def compute_bmi(height_cm: float | None, weight_kg: float | None) -> float | None:
    """BMI rounded to one decimal, or ``None`` when either input is missing."""
    if not height_cm or not weight_kg:
        return None
    height_m = height_cm / 100
    return round(weight_kg / (height_m * height_m), 1)


def _to_number(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _to_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def resolve_age(
    birth_year: Any, raw_age: Any, *, current_year: int,
) -> tuple[int, int]:
    """Return ``(age, birth_year)`` from whichever input is usable.

    Raises:
        ValidationError: neither a birth year nor a parsable age was given.
    """
    year = _to_int(birth_year)
    if year is not None and 0 < year <= current_year:
        return current_year - year, year

    age = _to_int(raw_age)
    if age is None or age < 0:
        raise ValidationError("A valid age or birth year is required", field="age")
    return age, current_year - age


# ---------------------------------------------------------------------------
# Report text extraction
# ---------------------------------------------------------------------------

class StubTextExtractor(ReportTextExtractor):
    """Minimal extractor: fetches ``text/*`` files, placeholders for the rest.

    The file is reached through a short-lived signed URL from *storage*.  If
    signing fails (bucket/permission errors) the file's public URL is used
    instead.  Files the storage holds in-process (a degraded upload) are
    read directly.  Any fetch failure yields ``""``; extraction problems
    never block a submission.
    """

    def __init__(
        self,
        storage: FileStorage | None = None,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._storage = storage
        self._timeout = timeout
        self._transport = transport

    async def _resolve_url(self, file: FileMetadata) -> str:
        if self._storage is not None and file.path:
            try:
                return await self._storage.get_signed_url(file.path, SIGNED_URL_TTL_SECONDS)
            except Exception as exc:
                logger.warning(
                    "Signing %s failed (%s); falling back to public URL", file.path, exc,
                )
        return file.public_url

    async def extract(self, file: FileMetadata) -> str:
        file_type = file.type.lower()
        if "pdf" in file_type:
            return PDF_PLACEHOLDER_TEXT
        if "text" not in file_type:
            return f"Unsupported file type: {file.type or 'unknown'}"

        if self._storage is not None and file.path:
            content = await self._storage.read_local(file.path)
            if content is not None:
                return content.decode("utf-8", errors="replace")

        url = await self._resolve_url(file)
        if not url:
            return ""
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport,
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.text
        except httpx.HTTPError as exc:
            logger.warning("Failed to fetch report text for %s: %s", file.name, exc)
            return ""


async def build_medical_report(
    files: Sequence[FileMetadata | Mapping[str, Any]] | None,
    extractor: ReportTextExtractor | None = None,
) -> MedicalReport | None:
    """Convert the first attached file into the ``medical_report`` shape."""
    if not files:
        return None
    first = files[0]
    file = first if isinstance(first, FileMetadata) else FileMetadata.model_validate(first)
    if len(files) > 1:
        logger.info("Ignoring %d extra attached files; only the first is analysed", len(files) - 1)

    if file.is_image:
        # An image is interpreted by the model directly; no OCR text alongside.
        return MedicalReport(image_url=file.public_url or None)

    extractor = extractor or StubTextExtractor()
    text = await extractor.extract(file)
    return MedicalReport(
        url=file.public_url,
        name=file.name,
        type=file.type,
        text=text,
    )


# ---------------------------------------------------------------------------
# normalize
# ---------------------------------------------------------------------------

async def normalize(
    user_id: str,
    raw_profile: Mapping[str, Any] | None,
    raw_symptom_form: Mapping[str, Any],
    files: Sequence[FileMetadata | Mapping[str, Any]] | None = None,
    *,
    extractor: ReportTextExtractor | None = None,
    authenticated_user_id: str | None = None,
    current_year: int | None = None,
) -> PipelineUserInput:
    """Build the canonical pipeline input.

    Args:
        user_id: caller-supplied owner id.
        raw_profile: stored profile fields (may be empty).
        raw_symptom_form: ``{symptoms, age, gender, duration, medicalHistory}``.
        files: uploaded report descriptors; only the first is used.
        extractor: text extractor for non-image reports.
        authenticated_user_id: id from the auth collaborator; takes
            precedence over *user_id* when present.
        current_year: override for deterministic age arithmetic.

    Raises:
        ValidationError: no symptoms, or no usable age / birth year.
    """
    profile = raw_profile or {}
    form = raw_symptom_form or {}
    year = current_year or date.today().year

    symptoms = parse_symptoms(form.get("symptoms"))
    if not symptoms:
        raise ValidationError("At least one symptom is required", field="symptoms")

    age, birth_year = resolve_age(profile.get("birth_year"), form.get("age"), current_year=year)

    height = _to_number(profile.get("height"))
    weight = _to_number(profile.get("weight"))

    return PipelineUserInput(
        user_details=UserDetails(
            id=authenticated_user_id or user_id,
            first_name=_text(profile.get("first_name")),
            last_name=_text(profile.get("last_name")),
            country=_text(profile.get("country")),
            state=_text(profile.get("state")),
            city=_text(profile.get("city")),
            zip_code=_text(profile.get("zip_code")),
            gender=_text(profile.get("gender") or form.get("gender")),
            birth_year=birth_year,
            age=age,
        ),
        health_metrics=HealthMetrics(
            height=height,
            weight=weight,
            bmi=compute_bmi(height, weight),
            dietary_preference=_text(profile.get("dietary_preference")) or "Not specified",
        ),
        symptoms_info=SymptomsInfo(
            symptoms_list=symptoms,
            duration=_text(form.get("duration")),
        ),
        medical_info=MedicalInfo(
            allergies=_text(profile.get("allergies")),
            medications=_text(profile.get("medications")),
            medical_conditions=_text(profile.get("medical_conditions")),
            health_history=_text(profile.get("health_history") or form.get("medicalHistory")),
        ),
        medical_report=await build_medical_report(files, extractor),
    )
