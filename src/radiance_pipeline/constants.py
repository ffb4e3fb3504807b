"""Chain-diagnosis constants shared across the SDK.

Stage ordering, prerequisite tables, model request defaults, and the
literal markers that distinguish mock and fallback output from genuine
model output.

Several constants can be overridden via environment variables so that
deployments can tune the upstream model call without code changes.
"""

import os

# Stage keys in pipeline order.  ``current_step`` indexes into this list;
# step 8 (== len(STAGE_ORDER)) means every stage has run.
STAGE_ORDER: list[str] = [
    "medical_analyst",
    "general_physician",
    "specialist_doctor",
    "pathologist",
    "nutritionist",
    "pharmacist",
    "follow_up_specialist",
    "summarizer",
]

COMPLETED_STEP = len(STAGE_ORDER)

# Human-readable stage names for API responses, logging, and
# precondition error messages.
STAGE_NAMES: dict[str, str] = {
    "medical_analyst": "Medical Analyst",
    "general_physician": "General Physician",
    "specialist_doctor": "Specialist Doctor",
    "pathologist": "Pathologist",
    "nutritionist": "Nutritionist",
    "pharmacist": "Pharmacist",
    "follow_up_specialist": "Follow-up Specialist",
    "summarizer": "Summarizer",
}

# Stages whose responses must be present before step N may run.
# Steps 0 and 1 have no hard prerequisites (the Medical Analyst is optional).
PREREQUISITES: dict[int, tuple[str, ...]] = {
    0: (),
    1: (),
    2: ("general_physician",),
    3: ("specialist_doctor",),
    4: ("specialist_doctor", "pathologist"),
    5: ("specialist_doctor", "pathologist", "nutritionist"),
    6: ("specialist_doctor", "pathologist", "nutritionist", "pharmacist"),
    7: (
        "specialist_doctor", "pathologist", "nutritionist", "pharmacist",
        "follow_up_specialist",
    ),
}

# Reference blocks each stage receives in its prompt payload.  Keys are the
# prompt payload field names; values are the stage whose
# ``reference_data_for_next_role`` fills them.
REFERENCE_INPUTS: dict[str, dict[str, str]] = {
    "medical_analyst": {},
    "general_physician": {
        "reference_data_from_medical_analyst": "medical_analyst",
    },
    "specialist_doctor": {
        "reference_data_from_gp": "general_physician",
        "reference_data_from_medical_analyst": "medical_analyst",
    },
    "pathologist": {
        "reference_data_from_specialist": "specialist_doctor",
        "reference_data_from_medical_analyst": "medical_analyst",
    },
    "nutritionist": {
        "reference_data_from_specialist": "specialist_doctor",
        "reference_data_from_pathologist": "pathologist",
    },
    "pharmacist": {
        "reference_data_from_specialist": "specialist_doctor",
        "reference_data_from_pathologist": "pathologist",
        "reference_data_from_nutritionist": "nutritionist",
    },
    "follow_up_specialist": {
        "reference_data_from_gp": "general_physician",
        "reference_data_from_specialist": "specialist_doctor",
        "reference_data_from_pathologist": "pathologist",
        "reference_data_from_nutritionist": "nutritionist",
        "reference_data_from_pharmacist": "pharmacist",
    },
    "summarizer": {},
}

# --- Upstream model call defaults ---
# Low temperature keeps the clinical tone deterministic across retries.
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.1"))
LLM_TOP_P = float(os.getenv("LLM_TOP_P", "0.95"))
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "2000"))
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "120"))
DEFAULT_API_BASE_URL = os.getenv("PERPLEXITY_BASE_URL", "https://api.perplexity.ai")

# Delay after a streamed stage completes before the streaming indicator
# is turned off, so consumers can drain late chunks.
STREAM_SETTLE_SECONDS = float(os.getenv("STREAM_SETTLE_SECONDS", "0.5"))

# --- Output markers ---
DEFAULT_DISCLAIMER = (
    "This information is for educational purposes only and is not a "
    "substitute for professional medical advice, diagnosis, or treatment. "
    "Please consult a qualified healthcare professional. Radiance AI."
)
# Present in every fallback object produced by the coercion utility.
UNSTRUCTURED_PLACEHOLDER = (
    "UNSTRUCTURED_PLACEHOLDER: Unable to extract structured findings from the model output"
)
MOCK_ROLE_SUFFIX = " - MOCK"
MOCK_DISCLAIMER_NOTE = "THIS IS A MOCK RESPONSE FOR TESTING PURPOSES."

# Upper bound on raw text copied into fallbacks and error messages.
RAW_EXCERPT_LIMIT = 500

# Warning attached to sessions whose latest state lives only in memory.
NOT_DURABLY_SAVED = "Session progress is not durably saved; storage is unavailable"
