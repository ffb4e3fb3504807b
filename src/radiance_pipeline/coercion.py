"""Response coercion — turn raw, possibly malformed model text into a dict.

The upstream model is asked for strict JSON but regularly wraps it in
prose, ``<think>`` blocks or Markdown fences, and occasionally emits
almost-JSON (bare keys, bare values, trailing commas).  :func:`coerce`
tries a fixed ladder of strategies, first success wins:

  1. Already a mapping, or the text parses as a JSON object as-is.
     Otherwise strip markup-like tags.
  2. Parse the contents of a fenced ```json ... ``` block.
  3. Parse the whole cleaned string.
  4. Take the largest ``{...}`` substring, apply regex repairs, parse.

The repair step is a heuristic, not a grammar: values containing commas,
colons or braces can be mangled.  Every use of it is logged at WARNING so
it can be tracked.

When every attempt fails, :func:`coerce` returns a deterministic fallback
object instead of raising; pipelines must never crash on unparsable model
output.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel

from radiance_pipeline.constants import (
    DEFAULT_DISCLAIMER,
    RAW_EXCERPT_LIMIT,
    UNSTRUCTURED_PLACEHOLDER,
)
from radiance_pipeline.errors import CoercionFailure

logger = logging.getLogger(__name__)

# --- Cleaning patterns ---
_THINK_BLOCK_RE = re.compile(r"<think>.*?(?:</think>|$)", re.DOTALL | re.IGNORECASE)
# Opening/closing/self-closing tags.  Requires a letter after "<" so that
# comparisons such as "<5 mg" inside values survive.
_TAG_RE = re.compile(r"</?[A-Za-z][A-Za-z0-9_:-]*(?:\s[^<>]*)?/?>")
_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)

# --- Repair patterns ---
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)")
_BARE_VALUE_RE = re.compile(r"(:\s*)([A-Za-z][^,\"{}\[\]\n]*?)(\s*[,}\]\n])")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_SINGLE_QUOTED_RE = re.compile(r"'([^'\\\n]*)'(\s*[:,}\]])")

_JSON_LITERALS = frozenset({"true", "false", "null"})


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def coerce(
    raw: str | Mapping[str, Any],
    *,
    fallback: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Coerce *raw* model output into a structured dict.

    Args:
        raw: the model's text content, or an already-structured mapping.
        fallback: stage-specific placeholder fields merged into the
            fallback object when every strategy fails.

    Never raises.
    """
    if isinstance(raw, Mapping):
        return dict(raw)
    if not isinstance(raw, str):
        raw = "" if raw is None else str(raw)

    attempts = (
        ("direct", lambda: _parse_object(raw.strip())),
        ("fenced", lambda: _parse_object(_extract_fenced(_strip_tags(raw)))),
        ("cleaned", lambda: _parse_object(_strip_tags(raw).strip())),
        ("repaired", lambda: _parse_repaired(_strip_tags(raw))),
    )
    for name, attempt in attempts:
        try:
            result = attempt()
        except CoercionFailure:
            continue
        if name != "direct":
            logger.debug("Coerced model output via %s strategy", name)
        return result

    logger.warning(
        "Unable to coerce model output (%d chars); returning fallback", len(raw),
    )
    return build_fallback(raw, fallback)


def coerce_to_text(obj: Any) -> str:
    """Serialise a structured object to clean JSON accepted by :func:`coerce`."""
    if isinstance(obj, BaseModel):
        obj = obj.model_dump(mode="json")
    return json.dumps(obj, ensure_ascii=False)


def build_fallback(
    raw: str, fallback: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Deterministic placeholder object for unparsable output.

    Always carries ``disclaimer``, the ``UNSTRUCTURED_PLACEHOLDER`` literal,
    ``is_fallback: True`` and an excerpt of at most ``RAW_EXCERPT_LIMIT``
    characters of the raw text for audit.
    """
    obj: dict[str, Any] = {
        "disclaimer": DEFAULT_DISCLAIMER,
        "placeholder": UNSTRUCTURED_PLACEHOLDER,
    }
    if fallback:
        obj.update(fallback)
    obj["is_fallback"] = True
    obj["raw_response_excerpt"] = (raw or "")[:RAW_EXCERPT_LIMIT]
    return obj


# ---------------------------------------------------------------------------
# Ladder steps
# ---------------------------------------------------------------------------

def _parse_object(text: str) -> dict[str, Any]:
    """Parse *text* as JSON, accepting only a top-level object."""
    if not text:
        raise CoercionFailure("empty input")
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, RecursionError) as exc:
        raise CoercionFailure(str(exc)) from exc
    if not isinstance(value, dict):
        raise CoercionFailure(f"expected a JSON object, got {type(value).__name__}")
    return value


def _strip_tags(text: str) -> str:
    text = _THINK_BLOCK_RE.sub("", text)
    return _TAG_RE.sub("", text)


def _extract_fenced(text: str) -> str:
    match = _FENCE_RE.search(text)
    if match is None:
        raise CoercionFailure("no fenced block")
    return match.group(1).strip()


def _largest_braced(text: str) -> str:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise CoercionFailure("no braced substring")
    return text[start:end + 1]


def _parse_repaired(text: str) -> dict[str, Any]:
    candidate = _largest_braced(text)
    try:
        return _parse_object(candidate)
    except CoercionFailure:
        pass

    repaired = _repair(candidate)
    try:
        result = _parse_object(repaired)
    except CoercionFailure:
        # Last resort: single-quoted strings.  Kept separate because it
        # corrupts apostrophes inside otherwise-valid double-quoted text.
        result = _parse_object(_repair(_SINGLE_QUOTED_RE.sub(r'"\1"\2', candidate)))
    logger.warning(
        "Model output required heuristic JSON repair (%d chars)", len(candidate),
    )
    return result


def _quote_bare_value(match: re.Match) -> str:
    prefix, value, suffix = match.groups()
    stripped = value.strip()
    if stripped in _JSON_LITERALS:
        return match.group(0)
    return f'{prefix}"{stripped}"{suffix}'


def _repair(text: str) -> str:
    text = _BARE_KEY_RE.sub(r'\1"\2"\3', text)
    text = _BARE_VALUE_RE.sub(_quote_bare_value, text)
    return _TRAILING_COMMA_RE.sub(r"\1", text)
