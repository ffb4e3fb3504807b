"""RoleCatalog — loads the per-role settings from ``data/roles.yaml``.

Single source of truth for each stage's display name, upstream model,
token budget, system-prompt template, required-field defaults, fallback
placeholders and demo payload.  Loaded once at startup.

Usage::

    catalog = RoleCatalog()
    catalog.load()
    spec = catalog.get("general_physician")
    spec.model          # "sonar-pro"
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from radiance_pipeline.constants import LLM_MAX_TOKENS, STAGE_ORDER

logger = logging.getLogger(__name__)

_DEFAULT_PATH = Path(__file__).parent / "data" / "roles.yaml"


def load_yaml(path: Path | str) -> Any:
    """Load a single YAML file and return the parsed contents."""
    if isinstance(path, str):
        path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Missing YAML file: {path}")
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f)


class RoleSpec(BaseModel):
    """Settings for one specialist role."""

    stage: str
    role_name: str
    model: str
    max_tokens: int = LLM_MAX_TOKENS
    template: str
    defaults: dict[str, Any] = Field(default_factory=dict)
    fallback_fields: list[str] = Field(default_factory=list)
    demo: dict[str, Any] = Field(default_factory=dict)

    def display_name(self, **context: str) -> str:
        """Role name with template fields (e.g. ``{specialist_type}``) filled."""
        return self.role_name.format(**context) if context else self.role_name

    @property
    def default_disclaimer(self) -> str:
        return self.defaults.get("disclaimer", "")


class RoleCatalog:
    """Loads ``roles.yaml`` and provides lookup by stage key.

    Args:
        path: optional override for the YAML file.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path) if path is not None else _DEFAULT_PATH
        self._roles: dict[str, RoleSpec] = {}

    def load(self) -> "RoleCatalog":
        """Parse the YAML file.  Raises ``KeyError`` if a stage is missing."""
        raw = load_yaml(self._path) or {}
        roles = {
            stage: RoleSpec(stage=stage, **(body or {}))
            for stage, body in raw.items()
        }
        missing = [s for s in STAGE_ORDER if s not in roles]
        if missing:
            raise KeyError(f"roles.yaml is missing stages: {', '.join(missing)}")
        self._roles = roles
        logger.info("RoleCatalog loaded %d roles from %s", len(roles), self._path)
        return self

    def get(self, stage: str) -> RoleSpec:
        if not self._roles:
            self.load()
        try:
            return self._roles[stage]
        except KeyError:
            raise KeyError(f"Unknown stage: {stage}") from None

    def __iter__(self):
        return iter(self.get(stage) for stage in STAGE_ORDER)
