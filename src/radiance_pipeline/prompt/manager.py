"""PromptManager — Jinja2-based prompt renderer for the specialist roles.

Loads templates from the ``template/`` directory.  Each role has one
system-prompt template (named in ``roles.yaml``) that embeds the shared
JSON formatting rules; the user message is the JSON payload built by the
stage processor.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jinja2

from radiance_pipeline.models.input import PipelineUserInput
from radiance_pipeline.roles import RoleSpec

_IMAGE_USER_TEMPLATE = "medical_analyst_image_user.jinja2"


class PromptManager:
    """Jinja2-based prompt renderer for the eight roles.

    Args:
        template_dir: optional override for the template directory.
            Defaults to ``template/`` sibling of this module.
    """

    def __init__(self, template_dir: Path | None = None) -> None:
        if template_dir is None:
            template_dir = Path(__file__).parent / "template"
        self._env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(template_dir)),
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=jinja2.StrictUndefined,
        )
        self._env.filters["tojson"] = lambda v: json.dumps(v, ensure_ascii=False)

    def render(self, template_name: str, **context: Any) -> str:
        """Render a named template with arbitrary context."""
        template = self._env.get_template(template_name)
        return template.render(**context)

    def render_system(self, spec: RoleSpec, *, role_name: str, **context: Any) -> str:
        """Render *spec*'s system prompt."""
        return self.render(spec.template, role_name=role_name, **context).strip()

    @staticmethod
    def render_payload(payload: dict[str, Any]) -> str:
        """Serialise a stage's user payload as the user message text."""
        return json.dumps(payload, ensure_ascii=False, indent=2, default=str)

    def render_image_request(
        self, user_input: PipelineUserInput, image_url: str,
    ) -> list[dict[str, Any]]:
        """Multi-part user content for image reports: text part + image part."""
        text = self.render(
            _IMAGE_USER_TEMPLATE,
            user_details=user_input.user_details,
            symptoms=user_input.symptoms_info.symptoms_list,
            medical_conditions=user_input.medical_info.medical_conditions,
        ).strip()
        return [
            {"type": "text", "text": text},
            {"type": "image_url", "image_url": {"url": image_url}},
        ]
