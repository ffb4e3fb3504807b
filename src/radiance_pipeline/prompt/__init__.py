"""Prompt rendering for the specialist roles.

Provides ``PromptManager``, a Jinja2-based template engine that renders each
role's system prompt with JSON response format instructions.
"""

from radiance_pipeline.prompt.manager import PromptManager

__all__ = ["PromptManager"]
