"""
Prompt and agent text sources.

Storage of prompts and agent definitions lives outside the engine; these
protocols are what the stage executor needs from it. The defaults keep
everything in memory.
"""
import json
import logging
import re
from typing import Any, Mapping, Optional, Protocol

from keel_engine.exceptions import ConfigurationError

logger = logging.getLogger("keel.engine.sources")

# {{ inputs.name.nested }} or {{ name }}
_PLACEHOLDER_RE = re.compile(r"\{\{\s*(?:inputs\.)?([\w\-]+(?:\.[\w\-]+)*)\s*\}\}")


class PromptSource(Protocol):
    def render(self, prompt: str, inputs: Mapping[str, Any]) -> str: ...


class AgentSource(Protocol):
    def system_prompt(self, role: str) -> str: ...


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2, default=str, ensure_ascii=False)


def render_template(template: str, inputs: Mapping[str, Any]) -> str:
    """Substitute ``{{ name }}`` placeholders; unknown names stay as written."""

    def _replacer(match: re.Match) -> str:
        value: Any = inputs
        for part in match.group(1).split("."):
            if isinstance(value, Mapping) and part in value:
                value = value[part]
            else:
                return match.group(0)
        return _format_value(value)

    return _PLACEHOLDER_RE.sub(_replacer, template)


class TemplatePromptSource:
    """
    Prompt templates keyed by prompt reference.

    Parameters:
        templates: prompt id -> template text.
        strict: Unknown prompt ids raise ConfigurationError instead of
            being used as the template themselves.
    """

    def __init__(self, templates: Optional[Mapping[str, str]] = None, strict: bool = False):
        self.templates = dict(templates or {})
        self.strict = strict

    def render(self, prompt: str, inputs: Mapping[str, Any]) -> str:
        template = self.templates.get(prompt)
        if template is None:
            if self.strict:
                raise ConfigurationError(f"Unknown prompt '{prompt}'")
            template = prompt
        if "{{" in template:
            return render_template(template, inputs)
        if not inputs:
            return template
        # Plain prompt text: append inputs so the model sees them
        return template + "\n\nInputs:\n" + _format_value(dict(inputs))


class RoleAgentSource:
    """Agent instructions keyed by role, with a generated default."""

    def __init__(self, instructions: Optional[Mapping[str, str]] = None):
        self.instructions = dict(instructions or {})

    def system_prompt(self, role: str) -> str:
        if role in self.instructions:
            return self.instructions[role]
        return (
            f"You are the {role} agent. Complete the task below and, when named outputs "
            "are requested, answer with a single JSON object in a ```json code block."
        )
