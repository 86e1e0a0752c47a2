"""Assembles node prompts from ordered prompt parts.

Parts are concatenated in order. A separator goes before a part when the
previous emitted part had a different category, and before every dependency
so that consecutive dependency values stay apart. Framework parts carry their
own ``--- name ---`` header instead of the plain separator.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from cascade.core.graph_model import GraphModel
from cascade.core.graph_schema import DependencyPart, FrameworkPart, PromptPart, TextPart
from cascade.core.state import Database

logger = logging.getLogger(__name__)

PART_SEPARATOR = "\n\n---\n\n"

_FULL_FENCE = re.compile(r"^```(?:\w+)?\s*([\s\S]*?)```$")
_LEADING_FENCE = re.compile(r"^```(?:\w+)?\s*")
_TRAILING_FENCE = re.compile(r"\s*```\s*$")


def strip_code_fences(text: str) -> str:
    """Remove a markdown code fence wrapped around (or dangling from) model output."""
    s = text.strip()
    match = _FULL_FENCE.match(s)
    if match:
        return match.group(1).strip()
    s = _LEADING_FENCE.sub("", s)
    s = _TRAILING_FENCE.sub("", s)
    return s.strip()


def format_value(value: Any, indent: int | None = 2) -> str:
    """Text form of a dependency value: strings as-is, anything else as JSON."""
    if isinstance(value, str):
        return value
    if indent is None:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)
    return json.dumps(value, indent=indent, ensure_ascii=False, default=str)


@dataclass
class AssembledPrompt:
    """Result of assembling a promptTemplate node."""

    prompt: str
    system_prompt: str | None = None
    reference: str = ""  # Dependency material, used as evaluation ground truth

    @property
    def evaluation_reference(self) -> str:
        return self.reference.strip() or self.prompt.strip()

    def messages(self) -> list[dict[str, str]]:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": self.prompt.strip()})
        return messages


class PromptAssembler:
    """Builds prompt text for one workflow.

    ``deps`` passed to the assemble methods map dependency keys to their
    resolved values (see ExecutionContext.resolve_dependencies); a dependency
    without a value contributes nothing.
    """

    def __init__(self, db: Database, model: GraphModel):
        self.db = db
        self.model = model

    def _system_prompt(self, parts: list[PromptPart]) -> str | None:
        for part in parts:
            if not part.system_prompt_id:
                continue
            row = self.db.get_system_prompt(part.system_prompt_id)
            if row is None:
                logger.warning(f"System prompt not found: {part.system_prompt_id}")
                continue
            return row["prompt"]
        return None

    def assemble(self, parts: list[PromptPart], deps: dict[str, Any]) -> AssembledPrompt:
        system_prompt = self._system_prompt(parts)
        prompt = ""
        reference = ""
        last_category: str | None = None

        for part in parts:
            # System prompt references become the system message, not body text
            if part.system_prompt_id:
                continue

            needs_separator = last_category is not None and (
                last_category != part.category or isinstance(part, DependencyPart)
            )

            if isinstance(part, TextPart):
                if needs_separator:
                    prompt += PART_SEPARATOR
                prompt += part.value
                last_category = part.category

            elif isinstance(part, DependencyPart):
                key = self.model.part_ref(part).key
                if key not in deps:
                    logger.debug(f"Dependency {key} has no output yet")
                    continue
                if needs_separator:
                    prompt += PART_SEPARATOR
                text = strip_code_fences(format_value(deps[key]))
                prompt += text
                reference += text + "\n"
                last_category = part.category

            elif isinstance(part, FrameworkPart):
                framework = self.db.get_framework(part.value)
                if framework and framework.get("schema"):
                    prompt += f"\n\n--- {framework['name']} ---\n{framework['schema']}\n"
                    reference += f"[Framework: {framework['name']}]\n"
                    last_category = part.category
                else:
                    logger.warning(f"Framework not found: {part.value}")
                    prompt += f"\n[Framework not found: {part.framework_name or part.value}]\n"

        return AssembledPrompt(prompt=prompt, system_prompt=system_prompt, reference=reference)

    def assemble_plain(self, parts: list[PromptPart], deps: dict[str, Any]) -> str:
        """Plain concatenation of text and dependency values, no separators.

        Used for prompt pieces and integration inputs, where the text is data
        rather than context for a model.
        """
        text = ""
        for part in parts:
            if isinstance(part, TextPart):
                text += part.value
            elif isinstance(part, DependencyPart):
                key = self.model.part_ref(part).key
                if key in deps:
                    text += format_value(deps[key], indent=None)
        return text
