from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from string import Template
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml
from jsonschema import Draft7Validator

from audit_narrator.errors import RegistryLoadError
from audit_narrator.placeholders import base_field_name

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_REGISTRY_PATH = PACKAGE_DIR / "configs" / "prompt_registry.yaml"
REGISTRY_SCHEMA_PATH = PACKAGE_DIR / "schemas" / "prompt_registry.schema.json"

INSUFFICIENT_EVIDENCE = "[INSUFFICIENT_EVIDENCE]"


class OutputKind(str, Enum):
    STRING = "string"
    ARRAY_OF_STRINGS = "array_of_strings"
    HTML_FRAGMENT = "html_fragment"


@dataclass(frozen=True)
class PromptConstraints:
    max_length_chars: Optional[int] = None
    must_contain: Tuple[str, ...] = ()
    must_not_contain: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PromptDefinition:
    prompt_id: str
    field: str
    output_kind: OutputKind
    system_prompt: str
    user_template: str
    max_output_tokens: int = 200
    constraints: PromptConstraints = field(default_factory=PromptConstraints)
    approval_required: bool = False
    approval_gate: Optional[str] = None

    def render(self, context: Dict[str, Any]) -> Tuple[str, str]:
        values = {key: _template_value(value) for key, value in context.items()}
        return self.system_prompt, Template(self.user_template).safe_substitute(values)

    def validate_output(self, output: str) -> List[str]:
        errors: List[str] = []
        constraints = self.constraints
        if constraints.max_length_chars and len(output) > constraints.max_length_chars:
            errors.append(
                f"Output exceeds max length ({len(output)} > {constraints.max_length_chars})"
            )
        for phrase in constraints.must_contain:
            if phrase not in output:
                errors.append(f'Output missing required phrase: "{phrase}"')
        lowered = output.lower()
        for phrase in constraints.must_not_contain:
            if phrase.lower() in lowered:
                errors.append(f'Output contains forbidden phrase: "{phrase}"')
        if INSUFFICIENT_EVIDENCE in output:
            errors.append("LLM reported insufficient evidence")
        return errors


def _template_value(value: Any) -> str:
    if value is None:
        return "not provided"
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value):
        return ", ".join(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


class PromptRegistry:
    def __init__(self, prompts: Iterable[PromptDefinition], version: str = "unversioned") -> None:
        self.version = version
        self._by_field: Dict[str, PromptDefinition] = {}
        self._by_id: Dict[str, PromptDefinition] = {}
        for prompt in prompts:
            self._by_field[prompt.field] = prompt
            self._by_id[prompt.prompt_id] = prompt

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "PromptRegistry":
        registry_path = Path(path or os.getenv("NARRATOR_PROMPT_REGISTRY") or DEFAULT_REGISTRY_PATH)
        try:
            raw = yaml.safe_load(registry_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RegistryLoadError(f"Prompt registry not readable at {registry_path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise RegistryLoadError(f"Prompt registry is not valid YAML: {exc}") from exc
        return cls.from_dict(raw, source=str(registry_path))

    @classmethod
    def from_dict(cls, raw: Any, source: str = "<memory>") -> "PromptRegistry":
        schema = json.loads(REGISTRY_SCHEMA_PATH.read_text(encoding="utf-8"))
        envelope_errors = sorted(Draft7Validator(schema).iter_errors(raw), key=lambda e: list(e.path))
        if envelope_errors:
            messages = "; ".join(error.message for error in envelope_errors)
            raise RegistryLoadError(f"Prompt registry {source} is invalid: {messages}")

        entry_validator = Draft7Validator(schema["definitions"]["prompt"])
        prompts: List[PromptDefinition] = []
        for index, entry in enumerate(raw["prompts"]):
            entry_errors = list(entry_validator.iter_errors(entry))
            if entry_errors:
                logger.warning(
                    "[registry] skipping malformed prompt #%d in %s: %s",
                    index,
                    source,
                    entry_errors[0].message,
                )
                continue
            prompts.append(_definition_from_entry(entry))

        registry = cls(prompts, version=str(raw["registry_version"]))
        logger.info("[registry] loaded %d prompts (version %s)", len(registry), registry.version)
        return registry

    def lookup(self, field_name: str) -> Optional[PromptDefinition]:
        return self._by_field.get(base_field_name(field_name))

    def get(self, prompt_id: str) -> Optional[PromptDefinition]:
        return self._by_id.get(prompt_id)

    def fields(self) -> List[str]:
        return list(self._by_field)

    def __len__(self) -> int:
        return len(self._by_id)


def _definition_from_entry(entry: Dict[str, Any]) -> PromptDefinition:
    constraints = entry.get("output_constraints") or {}
    return PromptDefinition(
        prompt_id=entry["prompt_id"],
        field=entry["field"],
        output_kind=OutputKind(entry["output_type"]),
        system_prompt=entry.get("system_prompt", ""),
        user_template=entry["user_prompt_template"],
        max_output_tokens=int(entry.get("max_tokens", 200)),
        constraints=PromptConstraints(
            max_length_chars=constraints.get("max_length_chars"),
            must_contain=tuple(constraints.get("must_contain", [])),
            must_not_contain=tuple(constraints.get("must_not_contain", [])),
        ),
        approval_required=bool(entry.get("approval_required", False)),
        approval_gate=entry.get("approval_gate"),
    )
