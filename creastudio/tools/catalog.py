"""
Prompt-template tool catalog.

Each studio panel is a catalog entry: the form fields it collects, the template
that turns those fields into a prompt, the output kind and the model to call.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import yaml

from creastudio.tools import messages

KINDS = ("text", "list", "stream", "image", "image_edit", "audio", "video")
FIELD_TYPES = ("text", "choice", "image")

DEFAULT_ERRORS = {
    "text": messages.TEXT_FAILED,
    "list": messages.TEXT_FAILED,
    "stream": messages.TEXT_FAILED,
    "image": messages.IMAGE_FAILED,
    "image_edit": messages.IMAGE_FAILED,
    "audio": messages.AUDIO_FAILED,
    "video": messages.VIDEO_FAILED,
}


class CatalogError(ValueError):
    pass


@dataclass
class FieldSpec:
    name: str
    label: str = ""
    type: str = "text"
    required: bool = False
    default: Optional[str] = None
    choices: Dict[str, str] = field(default_factory=dict)

    def resolve(self, value: Any) -> str:
        """Value as it appears in the prompt; choice keys map to their description."""
        if value is None or (isinstance(value, str) and not value.strip()):
            value = self.default
        value = "" if value is None else str(value).strip()
        if self.type == "choice" and self.choices:
            return self.choices.get(value, value)
        return value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "label": self.label,
            "type": self.type,
            "required": self.required,
            "default": self.default,
            "choices": dict(self.choices),
        }


@dataclass
class ToolSpec:
    tool_id: str
    title: str
    kind: str
    model: str
    template: str
    fields: List[FieldSpec] = field(default_factory=list)
    system_instruction: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None

    @property
    def text_fields(self) -> List[FieldSpec]:
        return [f for f in self.fields if f.type != "image"]

    @property
    def image_fields(self) -> List[FieldSpec]:
        return [f for f in self.fields if f.type == "image"]

    @property
    def failure_message(self) -> str:
        return self.error_message or DEFAULT_ERRORS[self.kind]

    def missing_fields(self, values: Mapping[str, Any], images: Optional[Mapping[str, Any]] = None) -> List[str]:
        """Names of required fields that are absent or blank."""
        images = images or {}
        missing = []
        for f in self.fields:
            if not f.required:
                continue
            if f.type == "image":
                if images.get(f.name) is None:
                    missing.append(f.name)
                continue
            value = values.get(f.name)
            if value is None or not str(value).strip():
                missing.append(f.name)
        return missing

    def render(self, values: Mapping[str, Any]) -> str:
        params = {f.name: f.resolve(values.get(f.name)) for f in self.text_fields}
        return self.template.format(**params).strip()

    def resolve_model(self, config: Mapping[str, Any]) -> str:
        # "video_model" style names point into the config; anything else is a literal id
        return str(config.get(self.model) or self.model)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_id": self.tool_id,
            "title": self.title,
            "kind": self.kind,
            "model": self.model,
            "fields": [f.to_dict() for f in self.fields],
            "options": dict(self.options),
        }


def _parse_field(tool_id: str, raw: Mapping[str, Any]) -> FieldSpec:
    if "name" not in raw:
        raise CatalogError(f"{tool_id}: field without a name")
    ftype = raw.get("type", "text")
    if ftype not in FIELD_TYPES:
        raise CatalogError(f"{tool_id}.{raw['name']}: unknown field type {ftype!r}")
    default = raw.get("default")
    return FieldSpec(
        name=raw["name"],
        label=raw.get("label", raw["name"]),
        type=ftype,
        required=bool(raw.get("required", False)),
        default=None if default is None else str(default),
        choices={str(k): str(v) for k, v in (raw.get("choices") or {}).items()},
    )


def parse_tool(tool_id: str, raw: Mapping[str, Any]) -> ToolSpec:
    kind = raw.get("kind")
    if kind not in KINDS:
        raise CatalogError(f"{tool_id}: unknown kind {kind!r}")
    template = raw.get("template")
    if not template:
        raise CatalogError(f"{tool_id}: template is required")
    fields = [_parse_field(tool_id, f) for f in raw.get("fields") or []]
    if kind in ("image_edit", "video") and not any(f.type == "image" for f in fields):
        raise CatalogError(f"{tool_id}: {kind} tools need an image field")
    return ToolSpec(
        tool_id=tool_id,
        title=raw.get("title", tool_id),
        kind=kind,
        model=raw.get("model", ""),
        template=template,
        fields=fields,
        system_instruction=raw.get("system_instruction"),
        options=dict(raw.get("options") or {}),
        error_message=raw.get("error_message"),
    )


def load_catalog(path: str) -> Dict[str, ToolSpec]:
    if not os.path.exists(path):
        raise CatalogError(f"Catalog file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    tools = data.get("tools") or {}
    return {tool_id: parse_tool(tool_id, raw) for tool_id, raw in tools.items()}
