"""Skill manifest schema, parsing and validation."""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, StringConstraints, ValidationError

from skillgate.exceptions import ManifestError

RiskLevel = Literal["low", "medium", "high", "critical"]
RuntimeType = Literal["node", "python", "shell", "powershell", "cmd"]

RISK_LEVELS: tuple[str, ...] = ("low", "medium", "high", "critical")
RUNTIME_TYPES: tuple[str, ...] = ("node", "python", "shell", "powershell", "cmd")
MANIFEST_FILENAMES: tuple[str, ...] = ("manifest.yaml", "manifest.yml", "manifest.json")

MAX_TOOLS = 32

_Str64 = Annotated[str, StringConstraints(min_length=1, max_length=64)]
_Str128 = Annotated[str, StringConstraints(min_length=1, max_length=128)]
_Str256 = Annotated[str, StringConstraints(min_length=1, max_length=256)]


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class RuntimeSpec(_FrozenModel):
    """How the skill entry is launched."""

    type: RuntimeType
    command: _Str256 | None = None
    args: Annotated[list[_Str256], Field(max_length=32)] | None = None
    env: dict[str, Annotated[str, StringConstraints(max_length=4096)]] | None = None
    timeout_ms: int | None = Field(default=None, ge=1000, le=120000)
    max_output_chars: int | None = Field(default=None, ge=256, le=200000)


class SkillTool(_FrozenModel):
    """A callable tool exposed by a skill."""

    name: _Str128
    description: Annotated[str, StringConstraints(min_length=1, max_length=4000)]
    input_schema: dict[str, Any]
    aliases: Annotated[list[_Str128], Field(max_length=10)] | None = None


class SkillManifest(_FrozenModel):
    """Declarative description of a skill package."""

    id: _Str128
    name: _Str256
    version: _Str64
    entry: Annotated[str, StringConstraints(min_length=1, max_length=512)]
    tools: list[SkillTool] = Field(min_length=1, max_length=MAX_TOOLS)
    python_packages: Annotated[list[_Str256], Field(max_length=128)] | None = None
    capabilities: list[_Str128] = Field(default_factory=list, max_length=64)
    runtime: RuntimeSpec
    permissions: list[_Str128] = Field(default_factory=list, max_length=64)
    platforms: list[_Str64] = Field(min_length=1, max_length=8)
    risk_level: RiskLevel = "low"

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def find_tool(self, name: str) -> SkillTool | None:
        """Find a tool by name or alias (case-insensitive)."""
        needle = normalize_tool_name(name)
        if not needle:
            return None
        for tool in self.tools:
            if normalize_tool_name(tool.name) == needle:
                return tool
            if any(normalize_tool_name(alias) == needle for alias in tool.aliases or []):
                return tool
        return None


def normalize_tool_name(value: str) -> str:
    """Normalize tool names for uniqueness and lookup comparisons."""
    return str(value or "").strip().lower()


def _format_validation_issues(error: ValidationError) -> str:
    issues: list[str] = []
    for issue in error.errors():
        path = ".".join(str(part) for part in issue.get("loc", ()))
        issues.append(f"{path or '<root>'}: {issue.get('msg', 'invalid value')}")
    return "; ".join(issues)


def validate_manifest_data(data: Any, source_name: str) -> SkillManifest:
    """Validate an already-parsed manifest mapping."""
    try:
        manifest = SkillManifest.model_validate(data)
    except ValidationError as exc:
        raise ManifestError(
            f"Invalid skill manifest ({source_name}): {_format_validation_issues(exc)}",
            source_name=source_name,
        ) from exc

    seen: set[str] = set()
    for tool in manifest.tools:
        key = normalize_tool_name(tool.name)
        if key in seen:
            raise ManifestError(
                f"Duplicate tool name in manifest ({source_name}): {tool.name}",
                source_name=source_name,
            )
        seen.add(key)
    return manifest


def parse_manifest_text(raw: str, source_name: str) -> SkillManifest:
    """Parse and validate manifest text (YAML or JSON).

    Raises:
        ManifestError: when the text is empty, unparseable, fails schema
            validation, or declares two tools whose names differ only by case.
    """
    if not raw or not raw.strip():
        raise ManifestError(f"Skill manifest is empty: {source_name}", source_name=source_name)

    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ManifestError(
            f"Failed to parse skill manifest ({source_name}): {exc}",
            source_name=source_name,
        ) from exc

    return validate_manifest_data(parsed, source_name)


def manifest_from_json(raw: str | None) -> SkillManifest | None:
    """Load a stored manifest; returns None when it is missing or invalid."""
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    try:
        return SkillManifest.model_validate(data)
    except ValidationError:
        return None
