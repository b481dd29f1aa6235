"""Adapt plain SKILL.md instruction packages into runnable skills.

A repository that ships only a ``SKILL.md`` (optionally with YAML
front-matter) gets a synthesized single-tool manifest plus a small Python
runner that returns the guidance text and selected sibling files.
"""

import hashlib
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from skillgate.builtin import BUILTIN_SKILL_SLUGS
from skillgate.exceptions import CompatError
from skillgate.logging import get_logger
from skillgate.manifest import SkillManifest, validate_manifest_data
from skillgate.source import GitHubSkillSource

log = get_logger(__name__)

RUNNER_ENTRY = ".skillgate/skill_runner.py"
SKILL_MARKDOWN_NAMES: tuple[str, ...] = ("SKILL.md", "skill.md")

_FRONTMATTER_RE = re.compile(r"^---\r?\n([\s\S]*?)\r?\n---\r?\n?([\s\S]*)$")
_HEADING_RE = re.compile(r"^#\s+(.+?)\s*$")
_RUNNER_CONSTANTS_PLACEHOLDER = "__SKILLGATE_RUNNER_CONSTANTS__"

RUNNER_TEMPLATE = r'''"""Generated by skillgate: returns SKILL.md guidance for a task."""

import json
import os
import posixpath
import re
import sys
from pathlib import Path

CONSTS = json.loads(__SKILLGATE_RUNNER_CONSTANTS__)
MAX_INCLUDE_FILES = 10
MAX_FILES_TOTAL_CHARS = 90000
MAX_REFERENCE_FILES = 200
REFERENCE_EXTENSIONS = {
    ".md", ".txt", ".py", ".js", ".mjs", ".cjs", ".json",
    ".yaml", ".yml", ".sh", ".ps1", ".bat",
}
SKIPPED_NAMES = {".skillgate", ".git", "node_modules"}
TRUNCATED_SUFFIX = "\n\n[truncated]"
FRONTMATTER_RE = re.compile(r"^---\r?\n[\s\S]*?\r?\n---\r?\n?")

PACKAGE_ROOT = Path(__file__).resolve().parent.parent


def clamp_number(value, fallback, minimum, maximum):
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        return max(minimum, min(maximum, int(value)))
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return fallback
        return max(minimum, min(maximum, parsed))
    return fallback


def truncate_text(value, max_chars):
    if not value:
        return ""
    if len(value) <= max_chars:
        return value
    if max_chars <= len(TRUNCATED_SUFFIX):
        return value[:max_chars]
    return value[: max_chars - len(TRUNCATED_SUFFIX)] + TRUNCATED_SUFFIX


def normalize_relative_path(value):
    if not isinstance(value, str):
        return None
    cleaned = re.sub(r"/+", "/", value.strip().replace("\\", "/").lstrip("/"))
    if not cleaned:
        return None
    safe = posixpath.normpath(cleaned)
    if not safe or safe in {".", ".."} or safe.startswith("../"):
        return None
    return safe


def is_sub_path(root, target):
    root = root.resolve()
    target = target.resolve()
    return target == root or root in target.parents


def read_payload():
    raw = os.environ.get("SKILLGATE_SKILL_PAYLOAD_JSON") or sys.stdin.read()
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def pick_args(payload):
    args = payload.get("args")
    return args if isinstance(args, dict) else {}


def list_reference_files(root):
    result = []
    queue = [""]
    while queue and len(result) < MAX_REFERENCE_FILES:
        relative = queue.pop(0)
        current = root / relative if relative else root
        try:
            entries = sorted(current.iterdir(), key=lambda item: item.name)
        except OSError:
            continue
        for entry in entries:
            if entry.name in SKIPPED_NAMES:
                continue
            next_relative = posixpath.join(relative, entry.name) if relative else entry.name
            if not is_sub_path(root, root / next_relative):
                continue
            if entry.is_dir():
                queue.append(next_relative)
                continue
            if not entry.is_file():
                continue
            if entry.suffix.lower() not in REFERENCE_EXTENSIONS:
                continue
            if next_relative.lower() == CONSTS["skill_file_name"].lower():
                continue
            result.append(next_relative)
            if len(result) >= MAX_REFERENCE_FILES:
                break
    return sorted(result)


def read_included_files(root, requested, max_per_file, total_limit):
    files = {}
    consumed = 0
    for rel_path in requested:
        if len(files) >= MAX_INCLUDE_FILES or consumed >= total_limit:
            break
        normalized = normalize_relative_path(rel_path)
        if not normalized:
            continue
        full_path = root / normalized
        if not is_sub_path(root, full_path) or not full_path.is_file():
            continue
        try:
            raw = full_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        if not raw:
            continue
        remaining = max(0, total_limit - consumed)
        value = truncate_text(raw, max(512, min(max_per_file, remaining)))
        consumed += len(value)
        files[normalized] = value
    return files


def main():
    args = pick_args(read_payload())
    task = args.get("task").strip() if isinstance(args.get("task"), str) else ""
    include_full = args.get("include_full_skill_markdown") is not False
    include_files = args.get("include_files") if isinstance(args.get("include_files"), list) else []
    max_chars = clamp_number(args.get("max_chars"), 24000, 2000, 180000)

    markdown_raw = (PACKAGE_ROOT / CONSTS["skill_file_name"]).read_text(encoding="utf-8")
    if include_full:
        guidance = truncate_text(markdown_raw, max_chars)
    else:
        body = FRONTMATTER_RE.sub("", markdown_raw, count=1).strip()
        guidance = truncate_text(body, max(1600, max_chars // 3))

    result = {
        "ok": True,
        "skill": {
            "id": CONSTS["skill_id"],
            "name": CONSTS["display_name"],
            "file": CONSTS["skill_file_name"],
        },
        "task": task or None,
        "guidance": guidance,
        "includeFullSkillMarkdown": include_full,
        "referenceFiles": list_reference_files(PACKAGE_ROOT),
        "includedFiles": read_included_files(
            PACKAGE_ROOT,
            include_files,
            max(1000, max_chars // 2),
            MAX_FILES_TOTAL_CHARS,
        ),
    }
    sys.stdout.write(json.dumps(result, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:
        sys.stdout.write(json.dumps({"ok": False, "error": str(exc)}, ensure_ascii=False))
        sys.exit(1)
'''


@dataclass
class ParsedSkillMarkdown:
    frontmatter: dict[str, Any] = field(default_factory=dict)
    body: str = ""


@dataclass
class CompatManifestResult:
    manifest: SkillManifest
    instruction: str


def read_skill_markdown(directory: Path) -> tuple[str, str] | None:
    """Return ``(file_name, content)`` of the package's SKILL.md, if any."""
    directory = Path(directory)
    for candidate in SKILL_MARKDOWN_NAMES:
        path = directory / candidate
        if path.is_file():
            return candidate, path.read_text(encoding="utf-8")
    if not directory.is_dir():
        return None
    for entry in sorted(directory.iterdir(), key=lambda item: item.name):
        if entry.is_file() and entry.name.lower() == "skill.md":
            return entry.name, entry.read_text(encoding="utf-8")
    return None


def parse_skill_markdown(raw: str) -> ParsedSkillMarkdown:
    """Split SKILL.md into YAML front-matter and body.

    Raises:
        CompatError: when the document is empty or its front-matter is not a
            YAML mapping.
    """
    if not raw or not raw.strip():
        raise CompatError("SKILL.md is empty")

    text = raw.removeprefix("\ufeff")
    if not text.startswith("---"):
        return ParsedSkillMarkdown(body=text)
    matched = _FRONTMATTER_RE.match(text)
    if not matched:
        return ParsedSkillMarkdown(body=text)

    try:
        parsed = yaml.safe_load(matched.group(1))
    except yaml.YAMLError as exc:
        raise CompatError(f"Failed to parse SKILL.md frontmatter: {exc}") from exc
    if not isinstance(parsed, dict):
        raise CompatError("SKILL.md frontmatter must be a YAML object")
    return ParsedSkillMarkdown(frontmatter=parsed, body=matched.group(2) or "")


def to_kebab(value: str) -> str:
    lowered = str(value or "").strip().lower()
    kebab = re.sub(r"[^a-z0-9._-]+", "-", lowered)
    return re.sub(r"-+", "-", kebab).strip("-")


def _infer_id_from_source(source: GitHubSkillSource) -> str:
    if source.subdir:
        parts = [part for part in source.subdir.split("/") if part]
        last = to_kebab(parts[-1]) if parts else ""
        if last:
            return last
    return f"{to_kebab(source.owner)}-{to_kebab(source.repo)}".strip("-")


def normalize_skill_id(raw_name: str, source: GitHubSkillSource) -> str:
    """Derive the skill slug, prefixing ``ext-`` when it collides with a built-in."""
    candidate = to_kebab(raw_name) or _infer_id_from_source(source) or "external-skill"
    value = candidate[:128]
    if value in BUILTIN_SKILL_SLUGS:
        return f"ext-{value}"[:128]
    return value


def first_heading(body: str) -> str | None:
    for line in body.splitlines():
        matched = _HEADING_RE.match(line)
        if matched:
            return matched.group(1).strip()
    return None


def first_paragraph(body: str) -> str:
    """First non-heading paragraph, joined into a single line."""
    paragraph: list[str] = []
    for raw_line in body.replace("\r", "").split("\n"):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            if paragraph:
                break
            continue
        paragraph.append(line)
    return " ".join(paragraph).strip()


def to_tool_name(skill_id: str) -> str:
    base = f"consult_{re.sub(r'[^a-z0-9]+', '_', skill_id)}_skill"
    cleaned = re.sub(r"_+", "_", base).strip("_")
    return (cleaned or "consult_external_skill")[:64]


def build_compat_version(source: GitHubSkillSource, markdown: str) -> str:
    ref = to_kebab(source.ref or "main")[:24] or "main"
    digest = hashlib.sha256(markdown.encode("utf-8")).hexdigest()[:12]
    return f"anthropic-{ref}-{digest}"[:64]


def render_runner_script(skill_file_name: str, skill_id: str, display_name: str) -> str:
    constants = {
        "skill_file_name": skill_file_name,
        "skill_id": skill_id,
        "display_name": display_name,
    }
    return RUNNER_TEMPLATE.replace(
        _RUNNER_CONSTANTS_PLACEHOLDER,
        repr(json.dumps(constants, ensure_ascii=False)),
    )


def _frontmatter_text(frontmatter: dict[str, Any], key: str) -> str:
    value = frontmatter.get(key)
    return value.strip() if isinstance(value, str) else ""


def _consult_input_schema() -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "task": {
                "type": "string",
                "description": "Short description of the current user task, used to pick the most relevant guidance.",
            },
            "include_full_skill_markdown": {
                "type": "boolean",
                "description": "Return the complete SKILL.md (default true).",
            },
            "include_files": {
                "type": "array",
                "description": 'Optional relative paths of package files to include, e.g. ["editing.md"].',
                "items": {"type": "string"},
            },
            "max_chars": {
                "type": "integer",
                "description": "Character budget for the returned guidance (2000-180000).",
                "minimum": 2000,
                "maximum": 180000,
            },
        },
        "required": ["task"],
    }


def build_compat_manifest(extracted_dir: Path, source: GitHubSkillSource) -> CompatManifestResult | None:
    """Synthesize a manifest and runner for a SKILL.md-only package.

    Returns None when the directory has no SKILL.md.
    """
    extracted_dir = Path(extracted_dir)
    markdown = read_skill_markdown(extracted_dir)
    if markdown is None:
        return None
    file_name, content = markdown

    parsed = parse_skill_markdown(content)
    frontmatter_name = _frontmatter_text(parsed.frontmatter, "name")
    skill_id = normalize_skill_id(frontmatter_name, source)

    display_name = (
        _frontmatter_text(parsed.frontmatter, "title")
        or first_heading(parsed.body)
        or frontmatter_name
        or skill_id
    )[:256]
    description = (
        _frontmatter_text(parsed.frontmatter, "description")
        or first_paragraph(parsed.body)
        or f"{display_name} compatibility skill"
    )[:4000]

    runner_path = extracted_dir / RUNNER_ENTRY
    runner_path.parent.mkdir(parents=True, exist_ok=True)
    runner_path.write_text(
        render_runner_script(file_name, skill_id, display_name),
        encoding="utf-8",
    )

    manifest = validate_manifest_data(
        {
            "id": skill_id,
            "name": display_name,
            "version": build_compat_version(source, content),
            "entry": RUNNER_ENTRY,
            "tools": [
                {
                    "name": to_tool_name(skill_id),
                    "description": f"Consult {display_name} SKILL.md guidance for this task. {description}"[:4000],
                    "input_schema": _consult_input_schema(),
                }
            ],
            "python_packages": [],
            "capabilities": ["anthropic-skill-md", "instruction-guidance"],
            "runtime": {
                "type": "python",
                "timeout_ms": 30000,
                "max_output_chars": 120000,
            },
            "permissions": [],
            "platforms": ["linux", "windows", "darwin"],
            "risk_level": "low",
        },
        f"{source}/{file_name}",
    )
    log.info(
        "Synthesized manifest from SKILL.md",
        skill_id=skill_id,
        version=manifest.version,
        tool=manifest.tools[0].name,
    )
    return CompatManifestResult(manifest=manifest, instruction=content)
