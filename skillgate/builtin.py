"""Built-in skill catalog and its synchronization into the store."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from skillgate.logging import get_logger
from skillgate.manifest import RiskLevel, SkillManifest, validate_manifest_data
from skillgate.models import (
    SCOPE_SYSTEM,
    SKILL_STATUS_ACTIVE,
    SOURCE_BUILTIN,
    SYSTEM_SCOPE_ID,
    VERSION_ACTIVE,
    utcnow,
)
from skillgate.store import SkillStore

log = get_logger(__name__)

BUILTIN_SKILL_VERSION = "builtin-1.0.0"

_PYTHON_RUNNER_DEFAULT_PACKAGES = [
    "numpy",
    "sympy",
    "scipy",
    "statsmodels",
    "networkx",
    "scikit-learn",
    "matplotlib",
    "pandas",
    "pulp",
]


def _object_schema(properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


@dataclass(frozen=True)
class BuiltinSkill:
    slug: str
    display_name: str
    description: str
    risk_level: RiskLevel
    tools: list[dict[str, Any]]
    python_packages: list[str] = field(default_factory=list)


BUILTIN_SKILLS: list[BuiltinSkill] = [
    BuiltinSkill(
        slug="web-search",
        display_name="Web Search",
        description="Built-in web search.",
        risk_level="medium",
        tools=[
            {
                "name": "web_search",
                "description": "Search the web for up-to-date information.",
                "input_schema": _object_schema(
                    {"query": {"type": "string", "description": "Search query"}}, ["query"]
                ),
            },
        ],
    ),
    BuiltinSkill(
        slug="python-runner",
        display_name="Python Runner",
        description="Built-in Python execution.",
        risk_level="high",
        python_packages=list(_PYTHON_RUNNER_DEFAULT_PACKAGES),
        tools=[
            {
                "name": "python_runner",
                "description": "Run deterministic Python snippets.",
                "input_schema": _object_schema(
                    {"code": {"type": "string", "description": "Python source code"}}, ["code"]
                ),
            },
        ],
    ),
    BuiltinSkill(
        slug="url-reader",
        display_name="URL Reader",
        description="Built-in web page text extraction.",
        risk_level="medium",
        tools=[
            {
                "name": "read_url",
                "description": "Read and extract text from a URL.",
                "input_schema": _object_schema(
                    {"url": {"type": "string", "description": "URL to read"}}, ["url"]
                ),
            },
        ],
    ),
    BuiltinSkill(
        slug="document-search",
        display_name="Document Search",
        description="Search documents attached to the conversation.",
        risk_level="low",
        tools=[
            {
                "name": "document_list",
                "description": "List attached documents.",
                "input_schema": _object_schema({}),
            },
            {
                "name": "document_search",
                "description": "Search within attached documents.",
                "input_schema": _object_schema({"query": {"type": "string"}}, ["query"]),
            },
            {
                "name": "document_get_content",
                "description": "Get full document content.",
                "input_schema": _object_schema({"document_id": {"type": "number"}}, ["document_id"]),
            },
            {
                "name": "document_get_toc",
                "description": "Get document table of contents.",
                "input_schema": _object_schema({"document_id": {"type": "number"}}, ["document_id"]),
            },
            {
                "name": "document_get_section",
                "description": "Get a section from document.",
                "input_schema": _object_schema(
                    {"document_id": {"type": "number"}, "section_id": {"type": "string"}},
                    ["document_id", "section_id"],
                ),
            },
        ],
    ),
    BuiltinSkill(
        slug="knowledge-base-search",
        display_name="Knowledge Base Search",
        description="Search knowledge bases.",
        risk_level="low",
        tools=[
            {
                "name": "kb_search",
                "description": "Search in knowledge bases.",
                "input_schema": _object_schema({"query": {"type": "string"}}, ["query"]),
            },
            {
                "name": "kb_get_documents",
                "description": "List knowledge base documents.",
                "input_schema": _object_schema({"kb_id": {"type": "number"}}, ["kb_id"]),
            },
            {
                "name": "kb_get_document_content",
                "description": "Get knowledge base document content.",
                "input_schema": _object_schema({"document_id": {"type": "number"}}, ["document_id"]),
            },
            {
                "name": "kb_get_toc",
                "description": "Get knowledge base document TOC.",
                "input_schema": _object_schema({"document_id": {"type": "number"}}, ["document_id"]),
            },
            {
                "name": "kb_get_section",
                "description": "Get section from knowledge base document.",
                "input_schema": _object_schema(
                    {"document_id": {"type": "number"}, "section_id": {"type": "string"}},
                    ["document_id", "section_id"],
                ),
            },
        ],
    ),
]

BUILTIN_SKILL_SLUGS: frozenset[str] = frozenset(skill.slug for skill in BUILTIN_SKILLS)


def build_builtin_manifest(skill: BuiltinSkill) -> SkillManifest:
    """Describe a built-in skill with the same manifest schema external skills use."""
    return validate_manifest_data(
        {
            "id": skill.slug,
            "name": skill.display_name,
            "version": BUILTIN_SKILL_VERSION,
            "entry": "builtin",
            "tools": skill.tools,
            "python_packages": list(skill.python_packages),
            "capabilities": ["builtin"],
            "runtime": {
                "type": "node",
                "command": "builtin",
                "args": [],
                "timeout_ms": 30000,
                "max_output_chars": 20000,
            },
            "permissions": [],
            "platforms": ["linux", "windows", "darwin"],
            "risk_level": skill.risk_level,
        },
        f"builtin://{skill.slug}",
    )


async def sync_builtin_skills(store: SkillStore, now: datetime | None = None) -> int:
    """Upsert every built-in skill with an active version, default pointer and system binding.

    Returns the number of skills synchronized.
    """
    stamp = now or utcnow()
    for builtin in BUILTIN_SKILLS:
        manifest = build_builtin_manifest(builtin)
        skill = await store.upsert_skill(
            slug=builtin.slug,
            display_name=builtin.display_name,
            description=builtin.description,
            source_type=SOURCE_BUILTIN,
            source_url=f"builtin://{builtin.slug}",
            status=SKILL_STATUS_ACTIVE,
        )

        version = await store.find_version(skill.id, BUILTIN_SKILL_VERSION)
        if version is None:
            version = await store.create_version(
                skill_id=skill.id,
                version=BUILTIN_SKILL_VERSION,
                status=VERSION_ACTIVE,
                risk_level=builtin.risk_level,
                entry=manifest.entry,
                manifest_json=manifest.to_json(),
                package_hash=f"builtin:{builtin.slug}:{BUILTIN_SKILL_VERSION}",
                source_ref="builtin",
                approved_at=stamp,
                activated_at=stamp,
            )
        else:
            version = await store.update_version(
                version.id,
                status=VERSION_ACTIVE,
                risk_level=builtin.risk_level,
                entry=manifest.entry,
                manifest_json=manifest.to_json(),
                approved_at=stamp,
                activated_at=stamp,
            )
        assert version is not None

        await store.set_default_version(skill.id, version.id)
        await store.upsert_binding(
            skill_id=skill.id,
            scope_type=SCOPE_SYSTEM,
            scope_id=SYSTEM_SCOPE_ID,
            version_id=version.id,
            enabled=True,
            policy={},
            overrides={},
        )

    log.info("Synchronized built-in skills", count=len(BUILTIN_SKILLS))
    return len(BUILTIN_SKILLS)
