from pathlib import Path

import pytest

from skillgate.builtin import (
    BUILTIN_SKILL_SLUGS,
    BUILTIN_SKILL_VERSION,
    BUILTIN_SKILLS,
    build_builtin_manifest,
    sync_builtin_skills,
)
from skillgate.dispatcher import create_skill_registry
from skillgate.manifest import manifest_from_json
from skillgate.models import SCOPE_SYSTEM, SOURCE_BUILTIN, SYSTEM_SCOPE_ID, VERSION_ACTIVE
from skillgate.store import SkillStore


def test_builtin_manifests_validate():
    for builtin in BUILTIN_SKILLS:
        manifest = build_builtin_manifest(builtin)
        assert manifest.id == builtin.slug
        assert manifest.version == BUILTIN_SKILL_VERSION
        assert manifest.risk_level == builtin.risk_level
        assert manifest.capabilities == ["builtin"]
    assert {"web-search", "python-runner"} <= BUILTIN_SKILL_SLUGS


@pytest.mark.asyncio
async def test_sync_is_idempotent_and_binds_system_scope(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        assert await sync_builtin_skills(store) == len(BUILTIN_SKILLS)
        assert await sync_builtin_skills(store) == len(BUILTIN_SKILLS)

        skills = await store.list_skills()
        assert len(skills) == len(BUILTIN_SKILLS)
        for skill in skills:
            assert skill.source_type == SOURCE_BUILTIN
            assert skill.source_url == f"builtin://{skill.slug}"
            versions = await store.list_versions(skill.id)
            assert len(versions) == 1
            assert versions[0].status == VERSION_ACTIVE
            assert skill.default_version_id == versions[0].id
            assert manifest_from_json(versions[0].manifest_json) is not None

            bindings = await store.list_bindings(skill_id=skill.id)
            assert [(b.scope_type, b.scope_id) for b in bindings] == [(SCOPE_SYSTEM, SYSTEM_SCOPE_ID)]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_registry_never_wires_builtin_rows_as_skill_handlers(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        await sync_builtin_skills(store)
        registry = await create_skill_registry(store, {"enabled": sorted(BUILTIN_SKILL_SLUGS)}, session_id=1)
        assert registry.get_tool_definitions() == []
    finally:
        await store.close()
