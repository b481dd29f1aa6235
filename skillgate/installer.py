"""Install skills from GitHub and manage their version lifecycle."""

import asyncio
import hashlib
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from skillgate.compat import build_compat_manifest, read_skill_markdown
from skillgate.config import get_config
from skillgate.exceptions import InstallerError
from skillgate.logging import get_logger
from skillgate.manifest import MANIFEST_FILENAMES, SkillManifest, parse_manifest_text
from skillgate.models import (
    SOURCE_GITHUB,
    VERSION_ACTIVE,
    VERSION_DEPRECATED,
    VERSION_PENDING_APPROVAL,
    VERSION_PENDING_VALIDATION,
    VERSION_REJECTED,
    Skill,
    SkillVersion,
    utcnow,
)
from skillgate.source import GitHubSkillSource, download_and_extract, parse_github_skill_source
from skillgate.store import SkillStore

log = get_logger(__name__)

SkillFetcher = Callable[[GitHubSkillSource, str | None], Awaitable[Path]]

_DESCRIPTION_MAX_CHARS = 4000


@dataclass
class InstallSkillResult:
    skill: Skill
    version: SkillVersion

    def to_dict(self) -> dict[str, object]:
        return {
            "skill": {
                "id": self.skill.id,
                "slug": self.skill.slug,
                "display_name": self.skill.display_name,
                "status": self.skill.status,
            },
            "version": {
                "id": self.version.id,
                "version": self.version.version,
                "status": self.version.status,
                "package_path": self.version.package_path,
            },
        }


def _list_files(root: Path) -> list[Path]:
    return sorted(
        (path for path in root.rglob("*") if path.is_file()),
        key=lambda path: path.relative_to(root).as_posix(),
    )


def compute_directory_sha256(root: Path) -> str:
    """Hash every file as (relative posix path, bytes), in sorted path order."""
    root = Path(root)
    digest = hashlib.sha256()
    for path in _list_files(root):
        digest.update(path.relative_to(root).as_posix().encode("utf-8"))
        digest.update(path.read_bytes())
    return digest.hexdigest()


def resolve_version_status(manifest: SkillManifest) -> str:
    if manifest.risk_level in {"high", "critical"}:
        return VERSION_PENDING_APPROVAL
    return VERSION_PENDING_VALIDATION


def _find_manifest_file(directory: Path) -> Path | None:
    for candidate in MANIFEST_FILENAMES:
        path = directory / candidate
        if path.is_file():
            return path
    return None


def _load_package_manifest(
    extracted_dir: Path,
    source: GitHubSkillSource,
) -> tuple[SkillManifest, str | None]:
    """Return the package manifest and its SKILL.md text (if any)."""
    manifest_path = _find_manifest_file(extracted_dir)
    if manifest_path is not None:
        manifest = parse_manifest_text(
            manifest_path.read_text(encoding="utf-8"),
            f"{source}/{manifest_path.name}",
        )
        markdown = read_skill_markdown(extracted_dir)
        return manifest, markdown[1] if markdown else None

    compat = build_compat_manifest(extracted_dir, source)
    if compat is None:
        raise InstallerError("Skill package missing manifest.yaml/yml/json or SKILL.md")
    return compat.manifest, compat.instruction


def _persist_package(extracted_dir: Path, destination: Path) -> Path:
    destination.mkdir(parents=True, exist_ok=True)
    shutil.copytree(extracted_dir, destination, dirs_exist_ok=True)
    return destination


class SkillInstaller:
    """Fetches skill packages and registers them as new versions."""

    def __init__(
        self,
        store: SkillStore,
        storage_root: Path | str | None = None,
        fetcher: SkillFetcher | None = None,
    ):
        self.store = store
        self.storage_root = (
            Path(storage_root).expanduser().resolve()
            if storage_root is not None
            else get_config().resolved_storage_root()
        )
        self._fetcher = fetcher or download_and_extract

    def package_dir(self, slug: str, version_id: int) -> Path:
        return self.storage_root / "packages" / slug / str(version_id)

    async def install_from_github(
        self,
        source: str,
        actor_user_id: int | None = None,
        token: str | None = None,
    ) -> InstallSkillResult:
        """Install a skill version from ``owner/repo@ref[:subdir]`` or a GitHub URL.

        Raises:
            SourceError: bad reference, download failure or unsafe archive.
            ManifestError: the package manifest is invalid.
            InstallerError: no manifest/SKILL.md, or the version already exists.
        """
        parsed = parse_github_skill_source(source)
        extracted_dir = await self._fetcher(parsed, token)
        try:
            manifest, instruction = await asyncio.to_thread(
                _load_package_manifest, extracted_dir, parsed
            )
            package_hash = await asyncio.to_thread(compute_directory_sha256, extracted_dir)

            skill = await self.store.upsert_skill(
                slug=manifest.id,
                display_name=manifest.name,
                description=instruction[:_DESCRIPTION_MAX_CHARS] if instruction else None,
                source_type=SOURCE_GITHUB,
                source_url=parsed.repo_url,
                created_by_user_id=actor_user_id,
            )

            existing = await self.store.find_version(skill.id, manifest.version)
            if existing is not None:
                raise InstallerError(f"Skill version already exists: {manifest.id}@{manifest.version}")

            version = await self.store.create_version(
                skill_id=skill.id,
                version=manifest.version,
                status=resolve_version_status(manifest),
                risk_level=manifest.risk_level,
                entry=manifest.entry,
                instruction=instruction,
                manifest_json=manifest.to_json(),
                package_hash=package_hash,
                source_ref=parsed.ref,
                source_subdir=parsed.subdir,
                created_by_user_id=actor_user_id,
            )

            destination = await asyncio.to_thread(
                _persist_package, extracted_dir, self.package_dir(skill.slug, version.id)
            )
            version = await self.store.update_version(version.id, package_path=str(destination))
            assert version is not None
        finally:
            shutil.rmtree(extracted_dir, ignore_errors=True)

        log.info(
            "Installed skill",
            slug=skill.slug,
            version=version.version,
            version_id=version.id,
            status=version.status,
            risk_level=version.risk_level,
            package_hash=package_hash,
        )
        return InstallSkillResult(skill=skill, version=version)

    async def _require_version(self, version_id: int) -> SkillVersion:
        version = await self.store.get_version(version_id)
        if version is None:
            raise InstallerError(f"Skill version not found: {version_id}")
        return version

    async def approve_version(self, version_id: int) -> SkillVersion:
        """Operator sign-off: pending_approval -> pending_validation."""
        version = await self._require_version(version_id)
        if version.status != VERSION_PENDING_APPROVAL:
            raise InstallerError(
                f"Skill version {version_id} is {version.status}, expected {VERSION_PENDING_APPROVAL}"
            )
        updated = await self.store.update_version(
            version_id,
            status=VERSION_PENDING_VALIDATION,
            approved_at=utcnow(),
        )
        assert updated is not None
        log.info("Approved skill version", version_id=version_id)
        return updated

    async def activate_version(self, version_id: int, make_default: bool = True) -> SkillVersion:
        """Activate a validated version; high-risk versions must be approved first."""
        version = await self._require_version(version_id)
        if version.status == VERSION_PENDING_APPROVAL:
            raise InstallerError(f"Skill version {version_id} requires approval before activation")
        if version.status in {VERSION_REJECTED, VERSION_DEPRECATED}:
            raise InstallerError(f"Skill version {version_id} is {version.status} and cannot be activated")
        updated = await self.store.update_version(
            version_id,
            status=VERSION_ACTIVE,
            activated_at=utcnow(),
        )
        assert updated is not None
        if make_default:
            await self.store.set_default_version(version.skill_id, version_id)
        log.info("Activated skill version", version_id=version_id, make_default=make_default)
        return updated

    async def reject_version(self, version_id: int) -> SkillVersion:
        version = await self._require_version(version_id)
        if version.status == VERSION_ACTIVE:
            raise InstallerError(f"Skill version {version_id} is active; deprecate it instead")
        updated = await self.store.update_version(version_id, status=VERSION_REJECTED)
        assert updated is not None
        return updated

    async def deprecate_version(self, version_id: int) -> SkillVersion:
        version = await self._require_version(version_id)
        updated = await self.store.update_version(version_id, status=VERSION_DEPRECATED)
        assert updated is not None
        skill = await self.store.get_skill(version.skill_id)
        if skill is not None and skill.default_version_id == version_id:
            await self.store.set_default_version(skill.id, None)
        return updated
