"""GitHub skill source parsing, archive download and safe extraction."""

import io
import posixpath
import re
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote, unquote, urlparse

import httpx

from skillgate import __version__
from skillgate.config import get_config
from skillgate.exceptions import SourceError
from skillgate.logging import get_logger

log = get_logger(__name__)

_PLAIN_SOURCE_RE = re.compile(r"^([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)@([^:]+)(?::(.+))?$")
_GITHUB_HOSTS = {"github.com", "www.github.com"}
_SCRATCH_PREFIX = "skillgate-skill-"


@dataclass(frozen=True)
class GitHubSkillSource:
    owner: str
    repo: str
    ref: str
    subdir: str | None = None

    @property
    def repo_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.repo}"

    def __str__(self) -> str:
        base = f"{self.owner}/{self.repo}@{self.ref}"
        return f"{base}:{self.subdir}" if self.subdir else base


def normalize_subdir(value: str) -> str:
    """Normalize a repository subdirectory, rejecting '.' and '..' segments."""
    cleaned = str(value or "").replace("\\", "/").strip("/")
    if not cleaned:
        raise SourceError("GitHub source subdir is invalid")
    parts = cleaned.split("/")
    if any(part in {".", ".."} for part in parts):
        raise SourceError("GitHub source subdir cannot contain . or ..")
    return "/".join(parts)


def _parse_plain_source(value: str) -> GitHubSkillSource | None:
    matched = _PLAIN_SOURCE_RE.match(value)
    if not matched:
        return None
    owner, repo, ref, subdir_raw = matched.groups()
    subdir = normalize_subdir(subdir_raw) if subdir_raw else None
    return GitHubSkillSource(owner=owner, repo=repo, ref=ref, subdir=subdir)


def _parse_tree_or_blob_url(value: str) -> GitHubSkillSource | None:
    parsed = urlparse(value)
    if parsed.scheme.lower() not in {"http", "https"}:
        return None
    if (parsed.hostname or "").lower() not in _GITHUB_HOSTS:
        return None

    segments = [unquote(part) for part in parsed.path.split("/") if part]
    if len(segments) < 4:
        return None
    owner, repo, mode, ref = segments[:4]
    if mode not in {"tree", "blob"}:
        return None

    path_segments = segments[4:]
    if not path_segments:
        return GitHubSkillSource(owner=owner, repo=repo, ref=ref)

    raw_path = "/".join(path_segments)
    lowered = raw_path.lower()
    looks_like_skill_file = lowered == "skill.md" or lowered.endswith("/skill.md")
    if mode == "blob" or looks_like_skill_file:
        parent = posixpath.dirname(raw_path)
        if not parent or parent == ".":
            return GitHubSkillSource(owner=owner, repo=repo, ref=ref)
        return GitHubSkillSource(owner=owner, repo=repo, ref=ref, subdir=normalize_subdir(parent))

    return GitHubSkillSource(owner=owner, repo=repo, ref=ref, subdir=normalize_subdir(raw_path))


def parse_github_skill_source(raw: str) -> GitHubSkillSource:
    """Parse ``owner/repo@ref[:subdir]`` or a github.com tree/blob URL."""
    value = str(raw or "").strip()
    if not value:
        raise SourceError("GitHub source is empty")

    parsed = _parse_plain_source(value) or _parse_tree_or_blob_url(value)
    if parsed is None:
        raise SourceError(
            "GitHub source format must be owner/repo@ref[:subdir] or "
            "github.com/<owner>/<repo>/(tree|blob)/<ref>/<path>"
        )
    if not parsed.owner or not parsed.repo or not parsed.ref:
        raise SourceError("GitHub source owner/repo/ref is invalid")
    return parsed


def safe_resolve_under(root: Path, relative_path: str) -> Path:
    """Resolve ``relative_path`` under ``root``; raise if it would escape."""
    normalized = posixpath.normpath(str(relative_path or "").replace("\\", "/"))
    if normalized == ".." or normalized.startswith("../") or normalized.startswith("/"):
        raise SourceError(f"Unsafe archive path: {relative_path}")
    base = Path(root).resolve()
    resolved = (base / normalized).resolve()
    try:
        resolved.relative_to(base)
    except ValueError as exc:
        raise SourceError(f"Unsafe archive output path: {relative_path}") from exc
    return resolved


def _strip_archive_root(entry_name: str) -> str:
    """Drop the synthetic ``<owner>-<repo>-<sha>/`` folder archives are rooted under."""
    normalized = entry_name.replace("\\", "/").lstrip("/")
    first_slash = normalized.find("/")
    if first_slash < 0:
        return ""
    return normalized[first_slash + 1:]


def extract_skill_archive(data: bytes, destination: Path, subdir: str | None = None) -> Path:
    """Extract a repository zipball into ``destination``.

    Only files under ``subdir`` (when given) are written, re-rooted at
    ``destination``. Any entry that resolves outside ``destination`` raises
    :class:`SourceError` before it is written.
    """
    destination = Path(destination)
    destination.mkdir(parents=True, exist_ok=True)
    prefix = f"{subdir}/" if subdir else ""

    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as exc:
        raise SourceError(f"GitHub archive is not a valid zip file: {exc}") from exc

    with archive:
        members = archive.infolist()
        if not members:
            raise SourceError("GitHub archive is empty")
        for member in members:
            if member.is_dir():
                continue
            relative = _strip_archive_root(member.filename)
            if not relative:
                continue
            if subdir:
                if relative == subdir or not relative.startswith(prefix):
                    continue
                relative = relative[len(prefix):]
            if not relative:
                continue

            output_path = safe_resolve_under(destination, relative)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            with archive.open(member, "r") as source_file:
                with output_path.open("wb") as out_file:
                    shutil.copyfileobj(source_file, out_file)
    return destination


def _build_github_api_headers(token: str | None) -> dict[str, str]:
    headers = {
        "Accept": "application/vnd.github+json",
        "User-Agent": f"Skillgate/{__version__} (Skill Installer)",
    }
    cleaned = str(token or "").strip()
    if cleaned:
        headers["Authorization"] = f"Bearer {cleaned}"
    return headers


def zipball_url(source: GitHubSkillSource, api_base_url: str | None = None) -> str:
    base = str(api_base_url or get_config().github.api_base_url).rstrip("/")
    return f"{base}/repos/{source.owner}/{source.repo}/zipball/{quote(source.ref, safe='')}"


async def download_and_extract(
    source: GitHubSkillSource,
    token: str | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> Path:
    """Download the ref zipball and extract it into a fresh scratch directory.

    The caller owns the returned directory and must remove it.
    """
    cfg = get_config()
    url = zipball_url(source, cfg.github.api_base_url)
    headers = _build_github_api_headers(token if token is not None else cfg.github.token)

    owns_client = client is None
    http = client or httpx.AsyncClient(
        timeout=max(1, int(cfg.github.timeout_seconds)),
        follow_redirects=True,
    )
    try:
        response = await http.get(url, headers=headers)
    except httpx.HTTPError as exc:
        raise SourceError(f"Failed to download GitHub archive: {exc}") from exc
    finally:
        if owns_client:
            await http.aclose()

    if response.status_code < 200 or response.status_code >= 300:
        raise SourceError(
            f"Failed to download GitHub archive: {response.status_code} "
            f"{response.reason_phrase} {response.text}".rstrip()
        )
    data = response.content
    if not data:
        raise SourceError("GitHub archive is empty")

    scratch = Path(tempfile.mkdtemp(prefix=_SCRATCH_PREFIX))
    try:
        extract_skill_archive(data, scratch, source.subdir)
    except Exception:
        shutil.rmtree(scratch, ignore_errors=True)
        raise
    log.info(
        "Extracted skill archive",
        source=str(source),
        scratch_dir=str(scratch),
        archive_bytes=len(data),
    )
    return scratch
