"""Durable skill entities and their status vocabularies."""

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

SOURCE_BUILTIN = "builtin"
SOURCE_GITHUB = "github"

SKILL_STATUS_ACTIVE = "active"
SKILL_STATUS_DISABLED = "disabled"

VERSION_PENDING_VALIDATION = "pending_validation"
VERSION_PENDING_APPROVAL = "pending_approval"
VERSION_ACTIVE = "active"
VERSION_REJECTED = "rejected"
VERSION_DEPRECATED = "deprecated"

VERSION_STATUSES: tuple[str, ...] = (
    VERSION_PENDING_VALIDATION,
    VERSION_PENDING_APPROVAL,
    VERSION_ACTIVE,
    VERSION_REJECTED,
    VERSION_DEPRECATED,
)

SCOPE_SYSTEM = "system"
SCOPE_USER = "user"
SCOPE_SESSION = "session"
SCOPE_BATTLE_MODEL = "battle_model"

SCOPE_TYPES: tuple[str, ...] = (SCOPE_SYSTEM, SCOPE_USER, SCOPE_SESSION, SCOPE_BATTLE_MODEL)
SYSTEM_SCOPE_ID = "global"

APPROVAL_PENDING = "pending"
APPROVAL_APPROVED = "approved"
APPROVAL_DENIED = "denied"
APPROVAL_EXPIRED = "expired"

APPROVAL_STATUSES: tuple[str, ...] = (
    APPROVAL_PENDING,
    APPROVAL_APPROVED,
    APPROVAL_DENIED,
    APPROVAL_EXPIRED,
)


def utcnow() -> datetime:
    """Return the current UTC time."""
    return datetime.now(UTC)


def to_iso(value: datetime | None) -> str | None:
    # Fixed precision keeps stored timestamps lexicographically comparable.
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_json_object(raw: str | None) -> dict[str, Any]:
    """Parse a JSON object column; anything else becomes an empty dict."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


@dataclass
class Skill:
    """An installable capability package."""

    id: int
    slug: str
    display_name: str
    description: str | None = None
    source_type: str = SOURCE_BUILTIN
    source_url: str | None = None
    status: str = SKILL_STATUS_ACTIVE
    default_version_id: int | None = None
    created_by_user_id: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class SkillVersion:
    """One installed version of a skill."""

    id: int
    skill_id: int
    version: str
    status: str = VERSION_PENDING_VALIDATION
    risk_level: str = "low"
    entry: str = ""
    instruction: str | None = None
    manifest_json: str = "{}"
    package_hash: str | None = None
    package_path: str | None = None
    source_ref: str | None = None
    source_subdir: str | None = None
    approved_at: datetime | None = None
    activated_at: datetime | None = None
    created_by_user_id: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class SkillBinding:
    """Makes a skill (optionally pinned to a version) available in a scope."""

    id: int
    skill_id: int
    scope_type: str
    scope_id: str
    version_id: int | None = None
    enabled: bool = True
    policy: dict[str, Any] = field(default_factory=dict)
    overrides: dict[str, Any] = field(default_factory=dict)
    created_by_user_id: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ApprovalRequest:
    """A pending or resolved human approval for one tool call."""

    id: int
    skill_id: int
    tool_name: str
    requested_by_actor: str
    status: str = APPROVAL_PENDING
    version_id: int | None = None
    binding_id: int | None = None
    session_id: int | None = None
    battle_run_id: int | None = None
    message_id: int | None = None
    tool_call_id: str | None = None
    reason: str | None = None
    request_payload_json: str = "{}"
    decision_note: str | None = None
    requested_at: datetime = field(default_factory=utcnow)
    decided_at: datetime | None = None
    decided_by_user_id: int | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())


@dataclass
class ExecutionAudit:
    """Append-only record of one skill tool invocation."""

    id: int
    skill_id: int
    tool_name: str
    version_id: int | None = None
    approval_request_id: int | None = None
    session_id: int | None = None
    battle_run_id: int | None = None
    message_id: int | None = None
    tool_call_id: str | None = None
    request_payload_json: str = "{}"
    response_payload_json: str = "{}"
    approval_status: str | None = None
    platform: str | None = None
    duration_ms: int | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
