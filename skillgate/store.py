"""Durable skill storage with SQLite."""

import json
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from skillgate.config import get_config
from skillgate.logging import get_logger
from skillgate.models import (
    APPROVAL_APPROVED,
    APPROVAL_EXPIRED,
    APPROVAL_PENDING,
    SKILL_STATUS_ACTIVE,
    VERSION_ACTIVE,
    ApprovalRequest,
    ExecutionAudit,
    Skill,
    SkillBinding,
    SkillVersion,
    from_iso,
    parse_json_object,
    to_iso,
    utcnow,
)

log = get_logger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS skills (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        slug TEXT NOT NULL UNIQUE,
        display_name TEXT NOT NULL,
        description TEXT,
        source_type TEXT NOT NULL,
        source_url TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        default_version_id INTEGER,
        created_by_user_id INTEGER,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS skill_versions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        skill_id INTEGER NOT NULL REFERENCES skills(id) ON DELETE CASCADE,
        version TEXT NOT NULL,
        status TEXT NOT NULL,
        risk_level TEXT NOT NULL,
        entry TEXT NOT NULL,
        instruction TEXT,
        manifest_json TEXT NOT NULL DEFAULT '{}',
        package_hash TEXT,
        package_path TEXT,
        source_ref TEXT,
        source_subdir TEXT,
        approved_at TEXT,
        activated_at TEXT,
        created_by_user_id INTEGER,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (skill_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS skill_bindings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        skill_id INTEGER NOT NULL REFERENCES skills(id) ON DELETE CASCADE,
        version_id INTEGER,
        scope_type TEXT NOT NULL,
        scope_id TEXT NOT NULL,
        enabled INTEGER NOT NULL DEFAULT 1,
        policy_json TEXT NOT NULL DEFAULT '{}',
        overrides_json TEXT NOT NULL DEFAULT '{}',
        created_by_user_id INTEGER,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (skill_id, scope_type, scope_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS skill_approval_requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        skill_id INTEGER NOT NULL,
        version_id INTEGER,
        binding_id INTEGER,
        session_id INTEGER,
        battle_run_id INTEGER,
        message_id INTEGER,
        tool_name TEXT NOT NULL,
        tool_call_id TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        reason TEXT,
        request_payload_json TEXT NOT NULL DEFAULT '{}',
        decision_note TEXT,
        requested_by_actor TEXT NOT NULL,
        requested_at TEXT NOT NULL,
        decided_at TEXT,
        decided_by_user_id INTEGER,
        expires_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS skill_execution_audits (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        skill_id INTEGER NOT NULL,
        version_id INTEGER,
        approval_request_id INTEGER,
        session_id INTEGER,
        battle_run_id INTEGER,
        message_id INTEGER,
        tool_name TEXT NOT NULL,
        tool_call_id TEXT,
        request_payload_json TEXT NOT NULL DEFAULT '{}',
        response_payload_json TEXT NOT NULL DEFAULT '{}',
        approval_status TEXT,
        platform TEXT,
        duration_ms INTEGER,
        error TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_skill_versions_skill_status ON skill_versions(skill_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_skill_bindings_scope ON skill_bindings(scope_type, scope_id)",
    "CREATE INDEX IF NOT EXISTS idx_skill_approvals_session ON skill_approval_requests(session_id, skill_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_skill_audits_session ON skill_execution_audits(session_id, created_at)",
)

_VERSION_UPDATABLE = frozenset({
    "status",
    "risk_level",
    "entry",
    "instruction",
    "manifest_json",
    "package_hash",
    "package_path",
    "approved_at",
    "activated_at",
})


def _skill_from_row(row: aiosqlite.Row) -> Skill:
    return Skill(
        id=row["id"],
        slug=row["slug"],
        display_name=row["display_name"],
        description=row["description"],
        source_type=row["source_type"],
        source_url=row["source_url"],
        status=row["status"],
        default_version_id=row["default_version_id"],
        created_by_user_id=row["created_by_user_id"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


def _version_from_row(row: aiosqlite.Row) -> SkillVersion:
    return SkillVersion(
        id=row["id"],
        skill_id=row["skill_id"],
        version=row["version"],
        status=row["status"],
        risk_level=row["risk_level"],
        entry=row["entry"],
        instruction=row["instruction"],
        manifest_json=row["manifest_json"],
        package_hash=row["package_hash"],
        package_path=row["package_path"],
        source_ref=row["source_ref"],
        source_subdir=row["source_subdir"],
        approved_at=from_iso(row["approved_at"]),
        activated_at=from_iso(row["activated_at"]),
        created_by_user_id=row["created_by_user_id"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


def _binding_from_row(row: aiosqlite.Row) -> SkillBinding:
    return SkillBinding(
        id=row["id"],
        skill_id=row["skill_id"],
        version_id=row["version_id"],
        scope_type=row["scope_type"],
        scope_id=row["scope_id"],
        enabled=bool(row["enabled"]),
        policy=parse_json_object(row["policy_json"]),
        overrides=parse_json_object(row["overrides_json"]),
        created_by_user_id=row["created_by_user_id"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


def _approval_from_row(row: aiosqlite.Row) -> ApprovalRequest:
    return ApprovalRequest(
        id=row["id"],
        skill_id=row["skill_id"],
        version_id=row["version_id"],
        binding_id=row["binding_id"],
        session_id=row["session_id"],
        battle_run_id=row["battle_run_id"],
        message_id=row["message_id"],
        tool_name=row["tool_name"],
        tool_call_id=row["tool_call_id"],
        status=row["status"],
        reason=row["reason"],
        request_payload_json=row["request_payload_json"],
        decision_note=row["decision_note"],
        requested_by_actor=row["requested_by_actor"],
        requested_at=from_iso(row["requested_at"]),
        decided_at=from_iso(row["decided_at"]),
        decided_by_user_id=row["decided_by_user_id"],
        expires_at=from_iso(row["expires_at"]),
    )


def _audit_from_row(row: aiosqlite.Row) -> ExecutionAudit:
    return ExecutionAudit(
        id=row["id"],
        skill_id=row["skill_id"],
        version_id=row["version_id"],
        approval_request_id=row["approval_request_id"],
        session_id=row["session_id"],
        battle_run_id=row["battle_run_id"],
        message_id=row["message_id"],
        tool_name=row["tool_name"],
        tool_call_id=row["tool_call_id"],
        request_payload_json=row["request_payload_json"],
        response_payload_json=row["response_payload_json"],
        approval_status=row["approval_status"],
        platform=row["platform"],
        duration_ms=row["duration_ms"],
        error=row["error"],
        created_at=from_iso(row["created_at"]),
    )


def _where(filters: dict[str, Any]) -> tuple[str, list[Any]]:
    """Build an AND-joined WHERE clause from non-None filters."""
    clauses: list[str] = []
    params: list[Any] = []
    for column, value in filters.items():
        if value is None:
            continue
        clauses.append(f"{column} = ?")
        params.append(value)
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


class SkillStore:
    """Persists skills, versions, bindings, approvals and audits in SQLite."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize skill store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.storage.db_path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA foreign_keys = ON")
            for statement in _SCHEMA:
                await self._db.execute(statement)
            await self._db.commit()
        return self._db

    async def _fetchone(self, query: str, params: tuple | list = ()) -> aiosqlite.Row | None:
        db = await self._ensure_db()
        async with db.execute(query, params) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, query: str, params: tuple | list = ()) -> list[aiosqlite.Row]:
        db = await self._ensure_db()
        async with db.execute(query, params) as cursor:
            return list(await cursor.fetchall())

    async def _insert(self, table: str, values: dict[str, Any]) -> int:
        db = await self._ensure_db()
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        cursor = await db.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            tuple(values.values()),
        )
        await db.commit()
        return int(cursor.lastrowid)

    async def _update(self, query: str, params: tuple | list) -> int:
        db = await self._ensure_db()
        cursor = await db.execute(query, params)
        await db.commit()
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Skills
    # ------------------------------------------------------------------

    async def upsert_skill(
        self,
        slug: str,
        display_name: str,
        description: str | None,
        source_type: str,
        source_url: str | None,
        status: str | None = None,
        created_by_user_id: int | None = None,
    ) -> Skill:
        """Create the skill or refresh its descriptive fields by slug.

        On update, a None ``description`` or ``status`` keeps the stored value.
        """
        db = await self._ensure_db()
        now = to_iso(utcnow())
        await db.execute(
            """
            INSERT INTO skills (
                slug, display_name, description, source_type, source_url,
                status, created_by_user_id, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(slug) DO UPDATE SET
                display_name = excluded.display_name,
                description = COALESCE(?, skills.description),
                source_type = excluded.source_type,
                source_url = excluded.source_url,
                status = COALESCE(?, skills.status),
                updated_at = excluded.updated_at
            """,
            (
                slug,
                display_name,
                description,
                source_type,
                source_url,
                status or SKILL_STATUS_ACTIVE,
                created_by_user_id,
                now,
                now,
                description,
                status,
            ),
        )
        await db.commit()
        skill = await self.get_skill_by_slug(slug)
        assert skill is not None
        return skill

    async def get_skill(self, skill_id: int) -> Skill | None:
        row = await self._fetchone("SELECT * FROM skills WHERE id = ?", (skill_id,))
        return _skill_from_row(row) if row else None

    async def get_skill_by_slug(self, slug: str) -> Skill | None:
        row = await self._fetchone("SELECT * FROM skills WHERE slug = ?", (slug,))
        return _skill_from_row(row) if row else None

    async def list_skills(self, status: str | None = None) -> list[Skill]:
        where, params = _where({"status": status})
        rows = await self._fetchall(f"SELECT * FROM skills{where} ORDER BY slug", params)
        return [_skill_from_row(row) for row in rows]

    async def list_active_skills_by_slugs(self, slugs: list[str]) -> list[Skill]:
        """Load active skills whose slug is in ``slugs``."""
        if not slugs:
            return []
        placeholders = ", ".join("?" for _ in slugs)
        rows = await self._fetchall(
            f"SELECT * FROM skills WHERE status = ? AND slug IN ({placeholders}) ORDER BY slug",
            [SKILL_STATUS_ACTIVE, *slugs],
        )
        return [_skill_from_row(row) for row in rows]

    async def set_default_version(self, skill_id: int, version_id: int | None) -> None:
        await self._update(
            "UPDATE skills SET default_version_id = ?, updated_at = ? WHERE id = ?",
            (version_id, to_iso(utcnow()), skill_id),
        )

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    async def create_version(
        self,
        skill_id: int,
        version: str,
        status: str,
        risk_level: str,
        entry: str,
        manifest_json: str,
        instruction: str | None = None,
        package_hash: str | None = None,
        package_path: str | None = None,
        source_ref: str | None = None,
        source_subdir: str | None = None,
        approved_at: datetime | None = None,
        activated_at: datetime | None = None,
        created_by_user_id: int | None = None,
    ) -> SkillVersion:
        """Insert a version row; (skill_id, version) must be unused."""
        now = to_iso(utcnow())
        version_id = await self._insert("skill_versions", {
            "skill_id": skill_id,
            "version": version,
            "status": status,
            "risk_level": risk_level,
            "entry": entry,
            "instruction": instruction,
            "manifest_json": manifest_json,
            "package_hash": package_hash,
            "package_path": package_path,
            "source_ref": source_ref,
            "source_subdir": source_subdir,
            "approved_at": to_iso(approved_at),
            "activated_at": to_iso(activated_at),
            "created_by_user_id": created_by_user_id,
            "created_at": now,
            "updated_at": now,
        })
        created = await self.get_version(version_id)
        assert created is not None
        return created

    async def get_version(self, version_id: int) -> SkillVersion | None:
        row = await self._fetchone("SELECT * FROM skill_versions WHERE id = ?", (version_id,))
        return _version_from_row(row) if row else None

    async def find_version(self, skill_id: int, version: str) -> SkillVersion | None:
        row = await self._fetchone(
            "SELECT * FROM skill_versions WHERE skill_id = ? AND version = ?",
            (skill_id, version),
        )
        return _version_from_row(row) if row else None

    async def list_versions(self, skill_id: int) -> list[SkillVersion]:
        rows = await self._fetchall(
            "SELECT * FROM skill_versions WHERE skill_id = ? ORDER BY created_at DESC, id DESC",
            (skill_id,),
        )
        return [_version_from_row(row) for row in rows]

    async def latest_active_version(self, skill_id: int) -> SkillVersion | None:
        """Most recently activated active version (ties broken by creation)."""
        row = await self._fetchone(
            """
            SELECT * FROM skill_versions
            WHERE skill_id = ? AND status = ?
            ORDER BY activated_at IS NULL, activated_at DESC, created_at DESC, id DESC
            LIMIT 1
            """,
            (skill_id, VERSION_ACTIVE),
        )
        return _version_from_row(row) if row else None

    async def update_version(self, version_id: int, **fields: Any) -> SkillVersion | None:
        """Update selected version columns and return the fresh row."""
        unknown = set(fields) - _VERSION_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update version fields: {', '.join(sorted(unknown))}")
        if fields:
            assignments: list[str] = []
            params: list[Any] = []
            for column, value in fields.items():
                assignments.append(f"{column} = ?")
                params.append(to_iso(value) if isinstance(value, datetime) else value)
            assignments.append("updated_at = ?")
            params.extend([to_iso(utcnow()), version_id])
            await self._update(
                f"UPDATE skill_versions SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
        return await self.get_version(version_id)

    # ------------------------------------------------------------------
    # Bindings
    # ------------------------------------------------------------------

    async def upsert_binding(
        self,
        skill_id: int,
        scope_type: str,
        scope_id: str,
        version_id: int | None = None,
        enabled: bool = True,
        policy: dict[str, Any] | None = None,
        overrides: dict[str, Any] | None = None,
        created_by_user_id: int | None = None,
    ) -> SkillBinding:
        """Create or replace the binding for (skill, scope_type, scope_id)."""
        db = await self._ensure_db()
        now = to_iso(utcnow())
        await db.execute(
            """
            INSERT INTO skill_bindings (
                skill_id, version_id, scope_type, scope_id, enabled,
                policy_json, overrides_json, created_by_user_id, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(skill_id, scope_type, scope_id) DO UPDATE SET
                version_id = excluded.version_id,
                enabled = excluded.enabled,
                policy_json = excluded.policy_json,
                overrides_json = excluded.overrides_json,
                updated_at = excluded.updated_at
            """,
            (
                skill_id,
                version_id,
                scope_type,
                str(scope_id),
                1 if enabled else 0,
                json.dumps(policy or {}),
                json.dumps(overrides or {}),
                created_by_user_id,
                now,
                now,
            ),
        )
        await db.commit()
        row = await self._fetchone(
            "SELECT * FROM skill_bindings WHERE skill_id = ? AND scope_type = ? AND scope_id = ?",
            (skill_id, scope_type, str(scope_id)),
        )
        assert row is not None
        return _binding_from_row(row)

    async def get_binding(self, binding_id: int) -> SkillBinding | None:
        row = await self._fetchone("SELECT * FROM skill_bindings WHERE id = ?", (binding_id,))
        return _binding_from_row(row) if row else None

    async def list_bindings(
        self,
        skill_id: int | None = None,
        scope_type: str | None = None,
        scope_id: str | None = None,
    ) -> list[SkillBinding]:
        where, params = _where({
            "skill_id": skill_id,
            "scope_type": scope_type,
            "scope_id": None if scope_id is None else str(scope_id),
        })
        rows = await self._fetchall(
            f"SELECT * FROM skill_bindings{where} ORDER BY updated_at DESC, id DESC",
            params,
        )
        return [_binding_from_row(row) for row in rows]

    async def list_enabled_bindings(
        self,
        skill_ids: list[int],
        scopes: list[tuple[str, str]],
    ) -> list[SkillBinding]:
        """Enabled bindings for the given skills in any of the (type, id) scopes."""
        if not skill_ids or not scopes:
            return []
        skill_marks = ", ".join("?" for _ in skill_ids)
        scope_marks = " OR ".join("(scope_type = ? AND scope_id = ?)" for _ in scopes)
        params: list[Any] = [*skill_ids]
        for scope_type, scope_id in scopes:
            params.extend([scope_type, str(scope_id)])
        rows = await self._fetchall(
            f"""
            SELECT * FROM skill_bindings
            WHERE enabled = 1 AND skill_id IN ({skill_marks}) AND ({scope_marks})
            ORDER BY updated_at DESC, id DESC
            """,
            params,
        )
        return [_binding_from_row(row) for row in rows]

    async def delete_binding(self, binding_id: int) -> bool:
        return await self._update("DELETE FROM skill_bindings WHERE id = ?", (binding_id,)) > 0

    # ------------------------------------------------------------------
    # Approval requests
    # ------------------------------------------------------------------

    async def create_approval_request(
        self,
        skill_id: int,
        tool_name: str,
        requested_by_actor: str,
        expires_at: datetime,
        version_id: int | None = None,
        binding_id: int | None = None,
        session_id: int | None = None,
        battle_run_id: int | None = None,
        message_id: int | None = None,
        tool_call_id: str | None = None,
        reason: str | None = None,
        request_payload: dict[str, Any] | None = None,
    ) -> ApprovalRequest:
        request_id = await self._insert("skill_approval_requests", {
            "skill_id": skill_id,
            "version_id": version_id,
            "binding_id": binding_id,
            "session_id": session_id,
            "battle_run_id": battle_run_id,
            "message_id": message_id,
            "tool_name": tool_name,
            "tool_call_id": tool_call_id,
            "status": APPROVAL_PENDING,
            "reason": reason,
            "request_payload_json": json.dumps(request_payload or {}, ensure_ascii=False, default=str),
            "requested_by_actor": requested_by_actor,
            "requested_at": to_iso(utcnow()),
            "expires_at": to_iso(expires_at),
        })
        created = await self.get_approval_request(request_id)
        assert created is not None
        return created

    async def get_approval_request(self, request_id: int) -> ApprovalRequest | None:
        row = await self._fetchone("SELECT * FROM skill_approval_requests WHERE id = ?", (request_id,))
        return _approval_from_row(row) if row else None

    async def resolve_approval_request(
        self,
        request_id: int,
        status: str,
        decided_by_user_id: int | None,
        decision_note: str | None,
        decided_at: datetime,
    ) -> bool:
        """Move a pending, unexpired request to ``status``.

        Returns False when the request was no longer pending or its deadline
        had already passed at ``decided_at``.
        """
        stamp = to_iso(decided_at)
        changed = await self._update(
            """
            UPDATE skill_approval_requests
            SET status = ?, decided_at = ?, decided_by_user_id = ?, decision_note = ?
            WHERE id = ? AND status = ? AND (expires_at IS NULL OR expires_at > ?)
            """,
            (status, stamp, decided_by_user_id, decision_note, request_id, APPROVAL_PENDING, stamp),
        )
        return changed > 0

    async def expire_approval_request(self, request_id: int, now: datetime) -> bool:
        changed = await self._update(
            "UPDATE skill_approval_requests SET status = ?, decided_at = ? WHERE id = ? AND status = ?",
            (APPROVAL_EXPIRED, to_iso(now), request_id, APPROVAL_PENDING),
        )
        return changed > 0

    async def expire_pending_requests(self, now: datetime) -> int:
        """Expire every pending request whose deadline has passed."""
        stamp = to_iso(now)
        return await self._update(
            """
            UPDATE skill_approval_requests
            SET status = ?, decided_at = ?
            WHERE status = ? AND expires_at IS NOT NULL AND expires_at <= ?
            """,
            (APPROVAL_EXPIRED, stamp, APPROVAL_PENDING, stamp),
        )

    async def has_session_approved(self, session_id: int, skill_id: int) -> bool:
        row = await self._fetchone(
            """
            SELECT id FROM skill_approval_requests
            WHERE session_id = ? AND skill_id = ? AND status = ?
            LIMIT 1
            """,
            (session_id, skill_id, APPROVAL_APPROVED),
        )
        return row is not None

    async def list_approval_requests(
        self,
        status: str | None = None,
        session_id: int | None = None,
        skill_id: int | None = None,
        limit: int = 50,
    ) -> list[ApprovalRequest]:
        where, params = _where({"status": status, "session_id": session_id, "skill_id": skill_id})
        rows = await self._fetchall(
            f"SELECT * FROM skill_approval_requests{where} ORDER BY requested_at DESC, id DESC LIMIT ?",
            [*params, limit],
        )
        return [_approval_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Execution audits
    # ------------------------------------------------------------------

    async def create_audit(
        self,
        skill_id: int,
        tool_name: str,
        request_payload: dict[str, Any],
        response_payload: dict[str, Any],
        version_id: int | None = None,
        approval_request_id: int | None = None,
        session_id: int | None = None,
        battle_run_id: int | None = None,
        message_id: int | None = None,
        tool_call_id: str | None = None,
        approval_status: str | None = None,
        platform: str | None = None,
        duration_ms: int | None = None,
        error: str | None = None,
    ) -> ExecutionAudit:
        audit_id = await self._insert("skill_execution_audits", {
            "skill_id": skill_id,
            "version_id": version_id,
            "approval_request_id": approval_request_id,
            "session_id": session_id,
            "battle_run_id": battle_run_id,
            "message_id": message_id,
            "tool_name": tool_name,
            "tool_call_id": tool_call_id,
            "request_payload_json": json.dumps(request_payload, ensure_ascii=False, default=str),
            "response_payload_json": json.dumps(response_payload, ensure_ascii=False, default=str),
            "approval_status": approval_status,
            "platform": platform,
            "duration_ms": duration_ms,
            "error": error,
            "created_at": to_iso(utcnow()),
        })
        row = await self._fetchone("SELECT * FROM skill_execution_audits WHERE id = ?", (audit_id,))
        assert row is not None
        return _audit_from_row(row)

    async def list_audits(
        self,
        session_id: int | None = None,
        battle_run_id: int | None = None,
        message_id: int | None = None,
        skill_id: int | None = None,
        limit: int = 100,
    ) -> list[ExecutionAudit]:
        where, params = _where({
            "session_id": session_id,
            "battle_run_id": battle_run_id,
            "message_id": message_id,
            "skill_id": skill_id,
        })
        rows = await self._fetchall(
            f"SELECT * FROM skill_execution_audits{where} ORDER BY created_at DESC, id DESC LIMIT ?",
            [*params, limit],
        )
        return [_audit_from_row(row) for row in rows]

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
