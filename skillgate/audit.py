"""Append-only execution audit trail."""

import sys
from typing import Any

from skillgate.logging import get_logger
from skillgate.models import ExecutionAudit
from skillgate.store import SkillStore

log = get_logger(__name__)


class ExecutionAuditLogger:
    """Writes one audit row per skill tool invocation and answers queries over them."""

    def __init__(self, store: SkillStore, platform: str | None = None):
        self.store = store
        self.platform = platform or sys.platform

    async def record(
        self,
        *,
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
        duration_ms: int | None = None,
        error: str | None = None,
    ) -> ExecutionAudit:
        audit = await self.store.create_audit(
            skill_id=skill_id,
            tool_name=tool_name,
            request_payload=request_payload,
            response_payload=response_payload,
            version_id=version_id,
            approval_request_id=approval_request_id,
            session_id=session_id,
            battle_run_id=battle_run_id,
            message_id=message_id,
            tool_call_id=tool_call_id,
            approval_status=approval_status,
            platform=self.platform,
            duration_ms=duration_ms,
            error=error,
        )
        log.info(
            "Recorded skill execution audit",
            audit_id=audit.id,
            skill_id=skill_id,
            tool=tool_name,
            approval_status=approval_status,
            duration_ms=duration_ms,
            failed=error is not None,
        )
        return audit

    async def query(
        self,
        session_id: int | None = None,
        battle_run_id: int | None = None,
        message_id: int | None = None,
        skill_id: int | None = None,
        limit: int = 100,
    ) -> list[ExecutionAudit]:
        """Most recent audits first, filtered by any combination of correlation ids."""
        return await self.store.list_audits(
            session_id=session_id,
            battle_run_id=battle_run_id,
            message_id=message_id,
            skill_id=skill_id,
            limit=limit,
        )
