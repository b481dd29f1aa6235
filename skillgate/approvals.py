"""Human approval workflow for gated skill calls."""

import asyncio
from datetime import timedelta
from typing import Any

from skillgate.config import ApprovalsConfig, get_config
from skillgate.exceptions import ApprovalError
from skillgate.logging import get_logger
from skillgate.models import (
    APPROVAL_APPROVED,
    APPROVAL_DENIED,
    APPROVAL_EXPIRED,
    APPROVAL_PENDING,
    ApprovalRequest,
    utcnow,
)
from skillgate.store import SkillStore

log = get_logger(__name__)

MIN_EXPIRY_SECONDS = 5.0
MIN_POLL_INTERVAL_SECONDS = 0.2
MIN_WAIT_TIMEOUT_SECONDS = 1.0

_TERMINAL_STATUSES = {APPROVAL_APPROVED, APPROVAL_DENIED, APPROVAL_EXPIRED}


class ApprovalService:
    """Creates, resolves and awaits approval requests.

    The store is the source of truth; in-process responders additionally wake
    local waiters so a decision does not have to wait for the next poll.
    A request whose deadline has passed can only become ``expired``.
    """

    def __init__(self, store: SkillStore, config: ApprovalsConfig | None = None):
        self.store = store
        self.config = config or get_config().approvals
        self._waiters: dict[int, asyncio.Event] = {}

    def _notify(self, request_id: int) -> None:
        event = self._waiters.get(request_id)
        if event is not None:
            event.set()

    async def create_request(
        self,
        skill_id: int,
        tool_name: str,
        requested_by_actor: str,
        *,
        version_id: int | None = None,
        binding_id: int | None = None,
        session_id: int | None = None,
        battle_run_id: int | None = None,
        message_id: int | None = None,
        tool_call_id: str | None = None,
        reason: str | None = None,
        request_payload: dict[str, Any] | None = None,
        expires_in_seconds: float | None = None,
    ) -> ApprovalRequest:
        requested = self.config.expires_in_seconds if expires_in_seconds is None else expires_in_seconds
        expires_in = max(MIN_EXPIRY_SECONDS, float(requested))
        request = await self.store.create_approval_request(
            skill_id=skill_id,
            tool_name=tool_name,
            requested_by_actor=requested_by_actor,
            expires_at=utcnow() + timedelta(seconds=expires_in),
            version_id=version_id,
            binding_id=binding_id,
            session_id=session_id,
            battle_run_id=battle_run_id,
            message_id=message_id,
            tool_call_id=tool_call_id,
            reason=reason,
            request_payload=request_payload,
        )
        log.info(
            "Created skill approval request",
            request_id=request.id,
            skill_id=skill_id,
            tool=tool_name,
            session_id=session_id,
            expires_at=request.expires_at.isoformat() if request.expires_at else None,
        )
        return request

    async def get_request(self, request_id: int) -> ApprovalRequest | None:
        return await self.store.get_approval_request(request_id)

    async def list_requests(
        self,
        status: str | None = None,
        session_id: int | None = None,
        skill_id: int | None = None,
        limit: int = 50,
    ) -> list[ApprovalRequest]:
        return await self.store.list_approval_requests(
            status=status,
            session_id=session_id,
            skill_id=skill_id,
            limit=limit,
        )

    async def respond(
        self,
        request_id: int,
        approved: bool,
        decided_by_user_id: int | None,
        note: str | None = None,
    ) -> ApprovalRequest:
        """Record a human decision on a pending request.

        Raises:
            ApprovalError: the request does not exist, is already resolved,
                or expired before the decision arrived.
        """
        request = await self.store.get_approval_request(request_id)
        if request is None:
            raise ApprovalError(request_id, "not found")
        if request.status != APPROVAL_PENDING:
            raise ApprovalError(request_id, f"already {request.status}")

        now = utcnow()
        status = APPROVAL_APPROVED if approved else APPROVAL_DENIED
        resolved = await self.store.resolve_approval_request(
            request_id,
            status=status,
            decided_by_user_id=decided_by_user_id,
            decision_note=note,
            decided_at=now,
        )
        if not resolved:
            if request.is_expired(now):
                await self.store.expire_approval_request(request_id, now)
                self._notify(request_id)
                raise ApprovalError(request_id, "expired before a decision was recorded")
            current = await self.store.get_approval_request(request_id)
            raise ApprovalError(request_id, f"already {current.status if current else 'removed'}")

        self._notify(request_id)
        log.info(
            "Resolved skill approval request",
            request_id=request_id,
            decision=status,
            decided_by_user_id=decided_by_user_id,
        )
        updated = await self.store.get_approval_request(request_id)
        assert updated is not None
        return updated

    async def mark_expired_pending(self) -> int:
        """Expire every overdue pending request; returns how many changed."""
        count = await self.store.expire_pending_requests(utcnow())
        if count:
            log.info("Expired pending skill approval requests", count=count)
        return count

    async def has_session_approved_skill(self, session_id: int | None, skill_id: int) -> bool:
        if session_id is None:
            return False
        return await self.store.has_session_approved(session_id, skill_id)

    async def deny_abandoned(self, request_id: int, note: str = "Approval wait cancelled") -> bool:
        """Deny a still-pending request whose waiter went away."""
        denied = await self.store.resolve_approval_request(
            request_id,
            status=APPROVAL_DENIED,
            decided_by_user_id=None,
            decision_note=note,
            decided_at=utcnow(),
        )
        if denied:
            self._notify(request_id)
            log.info("Denied abandoned skill approval request", request_id=request_id)
        return denied

    async def _expire(self, request_id: int) -> str:
        """Conditionally expire; if a decision landed first, report that decision."""
        if await self.store.expire_approval_request(request_id, utcnow()):
            self._notify(request_id)
            return APPROVAL_EXPIRED
        current = await self.store.get_approval_request(request_id)
        if current is None or current.status not in _TERMINAL_STATUSES:
            return APPROVAL_EXPIRED
        return current.status

    async def wait_for_decision(
        self,
        request_id: int,
        timeout_s: float | None = None,
        poll_interval_s: float | None = None,
    ) -> str:
        """Wait until the request is approved, denied or expired.

        Returns the terminal status. Cancellation of the awaiting task
        propagates unchanged.
        """
        timeout = max(
            MIN_WAIT_TIMEOUT_SECONDS,
            self.config.wait_timeout_seconds if timeout_s is None else float(timeout_s),
        )
        poll_interval = max(
            MIN_POLL_INTERVAL_SECONDS,
            self.config.poll_interval_seconds if poll_interval_s is None else float(poll_interval_s),
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        event = self._waiters.setdefault(request_id, asyncio.Event())

        try:
            while True:
                request = await self.store.get_approval_request(request_id)
                if request is None:
                    return APPROVAL_EXPIRED
                if request.status in _TERMINAL_STATUSES:
                    return request.status

                now = utcnow()
                if request.is_expired(now):
                    return await self._expire(request_id)

                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                wait_for = min(poll_interval, remaining)
                if request.expires_at is not None:
                    wait_for = min(wait_for, max(0.0, (request.expires_at - now).total_seconds()))

                event.clear()
                try:
                    await asyncio.wait_for(event.wait(), timeout=wait_for)
                except TimeoutError:
                    pass
        finally:
            if self._waiters.get(request_id) is event:
                self._waiters.pop(request_id, None)

        log.warning("Skill approval wait timed out", request_id=request_id, timeout_s=timeout)
        return await self._expire(request_id)
