import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from skillgate.approvals import ApprovalService
from skillgate.config import ApprovalsConfig
from skillgate.exceptions import ApprovalError
from skillgate.models import APPROVAL_APPROVED, APPROVAL_DENIED, APPROVAL_EXPIRED, SOURCE_GITHUB, utcnow
from skillgate.policy import resolve_skill_policy
from skillgate.store import SkillStore


async def _make_skill(store: SkillStore, slug: str = "notes"):
    return await store.upsert_skill(
        slug=slug,
        display_name=slug.title(),
        description=None,
        source_type=SOURCE_GITHUB,
        source_url=f"https://github.com/acme/{slug}",
    )


def _service(store: SkillStore) -> ApprovalService:
    return ApprovalService(
        store,
        ApprovalsConfig(expires_in_seconds=90, wait_timeout_seconds=95, poll_interval_seconds=0.2),
    )


@pytest.mark.asyncio
async def test_respond_wakes_waiter_with_decision(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        skill = await _make_skill(store)
        service = _service(store)
        request = await service.create_request(skill.id, "take_note", "user:7", session_id=11)
        assert request.expires_at > utcnow() + timedelta(seconds=80)

        waiter = asyncio.create_task(service.wait_for_decision(request.id))
        await asyncio.sleep(0.05)
        resolved = await service.respond(request.id, True, decided_by_user_id=7, note="ok")

        assert resolved.status == APPROVAL_APPROVED
        assert resolved.decided_by_user_id == 7
        assert resolved.decision_note == "ok"
        assert await asyncio.wait_for(waiter, timeout=5) == APPROVAL_APPROVED
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_medium_risk_prompts_once_per_session(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        skill = await _make_skill(store)
        service = _service(store)

        first = resolve_skill_policy("medium", None, await service.has_session_approved_skill(5, skill.id))
        assert first.decision == "require_approval"

        request = await service.create_request(skill.id, "take_note", "user:1", session_id=5)
        await service.respond(request.id, True, decided_by_user_id=1)

        second = resolve_skill_policy("medium", None, await service.has_session_approved_skill(5, skill.id))
        assert second.decision == "allow"

        other_session = await service.has_session_approved_skill(6, skill.id)
        assert resolve_skill_policy("medium", None, other_session).decision == "require_approval"
        assert await service.has_session_approved_skill(None, skill.id) is False
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_respond_rejects_unknown_resolved_and_expired_requests(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        skill = await _make_skill(store)
        service = _service(store)

        with pytest.raises(ApprovalError, match="not found"):
            await service.respond(999, True, decided_by_user_id=1)

        request = await service.create_request(skill.id, "take_note", "user:1")
        await service.respond(request.id, False, decided_by_user_id=1)
        with pytest.raises(ApprovalError, match="already denied"):
            await service.respond(request.id, True, decided_by_user_id=1)

        stale = await store.create_approval_request(
            skill_id=skill.id,
            tool_name="take_note",
            requested_by_actor="user:1",
            expires_at=utcnow() - timedelta(seconds=1),
        )
        with pytest.raises(ApprovalError, match="expired"):
            await service.respond(stale.id, True, decided_by_user_id=1)
        assert (await store.get_approval_request(stale.id)).status == APPROVAL_EXPIRED
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_wait_observes_expired_deadline(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        skill = await _make_skill(store)
        service = _service(store)
        stale = await store.create_approval_request(
            skill_id=skill.id,
            tool_name="take_note",
            requested_by_actor="user:1",
            expires_at=utcnow() - timedelta(milliseconds=10),
        )
        assert await service.wait_for_decision(stale.id) == APPROVAL_EXPIRED
        assert (await store.get_approval_request(stale.id)).status == APPROVAL_EXPIRED
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_wait_timeout_expires_pending_request(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        skill = await _make_skill(store)
        service = _service(store)
        request = await service.create_request(skill.id, "take_note", "user:1")

        assert await service.wait_for_decision(request.id, timeout_s=1, poll_interval_s=0.2) == APPROVAL_EXPIRED
        with pytest.raises(ApprovalError):
            await service.respond(request.id, True, decided_by_user_id=1)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_cancelled_wait_propagates_and_can_be_denied(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        skill = await _make_skill(store)
        service = _service(store)
        request = await service.create_request(skill.id, "take_note", "user:1")

        waiter = asyncio.create_task(service.wait_for_decision(request.id))
        await asyncio.sleep(0.05)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert await service.deny_abandoned(request.id) is True
        assert (await store.get_approval_request(request.id)).status == APPROVAL_DENIED
        assert await service.deny_abandoned(request.id) is False
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_mark_expired_pending_counts_only_overdue(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        skill = await _make_skill(store)
        service = _service(store)
        await store.create_approval_request(
            skill_id=skill.id,
            tool_name="a",
            requested_by_actor="x",
            expires_at=utcnow() - timedelta(seconds=5),
        )
        fresh = await service.create_request(skill.id, "b", "x")

        assert await service.mark_expired_pending() == 1
        pending = await service.list_requests(status="pending")
        assert [item.id for item in pending] == [fresh.id]
    finally:
        await store.close()
