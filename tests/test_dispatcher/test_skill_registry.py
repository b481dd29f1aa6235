import asyncio
import json
import os
import sys
from datetime import timedelta
from pathlib import Path

import pytest

from skillgate.approvals import ApprovalService
from skillgate.config import ApprovalsConfig, Config
from skillgate.dispatcher import (
    ToolCall,
    ToolCallContext,
    ToolHandlerRegistry,
    ToolHandlerResult,
    choose_binding,
    create_skill_registry,
    normalize_requested_skills,
    parse_runtime_output,
)
from skillgate.manifest import validate_manifest_data
from skillgate.models import (
    APPROVAL_DENIED,
    SCOPE_BATTLE_MODEL,
    SCOPE_SESSION,
    SCOPE_SYSTEM,
    SCOPE_USER,
    SOURCE_GITHUB,
    SYSTEM_SCOPE_ID,
    VERSION_ACTIVE,
    VERSION_DEPRECATED,
    SkillBinding,
    utcnow,
)
from skillgate.store import SkillStore

ECHO_SCRIPT = """
import json, sys
from pathlib import Path
payload = json.loads(sys.stdin.read())
runs = Path(__file__).parent / "runs.txt"
runs.write_text((runs.read_text() if runs.exists() else "") + "x")
print(json.dumps({"echo": payload["args"], "tool": payload["tool"], "version": "%s"}))
"""

FAILING_SCRIPT = """
import sys
sys.stderr.write("boom: disk full\\n")
sys.exit(3)
"""

SLEEPING_SCRIPT = """
import os, time
from pathlib import Path
Path(__file__).with_name("pid.txt").write_text(str(os.getpid()))
time.sleep(30)
"""


def _config() -> Config:
    cfg = Config()
    cfg.approvals = ApprovalsConfig(expires_in_seconds=90, wait_timeout_seconds=95, poll_interval_seconds=0.2)
    return cfg


async def _install(
    store: SkillStore,
    root: Path,
    slug: str,
    risk: str = "low",
    *,
    version: str = "1.0.0",
    tools: tuple[str, ...] = ("run_tool",),
    script: str | None = None,
    make_default: bool = True,
    runtime: dict | None = None,
    version_entry: str = "main.py",
):
    package = root / slug / version
    package.mkdir(parents=True, exist_ok=True)
    (package / "main.py").write_text(script if script is not None else ECHO_SCRIPT % version, encoding="utf-8")
    manifest = validate_manifest_data(
        {
            "id": slug,
            "name": slug.title(),
            "version": version,
            "entry": "main.py",
            "tools": [
                {"name": name, "description": f"{name} tool", "input_schema": {"type": "object"}}
                for name in tools
            ],
            "runtime": runtime or {"type": "python"},
            "platforms": ["linux", "darwin", "windows"],
            "risk_level": risk,
        },
        f"{slug}/manifest.yaml",
    )
    skill = await store.upsert_skill(
        slug=slug,
        display_name=slug.title(),
        description=None,
        source_type=SOURCE_GITHUB,
        source_url=f"https://github.com/acme/{slug}",
    )
    created = await store.create_version(
        skill_id=skill.id,
        version=version,
        status=VERSION_ACTIVE,
        risk_level=risk,
        entry=version_entry,
        manifest_json=manifest.to_json(),
        package_path=str(package),
        activated_at=utcnow(),
    )
    if make_default:
        await store.set_default_version(skill.id, created.id)
    return skill, created, package


class EventLog:
    def __init__(self):
        self.tool_events: list[dict] = []
        self.stream_events: list[dict] = []

    def tool(self, event: dict) -> None:
        self.tool_events.append(event)

    def stream_types(self) -> list[str]:
        return [event["type"] for event in self.stream_events]


def _responder(events: EventLog, approvals: ApprovalService, approve: bool):
    async def _stream(event: dict) -> None:
        events.stream_events.append(event)
        if event["type"] == "skill_approval_request":
            await approvals.respond(event["requestId"], approve, decided_by_user_id=9)

    return _stream


async def _registry(store: SkillStore, slugs: list[str], **kwargs):
    cfg = _config()
    approvals = ApprovalService(store, cfg.approvals)
    registry = await create_skill_registry(
        store,
        {"enabled": slugs},
        session_id=kwargs.pop("session_id", 100),
        actor_user_id=kwargs.pop("actor_user_id", 9),
        approvals=approvals,
        config=cfg,
        **kwargs,
    )
    return registry, approvals


@pytest.mark.asyncio
async def test_low_risk_call_runs_and_is_audited(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        skill, version, _ = await _install(store, tmp_path / "pkgs", "echo")
        registry, _ = await _registry(store, ["Echo", "echo"])
        events = EventLog()
        context = ToolCallContext(session_id=100, actor_user_id=9, message_id=5, send_tool_event=events.tool)

        assert registry.can_handle(ToolCall(name="RUN_TOOL"))
        result = await registry.handle(ToolCall(name="run_tool", id="call-1"), {"q": 1}, context)

        assert not result.is_error
        assert json.loads(result.content) == {"echo": {"q": 1}, "tool": "run_tool", "version": "1.0.0"}
        assert result.to_message() == {
            "role": "tool",
            "tool_call_id": "call-1",
            "name": "run_tool",
            "content": result.content,
        }
        assert [event["phase"] for event in events.tool_events] == ["start", "result"]

        audits = await store.list_audits(session_id=100)
        assert len(audits) == 1
        assert audits[0].skill_id == skill.id
        assert audits[0].version_id == version.id
        assert audits[0].approval_status == "skipped"
        assert audits[0].error is None
        assert audits[0].message_id == 5
        assert audits[0].duration_ms >= 0
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_critical_risk_is_denied_without_running(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        _, _, package = await _install(store, tmp_path / "pkgs", "wipe", risk="critical")
        registry, _ = await _registry(store, ["wipe"])
        events = EventLog()

        result = await registry.handle(
            ToolCall(name="run_tool", id="c1"),
            {},
            ToolCallContext(session_id=100, send_tool_event=events.tool),
        )

        assert result.is_error
        assert "blocked by policy" in json.loads(result.content)["error"]
        assert not (package / "runs.txt").exists()
        assert [event["phase"] for event in events.tool_events] == ["start", "error"]
        audits = await store.list_audits()
        assert len(audits) == 1
        assert audits[0].approval_status == "denied_by_policy"
        assert audits[0].duration_ms == 0
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_binding_override_allows_high_risk_without_prompt(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        skill, _, _ = await _install(store, tmp_path / "pkgs", "deploy", risk="high")
        await store.upsert_binding(skill.id, SCOPE_SESSION, "100", policy={"decision": "allow"})
        registry, _ = await _registry(store, ["deploy"])

        result = await registry.handle(ToolCall(name="run_tool"), {}, ToolCallContext(session_id=100))

        assert not result.is_error
        assert result.tool_call_id
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_approval_required_without_stream_fails_closed(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        _, _, package = await _install(store, tmp_path / "pkgs", "deploy", risk="high")
        registry, approvals = await _registry(store, ["deploy"])

        result = await registry.handle(ToolCall(name="run_tool"), {}, ToolCallContext(session_id=100))

        assert result.is_error
        assert not (package / "runs.txt").exists()
        assert await approvals.list_requests() == []
        audits = await store.list_audits()
        assert audits[0].approval_status == "approval_unavailable"
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_medium_risk_approved_once_per_session(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        _, version, package = await _install(store, tmp_path / "pkgs", "notes", risk="medium")
        registry, approvals = await _registry(store, ["notes"])
        events = EventLog()
        context = ToolCallContext(
            session_id=100,
            actor_user_id=9,
            actor_identifier="user:9",
            send_stream_event=_responder(events, approvals, approve=True),
        )

        first = await registry.handle(ToolCall(name="run_tool", id="a"), {}, context)
        assert not first.is_error
        assert events.stream_types() == ["skill_approval_request", "skill_approval_result"]
        request_event = events.stream_events[0]
        assert request_event["skillVersionId"] == version.id
        assert request_event["toolCallId"] == "a"
        assert events.stream_events[1]["decision"] == "approved"

        second = await registry.handle(ToolCall(name="run_tool", id="b"), {}, context)
        assert not second.is_error
        assert len(events.stream_events) == 2
        assert (package / "runs.txt").read_text() == "xx"

        audits = await store.list_audits(session_id=100)
        by_call = {audit.tool_call_id: audit for audit in audits}
        assert by_call["a"].approval_status == "approved"
        assert by_call["a"].approval_request_id == request_event["requestId"]
        assert by_call["b"].approval_status == "skipped"

        request = await approvals.get_request(request_event["requestId"])
        assert request.requested_by_actor == "user:9"
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_denied_approval_returns_error_and_audits(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        _, _, package = await _install(store, tmp_path / "pkgs", "deploy", risk="high")
        registry, approvals = await _registry(store, ["deploy"])
        events = EventLog()
        context = ToolCallContext(session_id=100, send_stream_event=_responder(events, approvals, approve=False))

        result = await registry.handle(ToolCall(name="run_tool"), {}, context)

        assert result.is_error
        assert "not approved (denied)" in json.loads(result.content)["error"]
        assert not (package / "runs.txt").exists()
        audits = await store.list_audits()
        assert audits[0].approval_status == "denied"
        assert audits[0].approval_request_id is not None
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_cancelled_approval_wait_is_recorded_as_denial(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        await _install(store, tmp_path / "pkgs", "deploy", risk="high")
        registry, approvals = await _registry(store, ["deploy"])
        asked = asyncio.Event()

        def _stream(event: dict) -> None:
            if event["type"] == "skill_approval_request":
                asked.set()

        task = asyncio.create_task(
            registry.handle(ToolCall(name="run_tool"), {}, ToolCallContext(session_id=100, send_stream_event=_stream))
        )
        await asyncio.wait_for(asked.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        requests = await approvals.list_requests()
        assert requests[0].status == APPROVAL_DENIED
        audits = await store.list_audits()
        assert len(audits) == 1
        assert audits[0].approval_status == APPROVAL_DENIED
        assert audits[0].approval_request_id == requests[0].id
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_runtime_failure_surfaces_stderr(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        await _install(store, tmp_path / "pkgs", "broken", script=FAILING_SCRIPT)
        registry, _ = await _registry(store, ["broken"])
        events = EventLog()

        result = await registry.handle(ToolCall(name="run_tool"), {}, ToolCallContext(send_tool_event=events.tool))

        assert result.is_error
        assert json.loads(result.content) == {"error": "boom: disk full"}
        assert events.tool_events[-1]["details"]["exitCode"] == 3
        audit = (await store.list_audits())[0]
        assert json.loads(audit.response_payload_json)["exitCode"] == 3
        assert json.loads(audit.response_payload_json)["autoInstalledRequirements"] == []
        assert audit.error == "boom: disk full"
        assert audit.session_id is None
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_runtime_timeout_is_audited_with_duration(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        await _install(
            store,
            tmp_path / "pkgs",
            "slow",
            script=SLEEPING_SCRIPT,
            runtime={"type": "python", "timeout_ms": 1000},
        )
        registry, _ = await _registry(store, ["slow"])

        result = await registry.handle(ToolCall(name="run_tool"), {}, ToolCallContext(session_id=100))

        assert result.is_error
        assert "timeout" in json.loads(result.content)["error"]
        audit = (await store.list_audits())[0]
        assert audit.error == json.loads(result.content)["error"]
        assert audit.duration_ms >= 900
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_cancelled_runtime_is_audited_and_child_killed(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        _, _, package = await _install(store, tmp_path / "pkgs", "slow", script=SLEEPING_SCRIPT)
        registry, _ = await _registry(store, ["slow"])

        task = asyncio.create_task(
            registry.handle(ToolCall(name="run_tool", id="call-9"), {}, ToolCallContext(session_id=100))
        )
        pid_file = package / "pid.txt"
        for _ in range(200):
            if pid_file.exists() and pid_file.read_text():
                break
            await asyncio.sleep(0.05)
        assert pid_file.exists()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        audits = await store.list_audits()
        assert len(audits) == 1
        assert audits[0].error == "Skill call cancelled"
        assert audits[0].approval_status == "skipped"
        assert audits[0].tool_call_id == "call-9"
        if sys.platform != "win32":
            with pytest.raises(ProcessLookupError):
                os.kill(int(pid_file.read_text()), 0)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_version_entry_takes_precedence_over_manifest_entry(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        _, _, package = await _install(store, tmp_path / "pkgs", "echo", version_entry="run.py")
        (package / "run.py").write_text('print("{\\"entry\\": \\"run.py\\"}")\n', encoding="utf-8")
        registry, _ = await _registry(store, ["echo"])

        result = await registry.handle(ToolCall(name="run_tool"), {}, ToolCallContext(session_id=100))

        assert json.loads(result.content) == {"entry": "run.py"}
        assert not (package / "runs.txt").exists()
    finally:
        await store.close()

@pytest.mark.asyncio
async def test_failing_event_sender_does_not_break_call(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        await _install(store, tmp_path / "pkgs", "echo")
        registry, _ = await _registry(store, ["echo"])

        def _explode(event: dict) -> None:
            raise ConnectionError("socket closed")

        result = await registry.handle(ToolCall(name="run_tool"), {}, ToolCallContext(send_tool_event=_explode))
        assert not result.is_error
        assert len(await store.list_audits()) == 1
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_binding_precedence_picks_most_specific_scope(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        root = tmp_path / "pkgs"
        skill, v1, _ = await _install(store, root, "multi", version="1.0.0")
        _, v2, _ = await _install(store, root, "multi", version="2.0.0", make_default=False)
        _, v3, _ = await _install(store, root, "multi", version="3.0.0", make_default=False)

        await store.upsert_binding(skill.id, SCOPE_SYSTEM, SYSTEM_SCOPE_ID, version_id=v1.id)
        await store.upsert_binding(skill.id, SCOPE_USER, "9", version_id=v2.id)
        registry, _ = await _registry(store, ["multi"])
        assert registry.get_handler("run_tool").version.id == v2.id

        await store.upsert_binding(skill.id, SCOPE_SESSION, "100", version_id=v3.id)
        registry, _ = await _registry(store, ["multi"])
        assert registry.get_handler("run_tool").version.id == v3.id

        await store.upsert_binding(skill.id, SCOPE_BATTLE_MODEL, "77", version_id=v1.id)
        registry, _ = await _registry(store, ["multi"], battle_run_id=77)
        assert registry.get_handler("run_tool").version.id == v1.id

        await store.upsert_binding(skill.id, SCOPE_BATTLE_MODEL, "77", version_id=v1.id, enabled=False)
        registry, _ = await _registry(store, ["multi"], battle_run_id=77)
        assert registry.get_handler("run_tool").version.id == v3.id
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_inactive_pinned_version_falls_back_to_default_then_latest(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        root = tmp_path / "pkgs"
        skill, v1, _ = await _install(store, root, "multi", version="1.0.0")
        _, v2, _ = await _install(store, root, "multi", version="2.0.0", make_default=False)
        await store.update_version(v2.id, status=VERSION_DEPRECATED)
        await store.upsert_binding(skill.id, SCOPE_SYSTEM, SYSTEM_SCOPE_ID, version_id=v2.id)

        registry, _ = await _registry(store, ["multi"])
        assert registry.get_handler("run_tool").version.id == v1.id

        await store.set_default_version(skill.id, None)
        _, v3, _ = await _install(store, root, "multi", version="3.0.0", make_default=False)
        await store.update_version(v3.id, activated_at=utcnow() + timedelta(seconds=5))
        registry, _ = await _registry(store, ["multi"])
        assert registry.get_handler("run_tool").version.id == v3.id

        for version in (v1, v3):
            await store.update_version(version.id, status=VERSION_DEPRECATED)
        registry, _ = await _registry(store, ["multi"])
        assert not registry.has_handler("run_tool")
    finally:
        await store.close()


class _BuiltinHandler:
    def names(self) -> list[str]:
        return ["web_search", "search_web"]

    def get_definition(self) -> dict:
        return {"type": "function", "function": {"name": "web_search", "description": "d", "parameters": {}}}

    async def handle(self, tool_call, args, context) -> ToolHandlerResult:
        return ToolHandlerResult(tool_call_id=tool_call.id or "x", tool_name="web_search", content="{}")


@pytest.mark.asyncio
async def test_builtins_and_first_registered_skill_keep_their_names(tmp_path: Path):
    store = SkillStore(db_path=tmp_path / "skills.db")
    try:
        root = tmp_path / "pkgs"
        await _install(store, root, "alpha", tools=("web_search", "alpha_only", "shared"))
        await _install(store, root, "beta", tools=("Shared", "beta_only"))
        await _install(store, root, "web-search", tools=("shadow",))

        builtin = _BuiltinHandler()
        registry, _ = await _registry(store, ["alpha", "beta", "web-search"], builtin_handlers=[builtin])

        assert registry.get_handler("WEB_SEARCH") is builtin
        assert registry.get_handler("search_web") is builtin
        assert registry.get_handler("shared").skill.slug == "alpha"
        assert registry.has_handler("beta_only")
        assert not registry.has_handler("shadow")
        names = [definition["function"]["name"] for definition in registry.get_tool_definitions()]
        assert names == ["web_search", "alpha_only", "shared", "beta_only"]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_unknown_tool_returns_error_result():
    registry = ToolHandlerRegistry()
    result = await registry.handle(ToolCall(name="nope", id="z"), {}, ToolCallContext())
    assert result.is_error
    assert json.loads(result.content) == {"error": "Unknown tool: nope"}


def test_normalize_requested_skills():
    normalized = normalize_requested_skills({
        "enabled": [" PDF ", "pdf", 3, "", "csv"],
        "overrides": {" PDF ": {"timeout": 5}, "csv": "bad"},
    })
    assert normalized.enabled == ["pdf", "csv"]
    assert normalized.overrides == {"pdf": {"timeout": 5}}

    empty = normalize_requested_skills(None)
    assert empty.enabled == []
    assert empty.overrides is None


def test_choose_binding_prefers_scope_then_recency():
    now = utcnow()
    older_session = SkillBinding(id=1, skill_id=1, scope_type=SCOPE_SESSION, scope_id="1", updated_at=now)
    newer_session = SkillBinding(
        id=2, skill_id=1, scope_type=SCOPE_SESSION, scope_id="2", updated_at=now + timedelta(seconds=1)
    )
    system = SkillBinding(
        id=3, skill_id=1, scope_type=SCOPE_SYSTEM, scope_id="global", updated_at=now + timedelta(hours=1)
    )

    assert choose_binding([]) is None
    assert choose_binding([system, older_session, newer_session]) is newer_session
    assert choose_binding([system]) is system


def test_parse_runtime_output():
    assert parse_runtime_output("") == {"ok": True}
    assert parse_runtime_output('{"a": 1}\n') == {"a": 1}
    assert parse_runtime_output("[1, 2]") == {"value": [1, 2]}
    assert parse_runtime_output("plain text") == {"text": "plain text"}
