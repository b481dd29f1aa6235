"""Per-conversation tool registry built from skill bindings."""

import asyncio
import inspect
import json
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

from skillgate.approvals import ApprovalService
from skillgate.audit import ExecutionAuditLogger
from skillgate.builtin import BUILTIN_SKILL_SLUGS
from skillgate.config import Config, get_config
from skillgate.exceptions import SkillRuntimeError
from skillgate.logging import get_logger
from skillgate.manifest import SkillManifest, SkillTool, manifest_from_json, normalize_tool_name
from skillgate.models import (
    APPROVAL_APPROVED,
    APPROVAL_DENIED,
    SCOPE_BATTLE_MODEL,
    SCOPE_SESSION,
    SCOPE_SYSTEM,
    SCOPE_USER,
    SYSTEM_SCOPE_ID,
    VERSION_ACTIVE,
    Skill,
    SkillBinding,
    SkillVersion,
)
from skillgate.policy import resolve_skill_policy
from skillgate.python_runtime import PythonEnvironment
from skillgate.runtime import execute_skill_runtime
from skillgate.store import SkillStore

log = get_logger(__name__)

EventSender = Callable[[dict[str, Any]], Awaitable[None] | None]

SCOPE_PRIORITY: dict[str, int] = {
    SCOPE_BATTLE_MODEL: 4,
    SCOPE_SESSION: 3,
    SCOPE_USER: 2,
    SCOPE_SYSTEM: 1,
}

EVENT_APPROVAL_REQUEST = "skill_approval_request"
EVENT_APPROVAL_RESULT = "skill_approval_result"


@dataclass
class ToolCall:
    name: str
    id: str | None = None


@dataclass
class ToolCallContext:
    """Who is calling, where, and how to reach the live client."""

    session_id: int | None = None
    actor_user_id: int | None = None
    actor_identifier: str | None = None
    battle_run_id: int | None = None
    message_id: int | None = None
    send_tool_event: EventSender | None = None
    send_stream_event: EventSender | None = None


@dataclass
class ToolHandlerResult:
    tool_call_id: str
    tool_name: str
    content: str
    is_error: bool = False

    def to_message(self) -> dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": self.tool_call_id,
            "name": self.tool_name,
            "content": self.content,
        }


class ToolHandler(Protocol):
    """Anything the registry can route a tool call to."""

    def names(self) -> list[str]: ...

    def get_definition(self) -> dict[str, Any]: ...

    async def handle(
        self,
        tool_call: ToolCall,
        args: dict[str, Any],
        context: ToolCallContext,
    ) -> ToolHandlerResult: ...


@dataclass
class RequestedSkills:
    enabled: list[str] = field(default_factory=list)
    overrides: dict[str, dict[str, Any]] | None = None


def _positive(value: int | None) -> int | None:
    if value is None or value <= 0:
        return None
    return value


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))


async def _emit(sender: EventSender | None, event: dict[str, Any]) -> None:
    if sender is None:
        return
    # A dead client must not abort the call or its audit row.
    try:
        outcome = sender(event)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as exc:
        log.warning(
            "Failed to deliver skill event",
            event_type=event.get("type") or event.get("phase"),
            error=str(exc),
        )


def parse_runtime_output(stdout: str) -> dict[str, Any]:
    """Interpret a skill's stdout as the tool result object."""
    trimmed = (stdout or "").strip()
    if not trimmed:
        return {"ok": True}
    try:
        parsed = json.loads(trimmed)
    except ValueError:
        return {"text": trimmed}
    if isinstance(parsed, dict):
        return parsed
    return {"value": parsed}


class SkillToolHandler:
    """Runs one manifest tool: policy, approval, runtime, audit."""

    def __init__(
        self,
        *,
        skill: Skill,
        version: SkillVersion,
        manifest: SkillManifest,
        tool: SkillTool,
        package_path: Path | str,
        binding: SkillBinding | None,
        approvals: ApprovalService,
        audit: ExecutionAuditLogger,
        python_env: PythonEnvironment | None = None,
        config: Config | None = None,
    ):
        self.skill = skill
        self.version = version
        self.manifest = manifest
        self.tool = tool
        self.package_path = Path(package_path)
        self.binding = binding
        self.approvals = approvals
        self.audit = audit
        self.python_env = python_env
        self.config = config or get_config()

    @property
    def risk_level(self) -> str:
        return self.version.risk_level or self.manifest.risk_level

    def names(self) -> list[str]:
        return [self.tool.name, *(self.tool.aliases or [])]

    def get_definition(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.tool.name,
                "description": self.tool.description,
                "parameters": self.tool.input_schema,
            },
        }

    def _tool_event(self, phase: str, call_id: str, **extra: Any) -> dict[str, Any]:
        return {
            "phase": phase,
            "tool": self.tool.name,
            "toolCallId": call_id,
            "skill": self.skill.slug,
            **extra,
        }

    async def _record(
        self,
        context: ToolCallContext,
        call_id: str,
        request_payload: dict[str, Any],
        response_payload: dict[str, Any],
        *,
        approval_status: str,
        approval_request_id: int | None = None,
        duration_ms: int = 0,
        error: str | None = None,
    ) -> None:
        await self.audit.record(
            skill_id=self.skill.id,
            version_id=self.version.id,
            tool_name=self.tool.name,
            tool_call_id=call_id,
            request_payload=request_payload,
            response_payload=response_payload,
            approval_request_id=approval_request_id,
            session_id=_positive(context.session_id),
            battle_run_id=context.battle_run_id,
            message_id=context.message_id,
            approval_status=approval_status,
            duration_ms=duration_ms,
            error=error,
        )

    async def _fail(
        self,
        context: ToolCallContext,
        call_id: str,
        request_payload: dict[str, Any],
        message: str,
        *,
        approval_status: str,
        approval_request_id: int | None = None,
        response_payload: dict[str, Any] | None = None,
        duration_ms: int = 0,
        details: dict[str, Any] | None = None,
    ) -> ToolHandlerResult:
        await _emit(
            context.send_tool_event,
            self._tool_event("error", call_id, error=message, **({"details": details} if details else {})),
        )
        await self._record(
            context,
            call_id,
            request_payload,
            response_payload if response_payload is not None else {"error": message},
            approval_status=approval_status,
            approval_request_id=approval_request_id,
            duration_ms=duration_ms,
            error=message,
        )
        log.warning(
            "Skill tool call failed",
            skill=self.skill.slug,
            tool=self.tool.name,
            tool_call_id=call_id,
            approval_status=approval_status,
            error=message,
        )
        return ToolHandlerResult(
            tool_call_id=call_id,
            tool_name=self.tool.name,
            content=json.dumps({"error": message}, ensure_ascii=False),
            is_error=True,
        )

    async def _await_approval(
        self,
        context: ToolCallContext,
        call_id: str,
        request_payload: dict[str, Any],
        reason: str,
    ) -> tuple[str, int]:
        cfg = self.config.approvals
        request = await self.approvals.create_request(
            skill_id=self.skill.id,
            tool_name=self.tool.name,
            requested_by_actor=context.actor_identifier or "unknown",
            version_id=self.version.id,
            binding_id=self.binding.id if self.binding else None,
            session_id=_positive(context.session_id),
            battle_run_id=context.battle_run_id,
            message_id=context.message_id,
            tool_call_id=call_id,
            reason=reason,
            request_payload=request_payload,
            expires_in_seconds=cfg.expires_in_seconds,
        )
        await _emit(
            context.send_stream_event,
            {
                "type": EVENT_APPROVAL_REQUEST,
                "requestId": request.id,
                "skillId": self.skill.id,
                "skillSlug": self.skill.slug,
                "skillVersionId": self.version.id,
                "tool": self.tool.name,
                "toolCallId": call_id,
                "reason": reason,
                "expiresAt": request.expires_at.isoformat() if request.expires_at else None,
            },
        )

        # The wait must outlast the request so expiry is always observed.
        wait_timeout = max(cfg.wait_timeout_seconds, cfg.expires_in_seconds + 1)
        try:
            decision = await self.approvals.wait_for_decision(request.id, timeout_s=wait_timeout)
        except asyncio.CancelledError:
            await self.approvals.deny_abandoned(request.id)
            await self._record(
                context,
                call_id,
                request_payload,
                {"error": "Approval wait cancelled"},
                approval_status=APPROVAL_DENIED,
                approval_request_id=request.id,
                error="Approval wait cancelled",
            )
            raise

        await _emit(
            context.send_stream_event,
            {
                "type": EVENT_APPROVAL_RESULT,
                "requestId": request.id,
                "skillId": self.skill.id,
                "skillSlug": self.skill.slug,
                "tool": self.tool.name,
                "toolCallId": call_id,
                "decision": decision,
            },
        )
        return decision, request.id

    async def handle(
        self,
        tool_call: ToolCall,
        args: dict[str, Any],
        context: ToolCallContext,
    ) -> ToolHandlerResult:
        """Execute the tool call; every failure becomes an error result.

        Cancellation is audited before it propagates; during the approval
        wait it also denies the pending request.
        """
        call_id = tool_call.id or str(uuid.uuid4())
        request_payload = {
            "args": args,
            "tool": self.tool.name,
            "skill": self.skill.slug,
            "sessionId": context.session_id,
            "messageId": context.message_id,
            "battleRunId": context.battle_run_id,
        }
        approval_status = "skipped"
        approval_request_id: int | None = None

        try:
            await _emit(context.send_tool_event, self._tool_event("start", call_id, args=args))

            session_approved = await self.approvals.has_session_approved_skill(
                _positive(context.session_id), self.skill.id
            )
            decision = resolve_skill_policy(
                self.risk_level,
                self.binding.policy if self.binding else None,
                session_approved,
            )

            if decision.decision == "deny":
                return await self._fail(
                    context,
                    call_id,
                    request_payload,
                    f"Skill call blocked by policy: {decision.reason}",
                    approval_status="denied_by_policy",
                )

            if decision.decision == "require_approval":
                if context.send_stream_event is None:
                    return await self._fail(
                        context,
                        call_id,
                        request_payload,
                        "Skill call requires approval but no interactive channel is available",
                        approval_status="approval_unavailable",
                    )
                approval_status, approval_request_id = await self._await_approval(
                    context, call_id, request_payload, decision.reason
                )
                if approval_status != APPROVAL_APPROVED:
                    return await self._fail(
                        context,
                        call_id,
                        request_payload,
                        f"Skill call was not approved ({approval_status})",
                        approval_status=approval_status,
                        approval_request_id=approval_request_id,
                    )

            started = time.monotonic()
            try:
                result = await execute_skill_runtime(
                    self.manifest.runtime,
                    self.package_path,
                    self.version.entry or self.manifest.entry,
                    {
                        "tool": self.tool.name,
                        "args": args,
                        "context": {
                            "sessionId": context.session_id,
                            "messageId": context.message_id,
                            "battleRunId": context.battle_run_id,
                            "actorUserId": context.actor_user_id,
                        },
                    },
                    actor_user_id=context.actor_user_id,
                    skill_id=self.skill.id,
                    version_id=self.version.id,
                    python_env=self.python_env,
                    config=self.config.runtime,
                )
            except asyncio.CancelledError:
                await self._record(
                    context,
                    call_id,
                    request_payload,
                    {"error": "Skill call cancelled"},
                    approval_status=approval_status,
                    approval_request_id=approval_request_id,
                    duration_ms=_elapsed_ms(started),
                    error="Skill call cancelled",
                )
                log.info("Skill tool call cancelled", skill=self.skill.slug, tool=self.tool.name, tool_call_id=call_id)
                raise
            except SkillRuntimeError as exc:
                return await self._fail(
                    context,
                    call_id,
                    request_payload,
                    str(exc) or exc.__class__.__name__,
                    approval_status=approval_status,
                    approval_request_id=approval_request_id,
                    duration_ms=_elapsed_ms(started),
                )
            duration_ms = _elapsed_ms(started)

            if not result.ok:
                message = result.stderr.strip() or f"Skill runtime exited with code {result.exit_code}"
                return await self._fail(
                    context,
                    call_id,
                    request_payload,
                    message,
                    approval_status=approval_status,
                    approval_request_id=approval_request_id,
                    response_payload={
                        "stdout": result.stdout,
                        "stderr": result.stderr,
                        "exitCode": result.exit_code,
                        "autoInstalledRequirements": result.auto_installed_requirements,
                    },
                    duration_ms=duration_ms,
                    details={
                        "exitCode": result.exit_code,
                        "truncated": result.truncated,
                        "autoInstalledRequirements": result.auto_installed_requirements,
                    },
                )

            output = parse_runtime_output(result.stdout)
            await _emit(context.send_tool_event, self._tool_event("result", call_id, result=output))
            await self._record(
                context,
                call_id,
                request_payload,
                output,
                approval_status=approval_status,
                approval_request_id=approval_request_id,
                duration_ms=duration_ms,
            )
            log.info(
                "Skill tool call completed",
                skill=self.skill.slug,
                tool=self.tool.name,
                tool_call_id=call_id,
                duration_ms=duration_ms,
                auto_installed=result.auto_installed_requirements or None,
            )
            return ToolHandlerResult(
                tool_call_id=call_id,
                tool_name=self.tool.name,
                content=json.dumps(output, ensure_ascii=False, default=str),
            )
        except Exception as exc:
            return await self._fail(
                context,
                call_id,
                request_payload,
                str(exc) or exc.__class__.__name__,
                approval_status=approval_status,
                approval_request_id=approval_request_id,
            )


class ToolHandlerRegistry:
    """Maps normalized tool names and aliases to their handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._ordered: list[ToolHandler] = []

    def register(self, handler: ToolHandler) -> bool:
        """Register a handler under all its names; claimed names keep their owner.

        Returns False when the primary name was already taken.
        """
        names = [normalize_tool_name(name) for name in handler.names()]
        names = [name for name in names if name]
        if not names or names[0] in self._handlers:
            return False
        for name in names:
            self._handlers.setdefault(name, handler)
        self._ordered.append(handler)
        return True

    def has_handler(self, name: str) -> bool:
        return normalize_tool_name(name) in self._handlers

    def get_handler(self, name: str) -> ToolHandler | None:
        return self._handlers.get(normalize_tool_name(name))

    def can_handle(self, tool_call: ToolCall) -> bool:
        return self.has_handler(tool_call.name)

    def get_tool_definitions(self) -> list[dict[str, Any]]:
        return [handler.get_definition() for handler in self._ordered]

    async def handle(
        self,
        tool_call: ToolCall,
        args: dict[str, Any],
        context: ToolCallContext,
    ) -> ToolHandlerResult:
        handler = self.get_handler(tool_call.name)
        if handler is None:
            return ToolHandlerResult(
                tool_call_id=tool_call.id or str(uuid.uuid4()),
                tool_name=tool_call.name,
                content=json.dumps({"error": f"Unknown tool: {tool_call.name}"}),
                is_error=True,
            )
        return await handler.handle(tool_call, args, context)


def normalize_requested_skills(payload: Any) -> RequestedSkills:
    """Normalize ``{"enabled": [...], "overrides": {...}}`` from a client request."""
    if not isinstance(payload, dict):
        return RequestedSkills()

    enabled: list[str] = []
    for item in payload.get("enabled") or []:
        if not isinstance(item, str):
            continue
        slug = item.strip().lower()
        if slug and slug not in enabled:
            enabled.append(slug)

    overrides: dict[str, dict[str, Any]] = {}
    raw_overrides = payload.get("overrides")
    if isinstance(raw_overrides, dict):
        for key, value in raw_overrides.items():
            slug = str(key).strip().lower()
            if slug and isinstance(value, dict):
                overrides[slug] = value

    return RequestedSkills(enabled=enabled, overrides=overrides or None)


def choose_binding(bindings: list[SkillBinding]) -> SkillBinding | None:
    """Highest-priority scope wins; within a scope the most recently updated."""
    best: SkillBinding | None = None
    for binding in bindings:
        if best is None:
            best = binding
            continue
        rank = (SCOPE_PRIORITY.get(binding.scope_type, 0), binding.updated_at, binding.id)
        best_rank = (SCOPE_PRIORITY.get(best.scope_type, 0), best.updated_at, best.id)
        if rank > best_rank:
            best = binding
    return best


async def resolve_active_version(
    store: SkillStore,
    skill: Skill,
    binding: SkillBinding | None,
) -> SkillVersion | None:
    """Binding pin, then the skill default, then the latest activated version."""
    candidates = [binding.version_id if binding else None, skill.default_version_id]
    for version_id in candidates:
        if version_id is None:
            continue
        version = await store.get_version(version_id)
        if version and version.skill_id == skill.id and version.status == VERSION_ACTIVE:
            return version
    return await store.latest_active_version(skill.id)


async def create_skill_registry(
    store: SkillStore,
    requested_skills: Any,
    session_id: int | None = None,
    actor_user_id: int | None = None,
    battle_run_id: int | None = None,
    builtin_handlers: list[ToolHandler] | None = None,
    *,
    approvals: ApprovalService | None = None,
    audit: ExecutionAuditLogger | None = None,
    python_env: PythonEnvironment | None = None,
    config: Config | None = None,
) -> ToolHandlerRegistry:
    """Build the tool registry for one conversation turn.

    Built-in handlers are registered first, so installed skills can never
    shadow their names.
    """
    cfg = config or get_config()
    registry = ToolHandlerRegistry()
    for handler in builtin_handlers or []:
        registry.register(handler)

    requested = normalize_requested_skills(requested_skills)
    slugs = [slug for slug in requested.enabled if slug not in BUILTIN_SKILL_SLUGS]
    if not slugs:
        return registry

    skills = await store.list_active_skills_by_slugs(slugs)
    if not skills:
        return registry

    scopes: list[tuple[str, str]] = [(SCOPE_SYSTEM, SYSTEM_SCOPE_ID)]
    if session_id is not None:
        scopes.append((SCOPE_SESSION, str(session_id)))
    if actor_user_id is not None:
        scopes.append((SCOPE_USER, str(actor_user_id)))
    if battle_run_id is not None:
        scopes.append((SCOPE_BATTLE_MODEL, str(battle_run_id)))

    bindings = await store.list_enabled_bindings([skill.id for skill in skills], scopes)
    by_skill: dict[int, list[SkillBinding]] = {}
    for binding in bindings:
        by_skill.setdefault(binding.skill_id, []).append(binding)

    approval_service = approvals or ApprovalService(store, cfg.approvals)
    audit_logger = audit or ExecutionAuditLogger(store)

    for skill in skills:
        binding = choose_binding(by_skill.get(skill.id, []))
        version = await resolve_active_version(store, skill, binding)
        if version is None or not version.package_path:
            log.debug("Skipping skill without an active package", skill=skill.slug)
            continue
        manifest = manifest_from_json(version.manifest_json)
        if manifest is None:
            log.warning("Skipping skill with unreadable manifest", skill=skill.slug, version_id=version.id)
            continue

        for tool in manifest.tools:
            if registry.has_handler(tool.name):
                log.info("Tool name already claimed, skipping", skill=skill.slug, tool=tool.name)
                continue
            registry.register(
                SkillToolHandler(
                    skill=skill,
                    version=version,
                    manifest=manifest,
                    tool=tool,
                    package_path=version.package_path,
                    binding=binding,
                    approvals=approval_service,
                    audit=audit_logger,
                    python_env=python_env,
                    config=cfg,
                )
            )

    return registry
