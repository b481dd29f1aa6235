"""Risk-based execution policy for skill tool calls."""

from dataclasses import dataclass
from typing import Any, Literal

Decision = Literal["allow", "deny", "require_approval"]

DECISIONS: tuple[str, ...] = ("allow", "deny", "require_approval")


@dataclass(frozen=True)
class PolicyDecision:
    decision: Decision
    reason: str

    @property
    def allowed(self) -> bool:
        return self.decision == "allow"


def _override_decision(policy: dict[str, Any] | None) -> str | None:
    if not isinstance(policy, dict):
        return None
    value = str(policy.get("decision") or "").strip().lower()
    return value if value in DECISIONS else None


def resolve_skill_policy(
    risk_level: str,
    policy: dict[str, Any] | None = None,
    has_session_approved_before: bool = False,
) -> PolicyDecision:
    """Decide whether a skill call may run, needs approval, or is refused.

    A binding policy ``{"decision": ...}`` override is checked first and
    always wins. Otherwise: low allows, medium asks once per session, high
    asks every call, critical and unknown levels deny.
    """
    override = _override_decision(policy)
    if override is not None:
        return PolicyDecision(override, f"Binding policy override: {override}")  # type: ignore[arg-type]

    risk = str(risk_level or "").strip().lower()
    if risk == "low":
        return PolicyDecision("allow", "Low risk skill")
    if risk == "medium":
        if has_session_approved_before:
            return PolicyDecision("allow", "Medium risk skill already approved in this session")
        return PolicyDecision("require_approval", "Medium risk skill requires approval once per session")
    if risk == "high":
        return PolicyDecision("require_approval", "High risk skill requires approval for every call")
    if risk == "critical":
        return PolicyDecision("deny", "Critical risk skill is blocked")
    return PolicyDecision("deny", f"Unrecognized risk level: {risk_level!r}")
