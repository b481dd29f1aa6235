import pytest

from skillgate.policy import resolve_skill_policy


@pytest.mark.parametrize(
    ("risk", "approved_before", "expected"),
    [
        ("low", False, "allow"),
        ("low", True, "allow"),
        ("medium", False, "require_approval"),
        ("medium", True, "allow"),
        ("high", False, "require_approval"),
        ("high", True, "require_approval"),
        ("critical", False, "deny"),
        ("critical", True, "deny"),
        ("unknown", False, "deny"),
        ("", False, "deny"),
    ],
)
def test_decision_table(risk, approved_before, expected):
    assert resolve_skill_policy(risk, None, approved_before).decision == expected


@pytest.mark.parametrize("override", ["allow", "deny", "require_approval"])
@pytest.mark.parametrize("risk", ["low", "medium", "high", "critical"])
def test_binding_override_always_wins(risk, override):
    decision = resolve_skill_policy(risk, {"decision": override}, has_session_approved_before=True)
    assert decision.decision == override
    assert "override" in decision.reason


def test_unrecognized_override_falls_back_to_table():
    assert resolve_skill_policy("low", {"decision": "maybe"}).decision == "allow"
    assert resolve_skill_policy("critical", {"other": "allow"}).decision == "deny"


def test_risk_level_is_case_insensitive():
    decision = resolve_skill_policy(" Medium ")
    assert decision.decision == "require_approval"
    assert not decision.allowed
