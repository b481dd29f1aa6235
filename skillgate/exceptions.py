"""Custom exceptions for Skillgate."""


class SkillgateError(Exception):
    """Base exception for Skillgate."""

    pass


class ConfigurationError(SkillgateError):
    """Configuration-related errors."""

    pass


class ManifestError(SkillgateError):
    """Skill manifest is missing, malformed or fails validation."""

    def __init__(self, message: str, source_name: str = ""):
        super().__init__(message)
        self.source_name = source_name


class SourceError(SkillgateError):
    """Bad source reference, unreachable archive or unsafe archive entry."""

    pass


class CompatError(SourceError):
    """Instruction document (SKILL.md) could not be adapted into a manifest."""

    pass


class InstallerError(SkillgateError):
    """Installation failed (duplicate version, missing manifest, ...)."""

    pass


class ApprovalError(SkillgateError):
    """Approval request cannot be resolved."""

    def __init__(self, request_id: int, message: str):
        super().__init__(f"Approval request {request_id}: {message}")
        self.request_id = request_id


class SkillRuntimeError(SkillgateError):
    """Skill runtime could not be started or completed."""

    pass


class RuntimeTimeoutError(SkillRuntimeError):
    """Skill runtime exceeded its wall-clock budget and was killed."""

    def __init__(self, timeout_ms: int):
        super().__init__(f"Skill runtime timeout ({timeout_ms}ms)")
        self.timeout_ms = timeout_ms


class RequirementInstallError(SkillRuntimeError):
    """Installing managed Python requirements failed."""

    def __init__(self, message: str, requirements: list[str] | None = None):
        super().__init__(message)
        self.requirements = list(requirements or [])
