"""Bounded out-of-process execution of skill entry points."""

import asyncio
import json
import os
import signal
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from skillgate.config import RuntimeConfig, get_config
from skillgate.exceptions import RequirementInstallError, RuntimeTimeoutError, SkillRuntimeError
from skillgate.logging import get_logger
from skillgate.manifest import RuntimeSpec
from skillgate.python_runtime import ManagedPythonEnvironment, PythonEnvironment

log = get_logger(__name__)

PAYLOAD_ENV_VAR = "SKILLGATE_SKILL_PAYLOAD_JSON"
AUTO_INSTALL_SOURCE = "skill_auto"
MIN_TIMEOUT_MS = 1000
MIN_OUTPUT_CHARS = 256
_READ_CHUNK_BYTES = 65536
_POWERSHELL_FILE_ARGS = ["-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-File"]


@dataclass
class ExecutionCommand:
    command: str
    args: list[str]


@dataclass
class RuntimeExecutionResult:
    stdout: str
    stderr: str
    exit_code: int | None
    duration_ms: int
    truncated: bool = False
    auto_installed_requirements: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def quote_posix(value: str) -> str:
    return "'" + value.replace("'", "'\\''") + "'"


def quote_powershell(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _is_windows(platform: str | None) -> bool:
    return (platform or sys.platform) == "win32"


def resolve_execution_command(
    runtime: RuntimeSpec,
    entry_file: str,
    *,
    platform: str | None = None,
    node_path: str = "node",
) -> ExecutionCommand:
    """Map a runtime type to an executable and argument list.

    The python interpreter is filled in by the caller from its
    :class:`PythonEnvironment`.
    """
    runtime_args = list(runtime.args or [])
    command = str(runtime.command or "").strip()
    windows = _is_windows(platform)

    if runtime.type == "node":
        return ExecutionCommand(command or node_path or "node", [*runtime_args, entry_file])
    if runtime.type == "python":
        return ExecutionCommand(command, [*runtime_args, entry_file])
    if runtime.type == "shell":
        if windows:
            return ExecutionCommand(
                command or "powershell",
                [*_POWERSHELL_FILE_ARGS, quote_powershell(entry_file)],
            )
        return ExecutionCommand(command or "bash", ["-lc", quote_posix(entry_file)])
    if runtime.type == "powershell":
        return ExecutionCommand(command or "powershell", [*_POWERSHELL_FILE_ARGS, entry_file])
    if runtime.type == "cmd":
        if windows:
            return ExecutionCommand(command or "cmd", ["/d", "/s", "/c", entry_file])
        return ExecutionCommand(command or "bash", ["-lc", quote_posix(entry_file)])
    raise SkillRuntimeError(f"Unsupported runtime type: {runtime.type}")


class _CappedBuffer:
    """Accumulates bytes up to ``limit``; the rest is discarded."""

    def __init__(self, limit: int):
        self.limit = limit
        self.data = bytearray()
        self.truncated = False

    def feed(self, chunk: bytes) -> None:
        remaining = self.limit - len(self.data)
        if len(chunk) <= remaining:
            self.data.extend(chunk)
            return
        if remaining > 0:
            self.data.extend(chunk[:remaining])
        self.truncated = True

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


async def _drain(stream: asyncio.StreamReader | None, buffer: _CappedBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            return
        buffer.feed(chunk)


async def _feed_stdin(process: asyncio.subprocess.Process, payload: bytes) -> None:
    if process.stdin is None:
        return
    try:
        process.stdin.write(payload)
        await process.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        log.debug("Skill runtime closed stdin before reading payload", pid=process.pid)
    finally:
        process.stdin.close()


async def _kill(process: asyncio.subprocess.Process) -> None:
    """Forcefully terminate the child and its process group."""
    if process.returncode is None:
        try:
            if os.name == "posix":
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            log.debug("Skill runtime already exited before kill", pid=process.pid)
    await process.wait()


async def _run_once(
    command: ExecutionCommand,
    cwd: Path,
    env: dict[str, str],
    payload: bytes,
    timeout_ms: int,
    max_output_chars: int,
) -> RuntimeExecutionResult:
    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(
            command.command,
            *command.args,
            cwd=str(cwd),
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=os.name == "posix",
        )
    except OSError as exc:
        raise SkillRuntimeError(f"Failed to start skill runtime ({command.command}): {exc}") from exc

    stdout = _CappedBuffer(max_output_chars)
    stderr = _CappedBuffer(max_output_chars)

    async def _communicate() -> None:
        await asyncio.gather(
            _feed_stdin(process, payload),
            _drain(process.stdout, stdout),
            _drain(process.stderr, stderr),
        )
        await process.wait()

    communicate_task = asyncio.create_task(_communicate())
    try:
        done, _ = await asyncio.wait({communicate_task}, timeout=timeout_ms / 1000)
    except asyncio.CancelledError:
        await _kill(process)
        communicate_task.cancel()
        raise

    if communicate_task not in done:
        await _kill(process)
        communicate_task.cancel()
        try:
            await communicate_task
        except asyncio.CancelledError:
            pass
        log.warning("Skill runtime timed out", command=command.command, timeout_ms=timeout_ms)
        raise RuntimeTimeoutError(timeout_ms)

    communicate_task.result()
    return RuntimeExecutionResult(
        stdout=stdout.text(),
        stderr=stderr.text(),
        exit_code=process.returncode,
        duration_ms=max(0, int((time.monotonic() - started) * 1000)),
        truncated=stdout.truncated or stderr.truncated,
    )


def _resolve_entry_file(package_root: Path, entry: str) -> Path:
    entry_file = (package_root / entry).resolve()
    try:
        entry_file.relative_to(package_root)
    except ValueError as exc:
        raise SkillRuntimeError(f"Skill entry escapes package root: {entry}") from exc
    return entry_file


async def execute_skill_runtime(
    runtime: RuntimeSpec,
    package_root: Path | str,
    entry: str,
    payload: dict[str, Any],
    *,
    timeout_ms: int | None = None,
    max_output_chars: int | None = None,
    actor_user_id: int | None = None,
    skill_id: int | None = None,
    version_id: int | None = None,
    python_env: PythonEnvironment | None = None,
    config: RuntimeConfig | None = None,
) -> RuntimeExecutionResult:
    """Run a skill entry point with a JSON payload under time and output bounds.

    The payload is written to stdin and exported as ``SKILLGATE_SKILL_PAYLOAD_JSON``.
    For the python runtime, missing-module failures are repaired by installing
    the mapped requirements (known actors only) and re-running, up to the
    configured number of rounds.

    Raises:
        RuntimeTimeoutError: the child exceeded ``timeout_ms`` and was killed.
        SkillRuntimeError: the entry escapes the package root or the child
            could not be started.
    """
    cfg = config or get_config().runtime
    root = Path(package_root).resolve()
    entry_file = _resolve_entry_file(root, entry)
    effective_timeout = max(MIN_TIMEOUT_MS, int(timeout_ms or runtime.timeout_ms or cfg.default_timeout_ms))
    effective_output = max(
        MIN_OUTPUT_CHARS,
        int(max_output_chars or runtime.max_output_chars or cfg.default_max_output_chars),
    )

    payload_json = json.dumps(payload, ensure_ascii=False, default=str)
    env = {**os.environ, **(runtime.env or {}), PAYLOAD_ENV_VAR: payload_json}
    command = resolve_execution_command(runtime, str(entry_file), node_path=cfg.node_path)

    environment: PythonEnvironment | None = None
    if runtime.type == "python":
        environment = python_env or ManagedPythonEnvironment(cfg)
        command.command = await environment.get_python_path()

    started = time.monotonic()
    payload_bytes = payload_json.encode("utf-8")
    log.info(
        "Executing skill runtime",
        runtime=runtime.type,
        command=command.command,
        entry=entry,
        skill_id=skill_id,
        version_id=version_id,
        timeout_ms=effective_timeout,
    )
    result = await _run_once(command, root, env, payload_bytes, effective_timeout, effective_output)

    if environment is None:
        return result

    auto_installed: list[str] = []
    can_auto_install = actor_user_id is not None and environment.auto_install_enabled()
    rounds = 0
    while not result.ok and can_auto_install and rounds < cfg.max_auto_install_rounds:
        requirements = environment.parse_missing_requirements(f"{result.stderr}\n{result.stdout}")
        if not requirements:
            break
        rounds += 1
        try:
            await environment.install_requirements(
                requirements,
                source=AUTO_INSTALL_SOURCE,
                skill_id=skill_id,
                version_id=version_id,
            )
        except RequirementInstallError as exc:
            log.warning(
                "Automatic dependency install failed",
                requirements=requirements,
                skill_id=skill_id,
                error=str(exc),
            )
            separator = "\n" if result.stderr and not result.stderr.endswith("\n") else ""
            result.stderr = f"{result.stderr}{separator}Automatic dependency install failed: {exc}"
            break
        auto_installed.extend(requirements)
        log.info(
            "Re-running skill after installing requirements",
            requirements=requirements,
            round=rounds,
            skill_id=skill_id,
        )
        result = await _run_once(command, root, env, payload_bytes, effective_timeout, effective_output)

    result.auto_installed_requirements = auto_installed
    result.duration_ms = max(0, int((time.monotonic() - started) * 1000))
    return result
