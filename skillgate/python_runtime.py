"""Managed Python interpreter and requirement installation for skills."""

import asyncio
import re
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from skillgate.config import RuntimeConfig, get_config
from skillgate.exceptions import RequirementInstallError
from skillgate.logging import get_logger

log = get_logger(__name__)

# Import name -> distribution name where they differ (or are commonly confused).
MISSING_MODULE_PACKAGE_MAP: dict[str, str] = {
    "cv2": "opencv-python",
    "pil": "Pillow",
    "yaml": "PyYAML",
    "bs4": "beautifulsoup4",
    "sklearn": "scikit-learn",
    "crypto": "pycryptodome",
    "dateutil": "python-dateutil",
    "dotenv": "python-dotenv",
    "docx": "python-docx",
    "pptx": "python-pptx",
    "openpyxl": "openpyxl",
    "xlrd": "xlrd",
    "xlsxwriter": "XlsxWriter",
    "reportlab": "reportlab",
    "matplotlib": "matplotlib",
    "numpy": "numpy",
    "pandas": "pandas",
    "scipy": "scipy",
    "seaborn": "seaborn",
    "pypdf2": "PyPDF2",
    "fitz": "PyMuPDF",
    "lxml": "lxml",
}

_MISSING_MODULE_RE = re.compile(r"No module named ['\"]?([^'\"\r\n]+)['\"]?", re.IGNORECASE)
_MODULE_TOKEN_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_PACKAGE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def package_name_from_missing_module(module_name: str) -> str | None:
    """Map a missing import name to an installable distribution name."""
    normalized = str(module_name or "").strip().lower()
    if not normalized or not _MODULE_TOKEN_RE.match(normalized):
        return None
    base = normalized.split(".")[0]
    mapped = MISSING_MODULE_PACKAGE_MAP.get(base, base)
    if not _PACKAGE_NAME_RE.match(mapped):
        return None
    return mapped


def extract_missing_module_requirements(output: str) -> list[str]:
    """Collect distribution names for every 'No module named ...' in ``output``."""
    found: list[str] = []
    for matched in _MISSING_MODULE_RE.finditer(output or ""):
        requirement = package_name_from_missing_module(matched.group(1).strip())
        if requirement and requirement not in found:
            found.append(requirement)
    return found


@dataclass
class RequirementInstallResult:
    source: str
    requirements: list[str]
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    skill_id: int | None = None
    version_id: int | None = None


class PythonEnvironment(Protocol):
    """Interpreter resolver + dependency installer used by the python runtime."""

    async def get_python_path(self) -> str: ...

    def auto_install_enabled(self) -> bool: ...

    def parse_missing_requirements(self, output: str) -> list[str]: ...

    async def install_requirements(
        self,
        requirements: list[str],
        source: str,
        skill_id: int | None = None,
        version_id: int | None = None,
    ) -> RequirementInstallResult: ...


class ManagedPythonEnvironment:
    """Python environment backed by a configured interpreter (or the current one)."""

    def __init__(self, config: RuntimeConfig | None = None):
        self.config = config or get_config().runtime
        self._install_lock = asyncio.Lock()

    async def get_python_path(self) -> str:
        configured = str(self.config.python_path or "").strip()
        if configured:
            return str(Path(configured).expanduser())
        return sys.executable

    def auto_install_enabled(self) -> bool:
        return bool(self.config.auto_install_on_missing)

    def parse_missing_requirements(self, output: str) -> list[str]:
        return extract_missing_module_requirements(output)

    def build_pip_index_args(self) -> list[str]:
        args: list[str] = []
        index_url = str(self.config.pip_index_url or "").strip()
        if index_url:
            args.extend(["--index-url", index_url])
        for extra in self.config.pip_extra_index_urls:
            if str(extra).strip():
                args.extend(["--extra-index-url", str(extra).strip()])
        for host in self.config.pip_trusted_hosts:
            if str(host).strip():
                args.extend(["--trusted-host", str(host).strip()])
        return args

    async def install_requirements(
        self,
        requirements: list[str],
        source: str,
        skill_id: int | None = None,
        version_id: int | None = None,
    ) -> RequirementInstallResult:
        """Install requirements with ``python -m pip install``.

        Raises:
            RequirementInstallError: no valid requirement names, pip could not
                be started, timed out, or exited non-zero.
        """
        cleaned = [str(item).strip() for item in requirements if _PACKAGE_NAME_RE.match(str(item).strip())]
        if not cleaned:
            raise RequirementInstallError("No valid requirements to install", requirements)

        python_path = await self.get_python_path()
        args = [
            "-m",
            "pip",
            "install",
            "--disable-pip-version-check",
            "--no-input",
            *self.build_pip_index_args(),
            *cleaned,
        ]
        timeout = max(1, int(self.config.pip_timeout_seconds))

        # One pip at a time per environment.
        async with self._install_lock:
            started = time.monotonic()
            log.info(
                "Installing python requirements",
                requirements=cleaned,
                source=source,
                skill_id=skill_id,
                version_id=version_id,
            )
            try:
                process = await asyncio.create_subprocess_exec(
                    python_path,
                    *args,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                raise RequirementInstallError(f"Failed to start pip: {exc}", cleaned) from exc

            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
            except TimeoutError as exc:
                process.kill()
                await process.wait()
                raise RequirementInstallError(f"pip install timed out after {timeout}s", cleaned) from exc
            except asyncio.CancelledError:
                process.kill()
                await process.wait()
                raise

        result = RequirementInstallResult(
            source=source,
            requirements=cleaned,
            exit_code=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_ms=int((time.monotonic() - started) * 1000),
            skill_id=skill_id,
            version_id=version_id,
        )
        if process.returncode != 0:
            details = (result.stderr or result.stdout or "unknown error").strip()
            raise RequirementInstallError(f"Failed to install requirements: {details}", cleaned)

        log.info(
            "Installed python requirements",
            requirements=cleaned,
            source=source,
            duration_ms=result.duration_ms,
        )
        return result
