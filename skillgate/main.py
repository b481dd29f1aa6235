"""Operator command line for Skillgate."""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import typer
from rich.console import Console
from rich.table import Table

from skillgate import __version__
from skillgate.approvals import ApprovalService
from skillgate.audit import ExecutionAuditLogger
from skillgate.builtin import sync_builtin_skills
from skillgate.config import Config, get_config, set_config
from skillgate.exceptions import SkillgateError
from skillgate.installer import SkillInstaller
from skillgate.logging import configure_logging
from skillgate.models import APPROVAL_PENDING, SCOPE_SYSTEM, SCOPE_TYPES, SYSTEM_SCOPE_ID
from skillgate.policy import DECISIONS
from skillgate.store import SkillStore

T = TypeVar("T")

console = Console()

cli = typer.Typer(help="Skillgate - install, approve and audit chat skills")


@cli.callback()
def _setup(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    try:
        cfg = Config.from_yaml(Path(config)) if config else Config.load()
    except SkillgateError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    set_config(cfg)
    configure_logging(level="DEBUG" if verbose else None)


def _run(work: Callable[[SkillStore], Awaitable[T]]) -> T:
    """Open the store, run one command, always close the store."""

    async def _wrapped() -> T:
        cfg = get_config()
        db_path = Path(cfg.storage.db_path).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        store = SkillStore(db_path)
        try:
            return await work(store)
        finally:
            await store.close()

    try:
        return asyncio.run(_wrapped())
    except SkillgateError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc


def _fmt(value: object) -> str:
    if value is None:
        return "-"
    if hasattr(value, "isoformat"):
        return value.isoformat(timespec="seconds")
    return str(value)


@cli.command()
def install(
    source: str = typer.Argument(..., help="owner/repo@ref[:subdir] or a GitHub tree/blob URL"),
    actor: int | None = typer.Option(None, "--actor", help="Installing user id"),
    token: str = typer.Option("", "--token", help="GitHub token (defaults to config)"),
) -> None:
    """Install a skill version from GitHub."""

    async def _install(store: SkillStore):
        installer = SkillInstaller(store)
        return await installer.install_from_github(source, actor_user_id=actor, token=token or None)

    result = _run(_install)
    console.print(
        f"[green]Installed[/green] {result.skill.slug}@{result.version.version} "
        f"(version id {result.version.id}, status {result.version.status}, risk {result.version.risk_level})"
    )


@cli.command("list")
def list_skills(
    status: str = typer.Option("", "--status", help="Filter by skill status"),
    versions: bool = typer.Option(False, "--versions", help="Show every version"),
) -> None:
    """List installed skills."""

    async def _list(store: SkillStore):
        skills = await store.list_skills(status=status or None)
        rows = []
        for skill in skills:
            skill_versions = await store.list_versions(skill.id)
            rows.append((skill, skill_versions))
        return rows

    rows = _run(_list)
    table = Table(title="Skills", show_header=True, header_style="bold cyan")
    table.add_column("ID", justify="right")
    table.add_column("Slug", style="bold")
    table.add_column("Source")
    table.add_column("Status")
    table.add_column("Version")
    table.add_column("Version status")
    table.add_column("Risk")
    for skill, skill_versions in rows:
        shown = skill_versions if versions else [
            v for v in skill_versions if v.id == skill.default_version_id
        ][:1]
        if not shown:
            table.add_row(str(skill.id), skill.slug, skill.source_type, skill.status, "-", "-", "-")
            continue
        for version in shown:
            marker = "*" if version.id == skill.default_version_id else ""
            table.add_row(
                str(skill.id),
                skill.slug,
                skill.source_type,
                skill.status,
                f"{version.version} (#{version.id}){marker}",
                version.status,
                version.risk_level,
            )
    console.print(table)


@cli.command()
def approve(version_id: int = typer.Argument(..., help="Skill version id")) -> None:
    """Sign off a high-risk version so it can be activated."""
    version = _run(lambda store: SkillInstaller(store).approve_version(version_id))
    console.print(f"[green]Approved[/green] version {version.id} ({version.status})")


@cli.command()
def activate(
    version_id: int = typer.Argument(..., help="Skill version id"),
    no_default: bool = typer.Option(False, "--no-default", help="Do not make it the default version"),
) -> None:
    """Activate a version."""
    version = _run(
        lambda store: SkillInstaller(store).activate_version(version_id, make_default=not no_default)
    )
    console.print(f"[green]Activated[/green] version {version.id}")


@cli.command()
def reject(version_id: int = typer.Argument(..., help="Skill version id")) -> None:
    """Reject a version that has not been activated."""
    version = _run(lambda store: SkillInstaller(store).reject_version(version_id))
    console.print(f"[yellow]Rejected[/yellow] version {version.id}")


@cli.command()
def deprecate(version_id: int = typer.Argument(..., help="Skill version id")) -> None:
    """Retire a version."""
    version = _run(lambda store: SkillInstaller(store).deprecate_version(version_id))
    console.print(f"[yellow]Deprecated[/yellow] version {version.id}")


@cli.command()
def bind(
    slug: str = typer.Argument(..., help="Skill slug"),
    scope: str = typer.Option(SCOPE_SYSTEM, "--scope", help=f"One of: {', '.join(SCOPE_TYPES)}"),
    scope_id: str = typer.Option(SYSTEM_SCOPE_ID, "--scope-id", help="Scope identifier"),
    version_id: int | None = typer.Option(None, "--version-id", help="Pin a specific version"),
    decision: str = typer.Option("", "--decision", help=f"Policy override: {', '.join(DECISIONS)}"),
    disabled: bool = typer.Option(False, "--disabled", help="Create the binding disabled"),
    actor: int | None = typer.Option(None, "--actor", help="Operator user id"),
) -> None:
    """Bind a skill to a scope."""
    if scope not in SCOPE_TYPES:
        console.print(f"[red]Error:[/red] unknown scope '{scope}'")
        raise typer.Exit(code=1)
    if decision and decision not in DECISIONS:
        console.print(f"[red]Error:[/red] unknown decision '{decision}'")
        raise typer.Exit(code=1)

    async def _bind(store: SkillStore):
        skill = await store.get_skill_by_slug(slug.strip().lower())
        if skill is None:
            raise SkillgateError(f"Skill not found: {slug}")
        if version_id is not None:
            version = await store.get_version(version_id)
            if version is None or version.skill_id != skill.id:
                raise SkillgateError(f"Version {version_id} does not belong to {skill.slug}")
        return await store.upsert_binding(
            skill_id=skill.id,
            scope_type=scope,
            scope_id=scope_id,
            version_id=version_id,
            enabled=not disabled,
            policy={"decision": decision} if decision else {},
            overrides={},
            created_by_user_id=actor,
        )

    binding = _run(_bind)
    console.print(f"[green]Bound[/green] skill to {binding.scope_type}/{binding.scope_id} (binding {binding.id})")


@cli.command()
def unbind(binding_id: int = typer.Argument(..., help="Binding id")) -> None:
    """Remove a binding."""
    removed = _run(lambda store: store.delete_binding(binding_id))
    if not removed:
        console.print(f"[yellow]No binding with id {binding_id}[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"[green]Removed[/green] binding {binding_id}")


@cli.command()
def approvals(
    status: str = typer.Option(APPROVAL_PENDING, "--status", help="Filter by status ('' for all)"),
    session: int | None = typer.Option(None, "--session", help="Filter by session id"),
    limit: int = typer.Option(50, "--limit"),
) -> None:
    """List approval requests."""

    async def _list(store: SkillStore):
        service = ApprovalService(store)
        await service.mark_expired_pending()
        return await service.list_requests(status=status or None, session_id=session, limit=limit)

    requests = _run(_list)
    table = Table(title="Approval requests", show_header=True, header_style="bold cyan")
    table.add_column("ID", justify="right")
    table.add_column("Skill", justify="right")
    table.add_column("Tool", style="bold")
    table.add_column("Actor")
    table.add_column("Status")
    table.add_column("Session")
    table.add_column("Expires")
    table.add_column("Reason", overflow="fold")
    for request in requests:
        table.add_row(
            str(request.id),
            str(request.skill_id),
            request.tool_name,
            request.requested_by_actor,
            request.status,
            _fmt(request.session_id),
            _fmt(request.expires_at),
            request.reason or "",
        )
    console.print(table)


@cli.command()
def respond(
    request_id: int = typer.Argument(..., help="Approval request id"),
    approve_call: bool = typer.Option(True, "--approve/--deny", help="Decision"),
    user_id: int | None = typer.Option(None, "--user-id", help="Deciding user id"),
    note: str = typer.Option("", "--note", help="Decision note"),
) -> None:
    """Approve or deny a pending request."""
    request = _run(
        lambda store: ApprovalService(store).respond(
            request_id, approve_call, decided_by_user_id=user_id, note=note or None
        )
    )
    console.print(f"Request {request.id}: [bold]{request.status}[/bold]")


@cli.command()
def audits(
    session: int | None = typer.Option(None, "--session"),
    battle_run: int | None = typer.Option(None, "--battle-run"),
    message: int | None = typer.Option(None, "--message"),
    skill: str = typer.Option("", "--skill", help="Skill slug"),
    limit: int = typer.Option(50, "--limit"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON lines"),
) -> None:
    """Show skill execution audits."""

    async def _query(store: SkillStore):
        skill_id = None
        if skill:
            found = await store.get_skill_by_slug(skill.strip().lower())
            if found is None:
                raise SkillgateError(f"Skill not found: {skill}")
            skill_id = found.id
        return await ExecutionAuditLogger(store).query(
            session_id=session,
            battle_run_id=battle_run,
            message_id=message,
            skill_id=skill_id,
            limit=limit,
        )

    rows = _run(_query)
    if as_json:
        for audit in rows:
            print(json.dumps({
                "id": audit.id,
                "skillId": audit.skill_id,
                "versionId": audit.version_id,
                "tool": audit.tool_name,
                "toolCallId": audit.tool_call_id,
                "approvalStatus": audit.approval_status,
                "approvalRequestId": audit.approval_request_id,
                "durationMs": audit.duration_ms,
                "error": audit.error,
                "platform": audit.platform,
                "createdAt": audit.created_at.isoformat(),
            }))
        return

    table = Table(title="Skill execution audits", show_header=True, header_style="bold cyan")
    table.add_column("ID", justify="right")
    table.add_column("When")
    table.add_column("Tool", style="bold")
    table.add_column("Approval")
    table.add_column("ms", justify="right")
    table.add_column("Session")
    table.add_column("Error", overflow="fold")
    for audit in rows:
        table.add_row(
            str(audit.id),
            _fmt(audit.created_at),
            audit.tool_name,
            audit.approval_status or "-",
            _fmt(audit.duration_ms),
            _fmt(audit.session_id),
            audit.error or "",
        )
    console.print(table)


@cli.command("sync-builtins")
def sync_builtins() -> None:
    """Register or refresh the built-in skill catalog."""
    count = _run(sync_builtin_skills)
    console.print(f"[green]Synced[/green] {count} built-in skills")


@cli.command()
def version() -> None:
    """Show version information."""
    print(f"Skillgate v{__version__}")


if __name__ == "__main__":
    sys.exit(cli())
