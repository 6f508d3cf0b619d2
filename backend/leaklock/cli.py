from __future__ import annotations

import asyncio
import json
import sys
from datetime import timedelta
from typing import List

import structlog
import typer

from leaklock.config import get_settings
from leaklock.errors import LeakLockError
from leaklock.models import Grouping, RewriteMode, Severity
from leaklock.services.freshness import RefFreshnessTracker
from leaklock.services.rewrite import PreparedCommand
from leaklock.services.session import LeakLockSession

app = typer.Typer(help="Find leaked secrets and purge them from git history")


def _session(repo: str) -> LeakLockSession:
    settings = get_settings()
    session = LeakLockSession(tracker=RefFreshnessTracker(timedelta(minutes=settings.stale_after_minutes)))
    try:
        session.select_repository(repo)
    except LeakLockError as exc:
        _fail(exc)
    return session


def _fail(exc: LeakLockError) -> None:
    typer.echo(f"error: {exc}", err=True)
    raise typer.Exit(code=1)


def _show_command(session: LeakLockSession, prepared: PreparedCommand) -> None:
    for detail in prepared.per_target_details:
        typer.echo(f"  {detail.target.relative_path}: {detail.match_flag} {detail.match_pattern}")
    typer.echo("")
    typer.echo(prepared.text)
    typer.echo("")
    warning = session.tracker.staleness_warning(session.clock())
    if warning is not None:
        typer.echo(f"warning: {warning.message}", err=True)


def _run_confirmed(session: LeakLockSession, prepared: PreparedCommand, yes: bool) -> None:
    if not yes and not typer.confirm("This rewrites history and force-pushes. Run it?"):
        typer.echo("Aborted.")
        raise typer.Exit(code=1)
    report = asyncio.run(session.execute(prepared, confirmed=True))
    for step in report.steps:
        typer.echo(f"ok: {step.description}")


@app.command()
def scan(
    repo: str = typer.Argument(..., help="Repository root to scan"),
    as_json: bool = typer.Option(False, "--json", help="Print findings as JSON"),
):
    session = _session(repo)
    try:
        findings = asyncio.run(session.scan())
    except LeakLockError as exc:
        _fail(exc)

    if as_json:
        typer.echo(json.dumps([finding.as_dict() for finding in findings], indent=2))
        return
    if not findings:
        typer.echo("No secrets found.")
        return
    for finding in findings:
        flags = []
        if finding.is_from_history:
            flags.append("history")
        if finding.is_dependency_path:
            flags.append("dependency")
        if finding.is_uncommitted:
            flags.append("uncommitted")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        typer.echo(f"{finding.severity.value.upper():8} {finding.file}:{finding.line} {finding.rule_id or '-'} {finding.secret}{suffix}")
    high = sum(1 for finding in findings if finding.severity is Severity.HIGH)
    typer.echo(f"{len(findings)} finding(s), {high} high severity")


@app.command()
def preview(
    repo: str = typer.Argument(..., help="Repository root"),
    paths: List[str] = typer.Argument(..., help="Files or directories to look for"),
):
    session = _session(repo)
    try:
        session.add_targets(paths)
        result = asyncio.run(session.preview())
    except LeakLockError as exc:
        _fail(exc)

    for label, refs in (("local", result.local_branches), ("remote", result.remote_branches), ("tag", result.tags)):
        for ref in refs:
            if ref.matching_files:
                typer.echo(f"{label} {ref.name}: {', '.join(ref.matching_files)}")
    if not result.refs_with_matches():
        typer.echo("No branch or tag contains the selected paths.")


def _prepare(session: LeakLockSession, paths: List[str], mode: RewriteMode, grouping: Grouping) -> PreparedCommand:
    session.set_mode(mode)
    session.set_grouping(grouping)
    session.add_targets(paths)
    return asyncio.run(session.prepare())


@app.command()
def prepare(
    repo: str = typer.Argument(..., help="Repository root"),
    paths: List[str] = typer.Argument(..., help="Files or directories to remove"),
    mode: RewriteMode = typer.Option(RewriteMode.NAME_BASED, help="name_based (BFG) or path_based (filter-branch)"),
    grouping: Grouping = typer.Option(Grouping.COMBINED, help="One command for all targets or one per target"),
):
    """Print the history rewrite command without running it."""
    session = _session(repo)
    try:
        prepared = _prepare(session, paths, mode, grouping)
    except LeakLockError as exc:
        _fail(exc)
    _show_command(session, prepared)


@app.command()
def clean(
    repo: str = typer.Argument(..., help="Repository root"),
    paths: List[str] = typer.Argument(..., help="Files or directories to remove"),
    mode: RewriteMode = typer.Option(RewriteMode.NAME_BASED, help="name_based (BFG) or path_based (filter-branch)"),
    grouping: Grouping = typer.Option(Grouping.COMBINED, help="One command for all targets or one per target"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """Remove files or directories from every commit, then force-push."""
    session = _session(repo)
    try:
        prepared = _prepare(session, paths, mode, grouping)
        _show_command(session, prepared)
        _run_confirmed(session, prepared, yes)
    except LeakLockError as exc:
        _fail(exc)


@app.command()
def fix(
    repo: str = typer.Argument(..., help="Repository root"),
    include_all: bool = typer.Option(False, "--all", help="Replace every finding, not only high severity ones"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """Scan, then replace every detected secret in history with a placeholder."""
    session = _session(repo)
    try:
        findings = asyncio.run(session.scan())
        selected = [f for f in findings if include_all or f.severity is Severity.HIGH]
        if not selected:
            typer.echo("No secrets to replace.")
            return
        session.set_mode(RewriteMode.REPLACE_TEXT)
        prepared = asyncio.run(session.prepare(findings=selected))
        _show_command(session, prepared)
        _run_confirmed(session, prepared, yes)
    except LeakLockError as exc:
        _fail(exc)


def main() -> None:
    # keep stdout clean for command output and --json
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr))
    app()


if __name__ == "__main__":
    main()
