from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import List

import structlog

from leaklock.adapters import git
from leaklock.adapters.base import ToolResult, run_command
from leaklock.config import get_settings
from leaklock.services.commands import CommandPlan, CommandStep, DeleteBackupRefsStep, PlanFile

logger = structlog.get_logger(__name__)

settings = get_settings()


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


@dataclass
class StepLog:
    description: str
    command: list[str] = field(default_factory=list)
    success: bool = False
    return_code: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_seconds: float | None = None
    output: str | None = None

    def as_dict(self) -> dict:
        return {
            **asdict(self),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
        }


@dataclass
class ExecutionReport:
    workdir: str
    steps: List[StepLog] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(step.success for step in self.steps)


def _log_for(description: str, result: ToolResult) -> StepLog:
    return StepLog(
        description=description,
        command=result.command,
        success=result.success,
        return_code=result.return_code,
        started_at=result.started_at,
        finished_at=result.finished_at,
        duration_seconds=result.duration_seconds,
        output=result.combined_output or None,
    )


async def _run_step(step: CommandStep, workdir: str) -> StepLog:
    config = settings.get_tool_config("rewrite")
    result = await run_command(
        list(step.argv),
        timeout=config.timeout_seconds,
        env=config.env,
        workdir=workdir,
        accepted_exit_codes=config.accepted_exit_codes,
    )
    result.raise_for_status()
    return _log_for(step.description, result)


async def _delete_backup_refs(step: DeleteBackupRefsStep, workdir: str) -> List[StepLog]:
    refs = await git.list_refs(workdir, step.namespace)
    logs = []
    for ref in refs:
        result = await git.run_git(workdir, "update-ref", "-d", ref)
        result.raise_for_status()
        logs.append(_log_for(f"Delete backup ref {ref}", result))
    if not logs:
        logs.append(StepLog(description=step.description, success=True, output="no backup refs"))
    return logs


def _write_files(files: tuple[PlanFile, ...]) -> None:
    for plan_file in files:
        with open(plan_file.path, "w", encoding="utf-8") as handle:
            handle.write(plan_file.content)


def _remove_files(files: tuple[PlanFile, ...]) -> None:
    for plan_file in files:
        try:
            os.remove(plan_file.path)
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("rewrite.file_cleanup_failed", path=plan_file.path, error=str(exc))


async def execute_plan(plan: CommandPlan) -> ExecutionReport:
    """Run every step of ``plan`` in order, stopping at the first failure.

    Helper files are written before the first step and removed afterwards,
    whether or not the plan succeeded.
    """
    report = ExecutionReport(workdir=plan.workdir)
    logger.info("rewrite.execute", workdir=plan.workdir, steps=len(plan.steps))
    _write_files(plan.files)
    try:
        for step in plan.steps:
            if isinstance(step, DeleteBackupRefsStep):
                report.steps.extend(await _delete_backup_refs(step, plan.workdir))
            else:
                report.steps.append(await _run_step(step, plan.workdir))
    finally:
        _remove_files(plan.files)
    logger.info("rewrite.finished", workdir=plan.workdir, steps=len(report.steps))
    return report
