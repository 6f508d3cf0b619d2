import asyncio
import os

import pytest

from leaklock.adapters import git
from leaklock.adapters.base import ToolResult
from leaklock.errors import ExternalToolError
from leaklock.services import executor
from leaklock.services.commands import CommandPlan, CommandStep, DeleteBackupRefsStep, PlanFile


def ok(cmd, output=""):
    return ToolResult(success=True, output=output, command=list(cmd), return_code=0)


def test_steps_run_in_order_with_helper_file(monkeypatch, tmp_path):
    helper = tmp_path / ".leaklock-replacements.txt"
    seen = []

    async def fake_run_command(cmd, timeout=120, env=None, workdir=None, accepted_exit_codes=()):  # noqa: ARG001
        seen.append((list(cmd), workdir, helper.exists()))
        return ok(cmd)

    monkeypatch.setattr(executor, "run_command", fake_run_command)
    plan = CommandPlan(
        workdir=str(tmp_path),
        steps=(
            CommandStep(("java", "-jar", "bfg.jar", "--replace-text", str(helper)), "Replace secret text"),
            CommandStep(("git", "gc", "--prune=now", "--aggressive"), "Garbage-collect"),
        ),
        files=(PlanFile(str(helper), "hunter2==>***REMOVED***\n"),),
    )

    report = asyncio.run(executor.execute_plan(plan))

    assert report.success is True
    assert [step.description for step in report.steps] == ["Replace secret text", "Garbage-collect"]
    assert [entry[0][0] for entry in seen] == ["java", "git"]
    assert all(workdir == str(tmp_path) for _, workdir, _ in seen)
    assert seen[0][2] is True
    assert not helper.exists()
    assert report.steps[0].as_dict()["started_at"] is None


def test_failing_step_stops_plan_and_removes_helper_file(monkeypatch, tmp_path):
    helper = tmp_path / "replacements.txt"
    seen = []

    async def fake_run_command(cmd, timeout=120, env=None, workdir=None, accepted_exit_codes=()):  # noqa: ARG001
        seen.append(list(cmd))
        return ToolResult(
            success=False,
            output="",
            error="Error: Unable to access jarfile",
            return_code=1,
            command=list(cmd),
            failure_reason="non-zero-exit",
        )

    monkeypatch.setattr(executor, "run_command", fake_run_command)
    plan = CommandPlan(
        workdir=str(tmp_path),
        steps=(CommandStep(("java", "-jar", "bfg.jar")), CommandStep(("git", "gc"))),
        files=(PlanFile(str(helper), "x==>y\n"),),
    )

    with pytest.raises(ExternalToolError) as exc:
        asyncio.run(executor.execute_plan(plan))

    assert exc.value.returncode == 1
    assert len(seen) == 1
    assert not os.path.exists(helper)


def test_backup_refs_are_deleted_one_by_one(monkeypatch, tmp_path):
    calls = []

    async def fake_run_command(cmd, timeout=120, env=None, workdir=None, accepted_exit_codes=()):  # noqa: ARG001
        calls.append(list(cmd[1:]))
        if cmd[1] == "for-each-ref":
            return ok(cmd, "refs/original/refs/heads/main\nrefs/original/refs/tags/v1\n")
        return ok(cmd)

    monkeypatch.setattr(git, "run_command", fake_run_command)
    plan = CommandPlan(workdir=str(tmp_path), steps=(DeleteBackupRefsStep(),))

    report = asyncio.run(executor.execute_plan(plan))

    assert calls == [
        ["for-each-ref", "--format=%(refname)", "refs/original/"],
        ["update-ref", "-d", "refs/original/refs/heads/main"],
        ["update-ref", "-d", "refs/original/refs/tags/v1"],
    ]
    assert len(report.steps) == 2
