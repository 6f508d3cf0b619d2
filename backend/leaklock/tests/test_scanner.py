import asyncio
import json
import os

import pytest

from leaklock.adapters import base, git, noseyparker
from leaklock.adapters.base import ToolResult
from leaklock.config import Settings, ToolSettings
from leaklock.errors import ToolUnavailableError
from leaklock.models import Severity
from leaklock.services import scanner

REPORT = json.dumps(
    [
        {
            "rule_name": "aws_secret_key",
            "matches": [
                {
                    "provenance": [{"kind": "file", "path": "/scan/config/creds.env"}],
                    "location": {"source_span": {"start": {"line": 4}}},
                    "snippet": {"matching": "AKIAEXAMPLE"},
                }
            ],
        }
    ]
)


class FakeEngine:
    def __init__(self, report_success=True, removable=True, scan_output=""):
        self.report_success = report_success
        self.removable = removable
        self.scan_output = scan_output
        self.calls = []
        self.removed = []

    def install(self, monkeypatch):
        async def check_docker():
            self.calls.append("check")
            return "Docker version 24"

        async def pull_image():
            self.calls.append("pull")
            return False

        async def init_datastore(path):
            self.calls.append("init")
            os.makedirs(path, exist_ok=True)
            return ToolResult(success=True, output="")

        async def run_scan(root, datastore):
            self.calls.append("scan")
            return ToolResult(success=True, output=self.scan_output, return_code=2)

        async def run_report(datastore):
            self.calls.append("report")
            if self.report_success:
                return ToolResult(success=True, output=REPORT, return_code=0)
            return ToolResult(success=False, output="", error="boom", return_code=1, failure_reason="non-zero-exit")

        async def remove_datastore(path):
            self.removed.append(path)
            return self.removable

        async def tracked_files(root):
            return frozenset({"config/creds.env"})

        for name, fn in {
            "check_docker": check_docker,
            "pull_image": pull_image,
            "init_datastore": init_datastore,
            "run_scan": run_scan,
            "run_report": run_report,
            "remove_datastore": remove_datastore,
        }.items():
            monkeypatch.setattr(noseyparker, name, fn)
        monkeypatch.setattr(git, "tracked_files", tracked_files)
        monkeypatch.setattr(scanner, "_pending_cleanups", [])
        return self


def test_scan_returns_normalized_findings_and_cleans_up(monkeypatch, tmp_path):
    engine = FakeEngine().install(monkeypatch)

    outcome = asyncio.run(scanner.scan_repository(str(tmp_path)))

    assert engine.calls == ["check", "pull", "init", "scan", "report"]
    assert outcome.used_fallback is False
    assert len(outcome.findings) == 1
    finding = outcome.findings[0]
    assert finding.file == "config/creds.env"
    assert finding.line == 4
    assert finding.severity is Severity.HIGH
    assert engine.removed == [os.path.join(str(tmp_path), ".noseyparker-temp")]
    assert outcome.datastore_removed is True


def test_failed_report_falls_back_to_scan_output(monkeypatch, tmp_path):
    FakeEngine(report_success=False, scan_output="Found secret in config/creds.env:9").install(monkeypatch)

    outcome = asyncio.run(scanner.scan_repository(str(tmp_path)))

    assert outcome.used_fallback is True
    assert [(f.file, f.line) for f in outcome.findings] == [("config/creds.env", 9)]


def test_failed_cleanup_is_queued_and_retried(monkeypatch, tmp_path):
    engine = FakeEngine(removable=False).install(monkeypatch)

    outcome = asyncio.run(scanner.scan_repository(str(tmp_path)))

    datastore = os.path.join(str(tmp_path), ".noseyparker-temp")
    assert outcome.datastore_removed is False
    assert scanner.pending_cleanups() == [datastore]

    engine.removable = True
    asyncio.run(scanner.retry_pending_cleanups())
    assert scanner.pending_cleanups() == []


def test_missing_docker_stops_before_datastore(monkeypatch, tmp_path):
    engine = FakeEngine().install(monkeypatch)

    async def no_docker():
        raise ToolUnavailableError("Docker is not installed or not in PATH")

    monkeypatch.setattr(noseyparker, "check_docker", no_docker)

    with pytest.raises(ToolUnavailableError):
        asyncio.run(scanner.scan_repository(str(tmp_path)))
    assert engine.removed == []


def test_scan_accepts_exit_code_two(monkeypatch, tmp_path):
    received = {}

    async def fake_run_command(cmd, timeout=120, env=None, workdir=None, accepted_exit_codes=()):  # noqa: ARG001
        received["cmd"] = list(cmd)
        received["accepted"] = list(accepted_exit_codes)
        return ToolResult(success=2 in accepted_exit_codes, output="", return_code=2, command=list(cmd))

    monkeypatch.setattr(noseyparker, "run_command", fake_run_command)

    result = asyncio.run(noseyparker.run_scan(str(tmp_path), str(tmp_path / ".noseyparker-temp")))

    assert result.return_code == 2
    assert 2 in received["accepted"]
    assert received["cmd"][-3:] == ["--git-history", "full", "/scan"]
    assert f"{tmp_path}:/scan" in received["cmd"]


def test_remove_datastore_falls_back_to_root_container(monkeypatch, tmp_path):
    datastore = tmp_path / ".noseyparker-temp"
    datastore.mkdir()
    commands = []

    def failing_rmtree(path):
        raise PermissionError(13, "Permission denied", path)

    async def fake_run_command(cmd, timeout=120, env=None, workdir=None, accepted_exit_codes=()):  # noqa: ARG001
        commands.append(list(cmd))
        os.rmdir(datastore)
        return ToolResult(success=True, output="", return_code=0, command=list(cmd))

    monkeypatch.setattr(noseyparker.shutil, "rmtree", failing_rmtree)
    monkeypatch.setattr(noseyparker, "run_command", fake_run_command)

    assert asyncio.run(noseyparker.remove_datastore(str(datastore))) is True
    assert commands[0][-3:] == ["rm", "-rf", "/workspace/.noseyparker-temp"]
    assert "--user" in commands[0]


def test_check_docker_requires_running_daemon(monkeypatch):
    async def fake_run_command(cmd, timeout=120, env=None, workdir=None, accepted_exit_codes=()):  # noqa: ARG001
        if cmd[1] == "--version":
            return ToolResult(success=True, output="Docker version 24.0.7\n", return_code=0, command=list(cmd))
        return ToolResult(success=False, output="", error="Cannot connect", return_code=1, command=list(cmd))

    monkeypatch.setattr(base, "run_command", fake_run_command)
    monkeypatch.setattr(noseyparker, "run_command", fake_run_command)

    with pytest.raises(ToolUnavailableError) as exc:
        asyncio.run(noseyparker.check_docker())
    assert "daemon" in str(exc.value)


def test_docker_and_cleanup_timeouts_come_from_settings(monkeypatch, tmp_path):
    datastore = tmp_path / ".noseyparker-temp"
    datastore.mkdir()
    timeouts = []

    async def fake_run_command(cmd, timeout=120, env=None, workdir=None, accepted_exit_codes=()):  # noqa: ARG001
        timeouts.append((cmd[1], timeout))
        if cmd[1] == "run":
            os.rmdir(datastore)
        return ToolResult(success=True, output="Docker version 24.0.7\n", return_code=0, command=list(cmd))

    def failing_rmtree(path):
        raise PermissionError(13, "Permission denied", path)

    custom = Settings(
        tool_settings={
            "default": ToolSettings(),
            "docker": ToolSettings(timeout_seconds=7),
            "cleanup": ToolSettings(timeout_seconds=9),
        }
    )
    monkeypatch.setattr(noseyparker, "settings", custom)
    monkeypatch.setattr(base, "run_command", fake_run_command)
    monkeypatch.setattr(noseyparker, "run_command", fake_run_command)
    monkeypatch.setattr(noseyparker.shutil, "rmtree", failing_rmtree)

    assert asyncio.run(noseyparker.check_docker()) == "Docker version 24.0.7"
    assert asyncio.run(noseyparker.remove_datastore(str(datastore))) is True
    assert timeouts == [("--version", 7), ("info", 7), ("run", 9)]
