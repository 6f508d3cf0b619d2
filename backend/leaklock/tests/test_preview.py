import asyncio
from datetime import datetime

from leaklock.adapters import git
from leaklock.adapters.base import ToolResult
from leaklock.models import RemovalTarget, TargetKind
from leaklock.services.freshness import RefFreshnessTracker
from leaklock.services.preview import CrossRefPreviewer

NOW = datetime(2024, 5, 1, 9, 30)

REFS = {
    "refs/heads": "refs/heads/main\nrefs/heads/feature\n",
    "refs/remotes": "refs/remotes/origin/HEAD\nrefs/remotes/origin/main\n",
    "refs/tags": "refs/tags/v1.0\nrefs/tags/broken\n",
}

TREES = {
    "refs/heads/main": "secrets/key.pem\nconfig.env\n",
    "refs/heads/feature": "",
    "refs/remotes/origin/main": "config.env\n",
    "refs/tags/v1.0": "secrets/key.pem\n",
}


def make_fake_git(calls):
    async def fake_run_command(cmd, timeout=120, env=None, workdir=None, accepted_exit_codes=()):  # noqa: ARG001
        calls.append(list(cmd))
        action = cmd[1]
        if action == "fetch":
            return ToolResult(success=True, output="", command=list(cmd), return_code=0)
        if action == "for-each-ref":
            return ToolResult(success=True, output=REFS[cmd[3]], command=list(cmd), return_code=0)
        if action == "ls-tree":
            ref = cmd[4]
            if ref not in TREES:
                return ToolResult(
                    success=False,
                    output="",
                    error="fatal: not a tree object",
                    return_code=128,
                    command=list(cmd),
                    failure_reason="non-zero-exit",
                )
            return ToolResult(success=True, output=TREES[ref], command=list(cmd), return_code=0)
        raise AssertionError(f"unexpected git call {cmd}")

    return fake_run_command


def test_preview_lists_matches_per_ref(monkeypatch, tmp_path):
    calls = []
    monkeypatch.setattr(git, "run_command", make_fake_git(calls))
    tracker = RefFreshnessTracker()
    previewer = CrossRefPreviewer(tracker, clock=lambda: NOW)
    targets = [
        RemovalTarget("secrets", "secrets", TargetKind.DIRECTORY),
        RemovalTarget("config.env", "config.env", TargetKind.FILE),
    ]

    preview = asyncio.run(previewer.preview(str(tmp_path), targets))

    assert [(r.name, r.matching_files) for r in preview.local_branches] == [
        ("main", ("secrets/key.pem", "config.env")),
        ("feature", ()),
    ]
    assert [r.name for r in preview.remote_branches] == ["origin/main"]
    assert dict((r.name, r.matching_files) for r in preview.tags) == {
        "v1.0": ("secrets/key.pem",),
        "broken": (),
    }
    assert [r.name for r in preview.refs_with_matches()] == ["main", "origin/main", "v1.0"]
    assert tracker.fetch_state.last_fetched_at == NOW

    assert calls[0][1:] == ["fetch", "--all", "--tags", "--prune"]
    ls_tree = next(call for call in calls if call[1] == "ls-tree")
    assert ls_tree[-3:] == ["--", ":(literal)secrets/", ":(literal)config.env"]


def test_preview_without_targets_still_fetches(monkeypatch, tmp_path):
    calls = []
    monkeypatch.setattr(git, "run_command", make_fake_git(calls))
    tracker = RefFreshnessTracker()

    preview = asyncio.run(CrossRefPreviewer(tracker, clock=lambda: NOW).preview(str(tmp_path), []))

    assert preview.refs_with_matches() == []
    assert [call[1] for call in calls] == ["fetch"]
    assert tracker.is_stale(NOW) is False
