from __future__ import annotations

from typing import List, Optional, Sequence

import structlog

from leaklock.adapters.base import ToolResult, run_command
from leaklock.config import get_settings

logger = structlog.get_logger(__name__)

settings = get_settings()

LOCAL_BRANCHES = "refs/heads"
REMOTE_BRANCHES = "refs/remotes"
TAGS = "refs/tags"


async def run_git(repo_root: str, *args: str, accepted_exit_codes: Sequence[int] = ()) -> ToolResult:
    config = settings.get_tool_config("git")
    return await run_command(
        [settings.git_path, *args],
        timeout=config.timeout_seconds,
        env=config.env,
        workdir=repo_root,
        accepted_exit_codes=accepted_exit_codes or config.accepted_exit_codes,
    )


async def fetch_all(repo_root: str) -> ToolResult:
    """Fetch every remote and tag, pruning refs deleted upstream."""
    result = await run_git(repo_root, "fetch", "--all", "--tags", "--prune")
    return result.raise_for_status()


async def list_refs(repo_root: str, namespace: str) -> List[str]:
    """Full ref names under ``namespace``, without symbolic ``HEAD`` pointers."""
    result = await run_git(repo_root, "for-each-ref", "--format=%(refname)", namespace)
    result.raise_for_status()
    refs = []
    for line in result.output.splitlines():
        ref = line.strip()
        if not ref or ref.endswith("/HEAD"):
            continue
        refs.append(ref)
    return refs


async def list_paths_at_ref(repo_root: str, ref: str, pathspecs: Sequence[str]) -> List[str]:
    literal = [f":(literal){pathspec}" for pathspec in pathspecs]
    result = await run_git(repo_root, "ls-tree", "-r", "--name-only", ref, "--", *literal)
    result.raise_for_status()
    return [line for line in result.output.splitlines() if line.strip()]


async def tracked_files(repo_root: str) -> Optional[frozenset[str]]:
    """Paths tracked in the working tree, or None when ``repo_root`` is not a git repository."""
    result = await run_git(repo_root, "ls-files", "-z")
    if not result.success:
        logger.info("git.ls_files_unavailable", repo_root=repo_root, error=result.error)
        return None
    return frozenset(path for path in result.output.split("\0") if path)


def short_ref_name(ref: str) -> str:
    for prefix in (LOCAL_BRANCHES + "/", REMOTE_BRANCHES + "/", TAGS + "/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref
