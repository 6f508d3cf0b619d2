from __future__ import annotations

from datetime import datetime
from typing import Callable, Sequence

import structlog

from leaklock.adapters import git
from leaklock.errors import LeakLockError
from leaklock.models import RefMatches, RefPreview, RemovalTarget
from leaklock.security import validate_path
from leaklock.services.freshness import RefFreshnessTracker

logger = structlog.get_logger(__name__)


async def refresh_remote_refs(
    repo_root: str,
    tracker: RefFreshnessTracker,
    clock: Callable[[], datetime] = datetime.utcnow,
) -> None:
    await git.fetch_all(repo_root)
    tracker.record_fetch(clock())


class CrossRefPreviewer:
    """Shows which removal targets exist on which branch or tag before history is rewritten."""

    def __init__(self, tracker: RefFreshnessTracker, clock: Callable[[], datetime] = datetime.utcnow):
        self.tracker = tracker
        self.clock = clock

    async def _matches_for(self, repo_root: str, refs: Sequence[str], pathspecs: Sequence[str]) -> tuple[RefMatches, ...]:
        results = []
        for ref in refs:
            try:
                files = await git.list_paths_at_ref(repo_root, ref, pathspecs)
            except LeakLockError as exc:
                logger.warning("preview.ref_failed", ref=ref, error=str(exc))
                files = []
            results.append(RefMatches(name=git.short_ref_name(ref), matching_files=tuple(files)))
        return tuple(results)

    async def preview(self, repo_root: str, targets: Sequence[RemovalTarget]) -> RefPreview:
        root = validate_path(repo_root)
        await refresh_remote_refs(root, self.tracker, self.clock)
        if not targets:
            return RefPreview()

        pathspecs = [target.pathspec for target in targets]
        local = await git.list_refs(root, git.LOCAL_BRANCHES)
        remote = await git.list_refs(root, git.REMOTE_BRANCHES)
        tags = await git.list_refs(root, git.TAGS)

        preview = RefPreview(
            local_branches=await self._matches_for(root, local, pathspecs),
            remote_branches=await self._matches_for(root, remote, pathspecs),
            tags=await self._matches_for(root, tags, pathspecs),
        )
        logger.info(
            "preview.finished",
            repo_root=root,
            targets=len(targets),
            refs_with_matches=len(preview.refs_with_matches()),
        )
        return preview
