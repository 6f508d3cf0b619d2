from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import List

import structlog

from leaklock.adapters import git, noseyparker
from leaklock.config import get_settings
from leaklock.models import NormalizedFinding
from leaklock.normalization import NormalizationContext, normalize_report, normalize_text
from leaklock.security import sanitize_resource_name, validate_path, validate_path_within

logger = structlog.get_logger(__name__)

settings = get_settings()

# datastores that could not be removed; retried before the next scan
_pending_cleanups: List[str] = []


@dataclass
class ScanOutcome:
    repo_root: str
    findings: List[NormalizedFinding] = field(default_factory=list)
    used_fallback: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
    datastore_removed: bool = True


def datastore_path_for(repo_root: str) -> str:
    name = sanitize_resource_name(settings.datastore_prefix)
    return validate_path_within(os.path.join(repo_root, name), [repo_root])


def pending_cleanups() -> List[str]:
    return list(_pending_cleanups)


async def retry_pending_cleanups() -> None:
    for path in list(_pending_cleanups):
        if await noseyparker.remove_datastore(path):
            _pending_cleanups.remove(path)
            logger.info("scan.datastore.cleanup_retried", datastore=path)


async def _cleanup(datastore: str) -> bool:
    try:
        removed = await noseyparker.remove_datastore(datastore)
    except OSError as exc:
        logger.warning("scan.datastore.cleanup_error", datastore=datastore, error=str(exc))
        removed = False
    if not removed:
        logger.warning("scan.datastore.cleanup_failed", datastore=datastore)
        if datastore not in _pending_cleanups:
            _pending_cleanups.append(datastore)
    return removed


async def scan_repository(repo_root: str) -> ScanOutcome:
    """Scan ``repo_root`` and its full git history, returning normalized findings."""
    root = validate_path(repo_root)
    outcome = ScanOutcome(repo_root=root, started_at=datetime.utcnow())
    await retry_pending_cleanups()

    await noseyparker.check_docker()
    await noseyparker.pull_image()

    datastore = datastore_path_for(root)
    if os.path.exists(datastore):
        # leftover from an interrupted scan
        await noseyparker.remove_datastore(datastore)
    logger.info("scan.started", repo_root=root, datastore=datastore)
    try:
        await noseyparker.init_datastore(datastore)
        scan_result = await noseyparker.run_scan(root, datastore)
        report = await noseyparker.run_report(datastore)

        context = NormalizationContext(
            scan_root=root,
            mount_prefix=settings.scan_mount.rstrip("/") + "/",
            tracked_files=await git.tracked_files(root),
            dependency_handling=settings.dependency_handling,
            excluded_prefixes=(settings.datastore_prefix,),
            max_secret_length=settings.max_secret_display_length,
        )
        if report.success and report.output.strip():
            outcome.findings = normalize_report(report.output, context)
        else:
            logger.warning("scan.report_failed", return_code=report.return_code, error=report.error)
            outcome.used_fallback = True
            outcome.findings = normalize_text(scan_result.combined_output, context)
    finally:
        outcome.datastore_removed = await _cleanup(datastore)

    outcome.finished_at = datetime.utcnow()
    logger.info(
        "scan.finished",
        repo_root=root,
        findings=len(outcome.findings),
        used_fallback=outcome.used_fallback,
    )
    return outcome
