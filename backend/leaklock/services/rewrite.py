from __future__ import annotations

import hashlib
import os
import re
import shlex
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence

import structlog

from leaklock.config import Settings, get_settings
from leaklock.errors import ValidationError
from leaklock.models import Grouping, NormalizedFinding, RemovalTarget, RewriteMode, TargetKind
from leaklock.security import sanitize_resource_name, validate_path, validate_path_within
from leaklock.services.commands import (
    CommandPlan,
    CommandStep,
    DeleteBackupRefsStep,
    PathArg,
    PlanFile,
    Step,
)
from leaklock.services.freshness import RefFreshnessTracker
from leaklock.services.preview import refresh_remote_refs

logger = structlog.get_logger(__name__)

DELETE_FILES_FLAG = "--delete-files"
DELETE_FOLDERS_FLAG = "--delete-folders"
INDEX_FILTER_FLAG = "--index-filter"
REPLACE_TEXT_FLAG = "--replace-text"

# display stand-ins produced by the normalizer, never real secret text
_NON_SECRETS = frozenset({"***hidden***", "***scan completed***", "content_unavailable"})


@dataclass(frozen=True)
class TargetDetail:
    target: RemovalTarget
    match_flag: str
    match_pattern: str


@dataclass(frozen=True)
class CommandFingerprint:
    """The inputs a prepared command was built from."""

    repo_root: str
    targets: tuple[RemovalTarget, ...]
    mode: RewriteMode
    grouping: Grouping
    replacements_digest: Optional[str] = None


@dataclass(frozen=True)
class PreparedCommand:
    text: str
    mode: RewriteMode
    grouping: Grouping
    per_target_details: tuple[TargetDetail, ...]
    plan: CommandPlan
    fingerprint: CommandFingerprint


def name_alternation(names: Iterable[str]) -> str:
    """Regex-escape ``names`` and join them into a single alternation."""
    escaped: List[str] = []
    for name in names:
        pattern = re.escape(name)
        if pattern not in escaped:
            escaped.append(pattern)
    if not escaped:
        raise ValidationError(list(names), "No names to match")
    if len(escaped) == 1:
        return escaped[0]
    return "(" + "|".join(escaped) + ")"


def _digest(lines: Sequence[str]) -> str:
    return hashlib.sha256("\n".join(lines).encode("utf-8")).hexdigest()


class HistoryRewriteCommandBuilder:
    def __init__(
        self,
        tracker: RefFreshnessTracker,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.tracker = tracker
        self.settings = settings or get_settings()
        self.clock = clock

    # Shared pieces -------------------------------------------------------
    def _git(self, *args: str, description: str = "") -> CommandStep:
        return CommandStep((self.settings.git_path, *args), description)

    def _bfg(self, *args: str, description: str = "") -> CommandStep:
        return CommandStep(
            (self.settings.java_path, "-jar", PathArg(self.settings.bfg_jar_path), *args),
            description,
        )

    def _cleanup_tail(self) -> List[Step]:
        remote = self.settings.push_remote
        return [
            self._git("reflog", "expire", "--expire=now", "--all", description="Expire the reflog"),
            self._git("gc", "--prune=now", "--aggressive", description="Garbage-collect unreachable objects"),
            self._git("push", remote, "--force", "--all", description="Force-push every branch"),
            self._git("push", remote, "--force", "--tags", description="Force-push every tag"),
        ]

    def _validated_targets(self, repo_root: str, targets: Sequence[RemovalTarget]) -> tuple[RemovalTarget, ...]:
        if not targets:
            raise ValidationError([], "No removal targets selected")
        unique = {}
        for target in targets:
            absolute = validate_path_within(os.path.join(repo_root, target.relative_path), [repo_root])
            if os.path.normpath(absolute) == os.path.normpath(repo_root):
                raise ValidationError(target.relative_path, "The repository root itself cannot be removed")
            unique.setdefault(target.relative_path, target)
        return tuple(unique.values())

    # Name-based (BFG) ----------------------------------------------------
    def _bfg_delete_args(self, targets: Sequence[RemovalTarget]) -> tuple[List[str], List[TargetDetail]]:
        files = [target for target in targets if target.kind is TargetKind.FILE]
        folders = [target for target in targets if target.kind is TargetKind.DIRECTORY]
        args: List[str] = []
        details: List[TargetDetail] = []
        for flag, group in ((DELETE_FILES_FLAG, files), (DELETE_FOLDERS_FLAG, folders)):
            if not group:
                continue
            pattern = name_alternation(target.base_name for target in group)
            args.extend([flag, pattern])
            details.extend(TargetDetail(target, flag, pattern) for target in group)
        return args, details

    def _name_based(self, targets: Sequence[RemovalTarget], grouping: Grouping) -> tuple[List[Step], List[TargetDetail]]:
        steps: List[Step] = []
        details: List[TargetDetail] = []
        batches = [targets] if grouping is Grouping.COMBINED else [[target] for target in targets]
        for batch in batches:
            args, batch_details = self._bfg_delete_args(batch)
            label = ", ".join(target.base_name for target in batch)
            steps.append(self._bfg(*args, description=f"Delete by name: {label}"))
            details.extend(batch_details)
        steps.extend(self._cleanup_tail())
        return steps, details

    # Path-based (git filter-branch) --------------------------------------
    def _filter_branch(self, pathspecs: Sequence[str]) -> CommandStep:
        # pathspecs are literal: [ * ? in a name match only themselves
        index_filter = shlex.join(
            ["git", "--literal-pathspecs", "rm", "-r", "--cached", "--ignore-unmatch", "--", *pathspecs]
        )
        return self._git(
            "filter-branch", "--force",
            INDEX_FILTER_FLAG, index_filter,
            "--prune-empty",
            "--tag-name-filter", "cat",
            "--", "--all",
            description="Remove " + ", ".join(pathspecs) + " from every ref",
        )

    def _path_based(self, targets: Sequence[RemovalTarget], grouping: Grouping) -> tuple[List[Step], List[TargetDetail]]:
        details = [TargetDetail(target, INDEX_FILTER_FLAG, target.pathspec) for target in targets]
        if grouping is Grouping.COMBINED:
            steps: List[Step] = [self._filter_branch([target.pathspec for target in targets])]
        else:
            steps = [self._filter_branch([target.pathspec]) for target in targets]
        steps.append(DeleteBackupRefsStep(git_path=self.settings.git_path))
        steps.extend(self._cleanup_tail())
        return steps, details

    # Public API ----------------------------------------------------------
    def plan(
        self,
        repo_root: str,
        targets: Sequence[RemovalTarget],
        mode: RewriteMode,
        grouping: Grouping = Grouping.COMBINED,
    ) -> PreparedCommand:
        """Build the command for ``targets`` without touching git."""
        root = validate_path(repo_root)
        unique = self._validated_targets(root, targets)
        if mode is RewriteMode.NAME_BASED:
            steps, details = self._name_based(unique, grouping)
        elif mode is RewriteMode.PATH_BASED:
            steps, details = self._path_based(unique, grouping)
        else:
            raise ValidationError(mode, "Replace-text commands are built from findings, not removal targets")

        plan = CommandPlan(workdir=root, steps=tuple(steps))
        return PreparedCommand(
            text=plan.render(),
            mode=mode,
            grouping=grouping,
            per_target_details=tuple(details),
            plan=plan,
            fingerprint=CommandFingerprint(root, tuple(targets), mode, grouping),
        )

    async def build(
        self,
        repo_root: str,
        targets: Sequence[RemovalTarget],
        mode: RewriteMode,
        grouping: Grouping = Grouping.COMBINED,
    ) -> PreparedCommand:
        root = validate_path(repo_root)
        self._validated_targets(root, targets)
        await refresh_remote_refs(root, self.tracker, self.clock)
        prepared = self.plan(root, targets, mode, grouping)
        logger.info("rewrite.prepared", mode=mode.value, grouping=grouping.value, targets=len(targets))
        return prepared

    # Replace-text (BFG) --------------------------------------------------
    def replacement_for(self, rule_id: Optional[str]) -> str:
        normalized = re.sub(r"[\s\-]+", "_", (rule_id or "").lower())
        for keyword, replacement in self.settings.replacements.items():
            if keyword in normalized:
                return replacement
        return self.settings.default_replacement

    def replacement_lines(self, findings: Sequence[NormalizedFinding]) -> List[str]:
        lines: List[str] = []
        seen = set()
        for finding in findings:
            secret = finding.raw_secret
            if not secret or secret in _NON_SECRETS or secret in seen:
                continue
            if "\n" in secret or "\r" in secret:
                logger.warning("rewrite.multiline_secret_skipped", file=finding.file, rule=finding.rule_id)
                continue
            # BFG reads these as its own replacement syntax
            if "==>" in secret or secret.startswith(("regex:", "glob:")):
                logger.warning("rewrite.ambiguous_secret_skipped", file=finding.file, rule=finding.rule_id)
                continue
            seen.add(secret)
            lines.append(f"{secret}==>{self.replacement_for(finding.rule_id)}")
        return lines

    def plan_replace_text(
        self, repo_root: str, findings: Sequence[NormalizedFinding], grouping: Grouping = Grouping.COMBINED
    ) -> PreparedCommand:
        root = validate_path(repo_root)
        lines = self.replacement_lines(findings)
        if not lines:
            raise ValidationError([], "No replaceable secrets among the selected findings")
        name = sanitize_resource_name(self.settings.replacements_file_name)
        replacements_path = validate_path_within(os.path.join(root, name), [root])

        steps: List[Step] = [self._bfg(REPLACE_TEXT_FLAG, PathArg(replacements_path), description="Replace secret text")]
        steps.extend(self._cleanup_tail())
        plan = CommandPlan(
            workdir=root,
            steps=tuple(steps),
            files=(PlanFile(replacements_path, "\n".join(lines) + "\n"),),
        )
        return PreparedCommand(
            text=plan.render(),
            mode=RewriteMode.REPLACE_TEXT,
            grouping=grouping,
            per_target_details=(),
            plan=plan,
            fingerprint=CommandFingerprint(root, (), RewriteMode.REPLACE_TEXT, grouping, _digest(lines)),
        )

    async def build_replace_text(
        self, repo_root: str, findings: Sequence[NormalizedFinding], grouping: Grouping = Grouping.COMBINED
    ) -> PreparedCommand:
        root = validate_path(repo_root)
        await refresh_remote_refs(root, self.tracker, self.clock)
        prepared = self.plan_replace_text(root, findings, grouping)
        logger.info("rewrite.prepared", mode=RewriteMode.REPLACE_TEXT.value, secrets=len(prepared.plan.files))
        return prepared
