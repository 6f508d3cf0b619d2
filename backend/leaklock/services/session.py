"""Session state for one operator working on one repository.

State is an immutable ``SessionState`` snapshot. Every change goes through
``reduce(state, event)``, a pure function, and ``SessionStore`` notifies
subscribers with the new snapshot. ``LeakLockSession`` drives the async
services and allows at most one scan and one rewrite operation in flight.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Union

import structlog

from leaklock.errors import OperationInProgressError, StaleCommandError, ValidationError
from leaklock.models import (
    FetchState,
    Grouping,
    NormalizedFinding,
    RefPreview,
    RemovalTarget,
    RewriteMode,
    TargetKind,
)
from leaklock.security import validate_path, validate_path_within
from leaklock.services import scanner
from leaklock.services.executor import ExecutionReport, execute_plan
from leaklock.services.freshness import RefFreshnessTracker
from leaklock.services.preview import CrossRefPreviewer
from leaklock.services.rewrite import CommandFingerprint, HistoryRewriteCommandBuilder, PreparedCommand

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SessionState:
    repo_root: Optional[str] = None
    targets: tuple[RemovalTarget, ...] = ()
    mode: RewriteMode = RewriteMode.NAME_BASED
    grouping: Grouping = Grouping.COMBINED
    findings: tuple[NormalizedFinding, ...] = ()
    prepared: Optional[PreparedCommand] = None
    preview: Optional[RefPreview] = None
    fetch_state: FetchState = FetchState()
    scanning: bool = False
    rewriting: bool = False
    last_error: Optional[str] = None

    def matches(self, fingerprint: CommandFingerprint) -> bool:
        if fingerprint.mode is RewriteMode.REPLACE_TEXT:
            return (
                self.mode is RewriteMode.REPLACE_TEXT
                and fingerprint.repo_root == self.repo_root
                and fingerprint.grouping is self.grouping
            )
        return fingerprint == CommandFingerprint(self.repo_root or "", self.targets, self.mode, self.grouping)


# Events ---------------------------------------------------------------------


@dataclass(frozen=True)
class RepoSelected:
    repo_root: str


@dataclass(frozen=True)
class TargetsAdded:
    targets: tuple[RemovalTarget, ...]


@dataclass(frozen=True)
class TargetRemoved:
    relative_path: str


@dataclass(frozen=True)
class TargetsCleared:
    pass


@dataclass(frozen=True)
class ModeChanged:
    mode: RewriteMode


@dataclass(frozen=True)
class GroupingChanged:
    grouping: Grouping


@dataclass(frozen=True)
class ScanStarted:
    pass


@dataclass(frozen=True)
class ScanFinished:
    repo_root: str
    findings: tuple[NormalizedFinding, ...]


@dataclass(frozen=True)
class ScanFailed:
    error: str


@dataclass(frozen=True)
class PreviewReady:
    repo_root: str
    targets: tuple[RemovalTarget, ...]
    preview: RefPreview


@dataclass(frozen=True)
class CommandPrepared:
    prepared: PreparedCommand


@dataclass(frozen=True)
class FetchRecorded:
    fetch_state: FetchState


@dataclass(frozen=True)
class RewriteStarted:
    pass


@dataclass(frozen=True)
class RewriteFinished:
    error: Optional[str] = None
    executed: bool = True


Event = Union[
    RepoSelected,
    TargetsAdded,
    TargetRemoved,
    TargetsCleared,
    ModeChanged,
    GroupingChanged,
    ScanStarted,
    ScanFinished,
    ScanFailed,
    PreviewReady,
    CommandPrepared,
    FetchRecorded,
    RewriteStarted,
    RewriteFinished,
]


def _with_targets(state: SessionState, targets: tuple[RemovalTarget, ...]) -> SessionState:
    if targets == state.targets:
        return state
    return replace(state, targets=targets, prepared=None, preview=None)


def reduce(state: SessionState, event: Event) -> SessionState:
    if isinstance(event, RepoSelected):
        if event.repo_root == state.repo_root:
            return state
        return SessionState(repo_root=event.repo_root, mode=state.mode, grouping=state.grouping)
    if isinstance(event, TargetsAdded):
        known = {target.relative_path for target in state.targets}
        added = []
        for target in event.targets:
            if target.relative_path not in known:
                known.add(target.relative_path)
                added.append(target)
        return _with_targets(state, state.targets + tuple(added))
    if isinstance(event, TargetRemoved):
        remaining = tuple(t for t in state.targets if t.relative_path != event.relative_path)
        return _with_targets(state, remaining)
    if isinstance(event, TargetsCleared):
        return _with_targets(state, ())
    if isinstance(event, ModeChanged):
        if event.mode is state.mode:
            return state
        return replace(state, mode=event.mode, prepared=None, preview=None)
    if isinstance(event, GroupingChanged):
        if event.grouping is state.grouping:
            return state
        return replace(state, grouping=event.grouping, prepared=None, preview=None)
    if isinstance(event, ScanStarted):
        return replace(state, scanning=True, last_error=None)
    if isinstance(event, ScanFinished):
        if event.repo_root != state.repo_root:
            return state
        prepared = state.prepared
        if prepared is not None and prepared.mode is RewriteMode.REPLACE_TEXT:
            prepared = None
        return replace(state, scanning=False, findings=event.findings, prepared=prepared)
    if isinstance(event, ScanFailed):
        return replace(state, scanning=False, last_error=event.error)
    if isinstance(event, PreviewReady):
        # results for a target set that has since changed are dropped
        if event.repo_root != state.repo_root or event.targets != state.targets:
            return state
        return replace(state, preview=event.preview)
    if isinstance(event, CommandPrepared):
        if not state.matches(event.prepared.fingerprint):
            return state
        return replace(state, prepared=event.prepared)
    if isinstance(event, FetchRecorded):
        return replace(state, fetch_state=event.fetch_state)
    if isinstance(event, RewriteStarted):
        return replace(state, rewriting=True, last_error=None)
    if isinstance(event, RewriteFinished):
        if not event.executed:
            return replace(state, rewriting=False)
        # history changed, so earlier commands and previews no longer apply
        return replace(state, rewriting=False, prepared=None, preview=None, last_error=event.error)
    raise TypeError(f"Unknown session event {event!r}")


Subscriber = Callable[[SessionState], None]


class SessionStore:
    def __init__(self, state: SessionState | None = None):
        self._state = state or SessionState()
        self._subscribers: List[Subscriber] = []

    @property
    def state(self) -> SessionState:
        return self._state

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def dispatch(self, event: Event) -> SessionState:
        new_state = reduce(self._state, event)
        if new_state is self._state:
            return new_state
        self._state = new_state
        for callback in list(self._subscribers):
            callback(new_state)
        return new_state


def make_target(repo_root: str, path: str) -> RemovalTarget:
    """Turn a filesystem entry inside ``repo_root`` into a removal target."""
    root = validate_path(repo_root)
    absolute = validate_path_within(os.path.join(root, path), [root])
    relative = os.path.relpath(absolute, root)
    if relative == os.curdir:
        raise ValidationError(path, "The repository root itself cannot be removed")
    kind = TargetKind.DIRECTORY if os.path.isdir(absolute) else TargetKind.FILE
    return RemovalTarget(
        relative_path=relative.replace(os.sep, "/"),
        base_name=os.path.basename(absolute),
        kind=kind,
    )


class LeakLockSession:
    def __init__(
        self,
        store: SessionStore | None = None,
        tracker: RefFreshnessTracker | None = None,
        builder: HistoryRewriteCommandBuilder | None = None,
        previewer: CrossRefPreviewer | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store or SessionStore()
        self.tracker = tracker or RefFreshnessTracker()
        self.clock = clock
        self.builder = builder or HistoryRewriteCommandBuilder(self.tracker, clock=clock)
        self.previewer = previewer or CrossRefPreviewer(self.tracker, clock=clock)

    @property
    def state(self) -> SessionState:
        return self.store.state

    # Selection -------------------------------------------------------------
    def select_repository(self, repo_root: str) -> SessionState:
        root = validate_path(repo_root)
        if root != self.state.repo_root:
            if self.state.scanning:
                raise OperationInProgressError("scan")
            if self.state.rewriting:
                raise OperationInProgressError("rewrite")
            self.tracker.reset()
        return self.store.dispatch(RepoSelected(root))

    def _require_root(self) -> str:
        if not self.state.repo_root:
            raise ValidationError(None, "No repository selected")
        return self.state.repo_root

    def add_targets(self, paths: Sequence[str]) -> SessionState:
        root = self._require_root()
        targets = tuple(make_target(root, path) for path in paths)
        return self.store.dispatch(TargetsAdded(targets))

    def remove_target(self, relative_path: str) -> SessionState:
        return self.store.dispatch(TargetRemoved(relative_path))

    def clear_targets(self) -> SessionState:
        return self.store.dispatch(TargetsCleared())

    def set_mode(self, mode: RewriteMode) -> SessionState:
        return self.store.dispatch(ModeChanged(mode))

    def set_grouping(self, grouping: Grouping) -> SessionState:
        return self.store.dispatch(GroupingChanged(grouping))

    def _sync_fetch_state(self) -> None:
        self.store.dispatch(FetchRecorded(self.tracker.fetch_state))

    # Scan ------------------------------------------------------------------
    async def scan(self) -> tuple[NormalizedFinding, ...]:
        root = self._require_root()
        if self.state.scanning:
            raise OperationInProgressError("scan")
        self.store.dispatch(ScanStarted())
        try:
            outcome = await scanner.scan_repository(root)
        except Exception as exc:
            self.store.dispatch(ScanFailed(str(exc)))
            raise
        findings = tuple(outcome.findings)
        self.store.dispatch(ScanFinished(root, findings))
        return findings

    # Rewrite ---------------------------------------------------------------
    def _begin_rewrite(self) -> None:
        if self.state.rewriting:
            raise OperationInProgressError("rewrite")
        self.store.dispatch(RewriteStarted())

    async def preview(self) -> RefPreview:
        root = self._require_root()
        targets = self.state.targets
        self._begin_rewrite()
        try:
            result = await self.previewer.preview(root, targets)
        finally:
            self.store.dispatch(RewriteFinished(executed=False))
        self._sync_fetch_state()
        self.store.dispatch(PreviewReady(root, targets, result))
        return result

    async def prepare(self, findings: Optional[Sequence[NormalizedFinding]] = None) -> PreparedCommand:
        """Build the rewrite command for the current selection.

        In replace-text mode ``findings`` narrows the secrets to replace; by
        default every finding of the last scan is used.
        """
        root = self._require_root()
        state = self.state
        self._begin_rewrite()
        try:
            if state.mode is RewriteMode.REPLACE_TEXT:
                selected = state.findings if findings is None else findings
                prepared = await self.builder.build_replace_text(root, selected, state.grouping)
            else:
                prepared = await self.builder.build(root, state.targets, state.mode, state.grouping)
        finally:
            self.store.dispatch(RewriteFinished(executed=False))
        self._sync_fetch_state()
        self.store.dispatch(CommandPrepared(prepared))
        return prepared

    async def execute(self, prepared: PreparedCommand, confirmed: bool = False) -> ExecutionReport:
        if not confirmed:
            raise StaleCommandError("The command must be confirmed before it runs")
        current = self.state.prepared
        if current is None or current is not prepared or not self.state.matches(prepared.fingerprint):
            raise StaleCommandError("The prepared command no longer matches the session; prepare it again")
        warning = self.tracker.staleness_warning(self.clock())
        if warning is not None:
            logger.warning("rewrite.stale_refs", message=warning.message)

        self._begin_rewrite()
        try:
            report = await execute_plan(prepared.plan)
        except Exception as exc:
            self.store.dispatch(RewriteFinished(error=str(exc)))
            raise
        self.store.dispatch(RewriteFinished())
        return report
