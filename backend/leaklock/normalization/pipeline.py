"""Turn raw scanning-engine output into ``NormalizedFinding`` records.

Parsing runs through an ordered list of strategies (whole JSON document,
JSON Lines, free text). Each strategy returns a ``ParseOutcome``; the first
successful one wins. ``normalize_report`` never raises for malformed engine
output, it returns a possibly empty list instead.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence

import structlog

from leaklock.models import DependencyHandling, NormalizedFinding, Severity
from leaklock.normalization import extractors
from leaklock.normalization.classifiers import is_dependency_path, severity_of

logger = structlog.get_logger(__name__)

UNKNOWN_PATH = "file_path_not_found"
HISTORY_REFERENCE = "git-history-reference"
PLACEHOLDER_PATH = "scan_output"
ELLIPSIS = "..."

_GIT_REF = re.compile(r"\.git/refs/(heads|tags|remotes)/(.+)")
_GIT_OBJECT = re.compile(r"\.git/objects/[0-9a-f]{2}/[0-9a-f]{38}")
_OTHER_VCS_DIRS = frozenset({".svn", ".hg"})

_TEXT_PATTERNS = (
    re.compile(r"Found.*secret.*in\s+([^\s:]+):(\d+)", re.IGNORECASE),
    re.compile(r"([^\s:]+):(\d+).*potential.*secret", re.IGNORECASE),
    re.compile(r"Secret.*detected.*in\s+([^\s:]+):(\d+)", re.IGNORECASE),
    re.compile(r"/scan/([^\s:]+):(\d+)", re.IGNORECASE),
    re.compile(r"([a-zA-Z0-9/_\-.]+\.[a-zA-Z0-9]+):(\d+)"),
)


@dataclass(frozen=True)
class NormalizationContext:
    scan_root: Optional[str] = None
    mount_prefix: str = "/scan/"
    tracked_files: Optional[frozenset[str]] = None
    dependency_handling: DependencyHandling = DependencyHandling.WARNING
    excluded_prefixes: tuple[str, ...] = ()
    max_secret_length: int = 50


@dataclass(frozen=True)
class ParseFailure:
    strategy: str
    reason: str


@dataclass(frozen=True)
class ParseOutcome:
    findings: List[NormalizedFinding] = field(default_factory=list)
    failure: Optional[ParseFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def failed(cls, strategy: str, reason: str) -> "ParseOutcome":
        return cls(failure=ParseFailure(strategy, reason))


Strategy = Callable[[str, NormalizationContext], ParseOutcome]


def truncate_secret(secret: str, limit: int = 50) -> str:
    if len(secret) > limit:
        return secret[:limit] + ELLIPSIS
    return secret


def _segments(path: str) -> list[str]:
    return [segment for segment in re.split(r"[\\/]", path) if segment]


def _relative_path(path: str, context: NormalizationContext) -> str:
    clean = path.strip()
    prefix = context.mount_prefix
    if prefix and clean.startswith(prefix):
        clean = clean[len(prefix):]
    elif context.scan_root:
        root = context.scan_root.rstrip("\\/")
        if clean.startswith(root + "/") or clean.startswith(root + "\\"):
            clean = clean[len(root) + 1:]
    clean = clean.lstrip("/")
    return clean or path


def _history_reference(match: dict, path: str) -> str:
    actual = extractors.first_of(extractors.HISTORY_PATH_EXTRACTORS, match)
    if actual:
        return actual
    ref = _GIT_REF.search(path)
    if ref:
        return f"git-ref:{ref.group(2)} ({ref.group(1)})"
    if _GIT_OBJECT.search(path):
        return "git-object (commit/tree/blob)"
    return HISTORY_REFERENCE


def _looks_like_history(path: str) -> bool:
    return path.startswith("git-ref:") or path.startswith("git-object") or path == HISTORY_REFERENCE


def _is_excluded(path: str, context: NormalizationContext) -> bool:
    segments = _segments(path)
    if _OTHER_VCS_DIRS.intersection(segments):
        return True
    return bool(segments) and any(segments[0].startswith(prefix) for prefix in context.excluded_prefixes)


def build_finding(
    path: str,
    line: int,
    secret: str,
    rule_id: Optional[str],
    context: NormalizationContext,
    *,
    from_history: bool = False,
    description: Optional[str] = None,
    severity: Optional[Severity] = None,
) -> Optional[NormalizedFinding]:
    """Classify one recovered match. Returns None when the finding must be dropped."""
    if _is_excluded(path, context):
        logger.debug("normalize.finding_dropped", file=path)
        return None

    from_history = from_history or _looks_like_history(path)
    description = description or rule_id or "Secret detected"
    if from_history:
        description = f"{description} (found in git history)"

    original = severity or severity_of(rule_id)
    effective = original
    dependency = is_dependency_path(path)
    if dependency:
        if context.dependency_handling is DependencyHandling.EXCLUDE:
            return None
        if context.dependency_handling is DependencyHandling.WARNING:
            effective = Severity.WARNING

    uncommitted = (
        context.tracked_files is not None
        and not from_history
        and path not in (UNKNOWN_PATH, PLACEHOLDER_PATH)
        and path not in context.tracked_files
    )
    if uncommitted:
        effective = Severity.SAFE

    return NormalizedFinding(
        file=path,
        line=max(1, line),
        secret=truncate_secret(secret, context.max_secret_length),
        description=description,
        rule_id=rule_id,
        severity=effective,
        is_dependency_path=dependency,
        is_from_history=from_history,
        is_uncommitted=uncommitted,
        original_severity=original,
        raw_secret=secret,
    )


def normalize_match(match: object, finding: object, context: NormalizationContext) -> Optional[NormalizedFinding]:
    if not isinstance(match, dict):
        return None
    raw_path = extractors.first_of(extractors.PATH_EXTRACTORS, match)
    from_history = extractors.has_history_provenance(match)

    if raw_path is None:
        logger.warning("normalize.path_not_found", rule=extractors.rule_name(match, finding))
        path = UNKNOWN_PATH
    else:
        path = _relative_path(raw_path, context)

    if ".git" in _segments(path) and not _OTHER_VCS_DIRS.intersection(_segments(path)):
        path = _history_reference(match, path)
        from_history = True

    line = extractors.first_of(extractors.LINE_EXTRACTORS, match) or 1
    secret = extractors.first_of(extractors.SNIPPET_EXTRACTORS, match) or "content_unavailable"
    return build_finding(
        path,
        line,
        secret,
        extractors.rule_name(match, finding),
        context,
        from_history=from_history,
    )


def _normalize_findings(items: Iterable[object], context: NormalizationContext) -> List[NormalizedFinding]:
    results: List[NormalizedFinding] = []
    for finding in items:
        if not isinstance(finding, dict):
            continue
        matches = finding.get("matches")
        if not isinstance(matches, list):
            continue
        for match in matches:
            try:
                normalized = normalize_match(match, finding, context)
            except (AttributeError, TypeError, ValueError) as exc:
                logger.warning("normalize.match_skipped", error=str(exc))
                continue
            if normalized is not None:
                results.append(normalized)
    return results


def parse_json_document(output: str, context: NormalizationContext) -> ParseOutcome:
    try:
        document = json.loads(output)
    except json.JSONDecodeError as exc:
        return ParseOutcome.failed("json", str(exc))
    if isinstance(document, dict) and "matches" in document:
        document = [document]
    if not isinstance(document, list):
        return ParseOutcome.failed("json", f"expected a list of findings, got {type(document).__name__}")
    return ParseOutcome(findings=_normalize_findings(document, context))


def parse_json_lines(output: str, context: NormalizationContext) -> ParseOutcome:
    documents = []
    for line in output.splitlines():
        if not line.strip():
            continue
        try:
            documents.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    if not documents:
        return ParseOutcome.failed("jsonl", "no line parsed as JSON")
    return ParseOutcome(findings=_normalize_findings(documents, context))


def parse_text_fallback(output: str, context: NormalizationContext) -> ParseOutcome:
    results: List[NormalizedFinding] = []
    for line in output.splitlines():
        for pattern in _TEXT_PATTERNS:
            found = pattern.search(line)
            if not found:
                continue
            path = _relative_path(found.group(1), context)
            if _OTHER_VCS_DIRS.intersection(_segments(path)):
                continue
            if ".git" in _segments(path):
                path = HISTORY_REFERENCE
            finding = build_finding(
                path,
                int(found.group(2)),
                "***hidden***",
                "fallback_detection",
                context,
                description="Secret detected (details hidden)",
            )
            if finding is not None:
                results.append(finding)
            break

    lowered = output.lower()
    if not results and ("secret" in lowered or "finding" in lowered):
        placeholder = build_finding(
            PLACEHOLDER_PATH,
            1,
            "***scan completed***",
            None,
            context,
            description="Scan completed - check the scanner output for details",
            severity=Severity.INFO,
        )
        if placeholder is not None:
            results.append(placeholder)
    return ParseOutcome(findings=results)


STRATEGIES: Sequence[Strategy] = (parse_json_document, parse_json_lines, parse_text_fallback)


def run_strategies(
    output: str, context: NormalizationContext, strategies: Sequence[Strategy] = STRATEGIES
) -> List[NormalizedFinding]:
    for strategy in strategies:
        outcome = strategy(output, context)
        if outcome.ok:
            return outcome.findings
        logger.info("normalize.strategy_failed", strategy=outcome.failure.strategy, reason=outcome.failure.reason)
    return []


def normalize_report(output: Optional[str], context: Optional[NormalizationContext] = None) -> List[NormalizedFinding]:
    if not output or not output.strip():
        return []
    findings = run_strategies(output, context or NormalizationContext())
    logger.info("normalize.finished", findings=len(findings))
    return findings


def normalize_text(output: Optional[str], context: Optional[NormalizationContext] = None) -> List[NormalizedFinding]:
    """Recover findings from unstructured scanner output only."""
    if not output or not output.strip():
        return []
    return parse_text_fallback(output, context or NormalizationContext()).findings
