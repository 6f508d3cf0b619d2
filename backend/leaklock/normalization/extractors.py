"""Ordered field extractors for Nosey Parker matches.

The report schema has moved between engine releases, so every datum is looked
up through a list of small extractors tried in order; the first one that
returns a value wins.
"""

from __future__ import annotations

from typing import Any, Callable, Optional, Sequence, TypeVar

T = TypeVar("T")

Match = dict
Extractor = Callable[[Match], Optional[T]]

GIT_HISTORY_KIND = "git_repo"


def _dig(data: Any, *keys: Any) -> Any:
    for key in keys:
        if isinstance(key, int):
            if not isinstance(data, list) or len(data) <= key:
                return None
            data = data[key]
        else:
            if not isinstance(data, dict):
                return None
            data = data.get(key)
    return data


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _provenance(match: Match) -> list[dict]:
    entries = match.get("provenance")
    if not isinstance(entries, list):
        return []
    return [entry for entry in entries if isinstance(entry, dict)]


def is_history_provenance(entry: dict) -> bool:
    return entry.get("kind") == GIT_HISTORY_KIND


def has_history_provenance(match: Match) -> bool:
    return any(is_history_provenance(entry) for entry in _provenance(match))


def history_blob_path(match: Match) -> Optional[str]:
    for entry in _provenance(match):
        if is_history_provenance(entry):
            path = _text(_dig(entry, "first_commit", "blob_path"))
            if path:
                return path
    return None


def _field(*keys: Any) -> Extractor[str]:
    def extract(match: Match) -> Optional[str]:
        return _text(_dig(match, *keys))

    extract.__name__ = "field_" + "_".join(str(key) for key in keys)
    return extract


def _fuzzy_key(*keys: Any) -> Extractor[str]:
    """Any string under ``keys`` whose name mentions a file, path or source."""

    def extract(match: Match) -> Optional[str]:
        container = _dig(match, *keys)
        if not isinstance(container, dict):
            return None
        for name, value in container.items():
            if any(hint in name for hint in ("file", "path", "source")):
                text = _text(value)
                if text:
                    return text
        return None

    extract.__name__ = "fuzzy_" + "_".join(str(key) for key in keys)
    return extract


PATH_EXTRACTORS: Sequence[Extractor[str]] = (
    history_blob_path,
    _field("provenance", 0, "path"),
    _field("location", "source_file"),
    _field("source", "file"),
    _field("file_path"),
    _field("location", "path"),
    _field("provenance", 0, "source_file"),
    _field("source_path"),
    _field("path"),
    _field("location", "source_span", "source_id"),
    _field("provenance", 0, "source_id"),
    _field("source_id"),
    _fuzzy_key("location"),
    _fuzzy_key("provenance", 0),
)


def history_metadata_path(match: Match) -> Optional[str]:
    """Blob path recorded in commit/blob metadata of any provenance entry."""
    for entry in _provenance(match):
        for section in ("commit_metadata", "blob_metadata"):
            path = _text(_dig(entry, section, "file_path")) or _text(_dig(entry, section, "path"))
            if path:
                return path
    return (
        _text(_dig(match, "location", "source_span", "file_path"))
        or _text(_dig(match, "location", "source_span", "path"))
    )


HISTORY_PATH_EXTRACTORS: Sequence[Extractor[str]] = (history_blob_path, history_metadata_path)


def _positive_int(*keys: Any) -> Extractor[int]:
    def extract(match: Match) -> Optional[int]:
        value = _dig(match, *keys)
        if isinstance(value, bool):
            return None
        try:
            number = int(value)
        except (TypeError, ValueError):
            return None
        return number if number >= 1 else None

    return extract


LINE_EXTRACTORS: Sequence[Extractor[int]] = (
    _positive_int("location", "source_span", "start", "line"),
    _positive_int("location", "line"),
    _positive_int("line_number"),
    _positive_int("line"),
)

SNIPPET_EXTRACTORS: Sequence[Extractor[str]] = (
    _field("snippet", "matching"),
    _field("snippet", "before"),
    _field("snippet"),
    _field("content"),
    _field("text"),
)


def first_of(extractors: Sequence[Extractor[T]], match: Match) -> Optional[T]:
    for extractor in extractors:
        value = extractor(match)
        if value is not None:
            return value
    return None


def rule_name(*sources: Any) -> Optional[str]:
    for source in sources:
        if not isinstance(source, dict):
            continue
        for key in ("rule_name", "rule", "rule_id"):
            text = _text(source.get(key))
            if text:
                return text
    return None
