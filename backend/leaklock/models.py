from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Optional


class Severity(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"
    WARNING = "warning"
    SAFE = "safe"


class TargetKind(str, enum.Enum):
    FILE = "file"
    DIRECTORY = "directory"


class RewriteMode(str, enum.Enum):
    NAME_BASED = "name_based"
    PATH_BASED = "path_based"
    REPLACE_TEXT = "replace_text"


class Grouping(str, enum.Enum):
    COMBINED = "combined"
    INDIVIDUAL = "individual"


class DependencyHandling(str, enum.Enum):
    WARNING = "warning"
    EXCLUDE = "exclude"
    INCLUDE = "include"


@dataclass(frozen=True)
class NormalizedFinding:
    file: str
    line: int
    secret: str
    description: str
    rule_id: Optional[str]
    severity: Severity
    is_dependency_path: bool = False
    is_from_history: bool = False
    is_uncommitted: bool = False
    original_severity: Optional[Severity] = None
    raw_secret: str = field(default="", repr=False, compare=False)

    def as_dict(self) -> dict:
        data = asdict(self)
        data.pop("raw_secret")
        data["severity"] = self.severity.value
        data["original_severity"] = self.original_severity.value if self.original_severity else None
        return data


@dataclass(frozen=True)
class RemovalTarget:
    relative_path: str
    base_name: str
    kind: TargetKind

    @property
    def pathspec(self) -> str:
        """Relative path as a git pathspec; directories are scoped to their subtree."""
        if self.kind is TargetKind.DIRECTORY:
            return self.relative_path.rstrip("/") + "/"
        return self.relative_path


@dataclass(frozen=True)
class RefMatches:
    name: str
    matching_files: tuple[str, ...] = ()


@dataclass(frozen=True)
class RefPreview:
    local_branches: tuple[RefMatches, ...] = ()
    remote_branches: tuple[RefMatches, ...] = ()
    tags: tuple[RefMatches, ...] = ()

    def refs_with_matches(self) -> list[RefMatches]:
        return [
            ref
            for ref in (*self.local_branches, *self.remote_branches, *self.tags)
            if ref.matching_files
        ]


@dataclass(frozen=True)
class FetchState:
    last_fetched_at: Optional[datetime] = None
