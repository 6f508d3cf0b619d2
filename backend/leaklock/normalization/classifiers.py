from __future__ import annotations

import re
from typing import Optional

from leaklock.models import Severity

DEPENDENCY_DIRECTORIES = frozenset(
    {
        # package managers
        "node_modules",
        "bower_components",
        "jspm_packages",
        ".npm",
        "npm-cache",
        "vendor",
        "composer",
        ".bundle",
        "gems",
        "site-packages",
        "packages",
        "nuget",
        ".m2",
        ".gradle",
        ".cargo",
        "Pods",
        # virtualenvs
        "venv",
        ".venv",
        "env",
        ".tox",
        "__pycache__",
        # build output
        "dist",
        "build",
        "target",
        "out",
        "bin",
        "obj",
        ".cache",
        # version control
        ".git",
        ".svn",
        ".hg",
        # editor state
        ".vscode",
        ".idea",
        ".eclipse",
        ".settings",
    }
)

HIGH_RISK_TOKENS = ("api_key", "secret_key", "private_key", "password", "token")
MEDIUM_RISK_TOKENS = ("url", "connection_string", "config")


def is_dependency_path(relative_path: str) -> bool:
    """True if a full segment of ``relative_path`` is a dependency/build/VCS directory."""
    segments = [segment for segment in re.split(r"[\\/]", relative_path) if segment]
    # the last segment is the file itself
    return any(segment in DEPENDENCY_DIRECTORIES for segment in segments[:-1])


def severity_of(rule_id: Optional[str]) -> Severity:
    if not rule_id:
        return Severity.MEDIUM
    normalized = re.sub(r"[\s\-]+", "_", rule_id.strip().lower())
    if any(token in normalized for token in HIGH_RISK_TOKENS):
        return Severity.HIGH
    if any(token in normalized for token in MEDIUM_RISK_TOKENS):
        return Severity.MEDIUM
    return Severity.LOW
