"""Validation of untrusted filesystem paths before they reach docker, git or BFG.

Scans may target any repository on disk, so instead of confining paths to the
working directory the guard rejects traversal sequences and a deny-list of
sensitive system directories.
"""

from __future__ import annotations

import os
import re
import sys
from typing import Iterable, Sequence

from leaklock.errors import ValidationError

MAX_PATH_LENGTH = 4096

_POSIX_DENIED = (
    "/etc",
    "/bin",
    "/sbin",
    "/usr/bin",
    "/usr/sbin",
    "/boot",
    "/proc",
    "/sys",
    "/dev",
)
_DARWIN_DENIED = _POSIX_DENIED + ("/System", "/private/etc", "/Library/Keychains")
_WINDOWS_DENIED = (
    "C:\\Windows",
    "C:\\Program Files",
    "C:\\Program Files (x86)",
    "C:\\ProgramData\\Microsoft",
)

_TRAVERSAL = re.compile(r"(^|[\\/])\.\.($|[\\/])")


def denied_directories_for(platform: str) -> tuple[str, ...]:
    if platform.startswith("win"):
        return _WINDOWS_DENIED
    if platform == "darwin":
        return _DARWIN_DENIED
    return _POSIX_DENIED


def is_case_insensitive(platform: str) -> bool:
    return platform.startswith("win") or platform == "darwin"


def _has_traversal(path: str) -> bool:
    if "../" in path or "..\\" in path or _TRAVERSAL.search(path):
        return True
    components = re.split(r"[\\/]", path)
    return any(part.startswith("..") or part.endswith("..") for part in components if part)


class PathGuard:
    def __init__(
        self,
        denied_directories: Iterable[str] | None = None,
        case_sensitive: bool | None = None,
        platform: str = sys.platform,
    ):
        self.denied_directories = tuple(
            denied_directories if denied_directories is not None else denied_directories_for(platform)
        )
        self.case_sensitive = (
            case_sensitive if case_sensitive is not None else not is_case_insensitive(platform)
        )

    def _key(self, path: str) -> str:
        normalized = os.path.normpath(path)
        return normalized if self.case_sensitive else normalized.casefold()

    def _is_denied(self, absolute: str) -> bool:
        key = self._key(absolute)
        for denied in self.denied_directories:
            denied_key = self._key(denied).rstrip("\\/")
            if key == denied_key or key.startswith(denied_key + os.sep):
                return True
        return False

    def validate(self, path: object) -> str:
        """Return the normalized absolute form of ``path``.

        Raises ``ValidationError`` for non-strings, empty values, NUL bytes,
        over-long input, traversal sequences and deny-listed directories.
        Symlinks are not resolved.
        """
        if not isinstance(path, str):
            raise ValidationError(path, "Path must be a string")
        if not path.strip():
            raise ValidationError(path, "Path is empty")
        if "\x00" in path:
            raise ValidationError(path, "Path contains a null byte")
        if len(path) > MAX_PATH_LENGTH:
            raise ValidationError(path[:64] + "...", f"Path is longer than {MAX_PATH_LENGTH} characters")
        if _has_traversal(path):
            raise ValidationError(path, "Path contains a directory traversal sequence")

        absolute = os.path.abspath(os.path.normpath(os.path.expanduser(path)))
        if self._is_denied(absolute):
            raise ValidationError(path, "Path points into a protected system directory")
        return absolute

    def validate_within(self, path: object, allowed_base_dirs: Sequence[str]) -> str:
        """Validate ``path`` and require it to sit at or below one of ``allowed_base_dirs``."""
        absolute = self.validate(path)
        for base in allowed_base_dirs:
            base_abs = os.path.abspath(base)
            try:
                relative = os.path.relpath(self._key(absolute), self._key(base_abs))
            except ValueError:
                # different drives on Windows
                continue
            if relative == os.curdir or not (
                relative == os.pardir or relative.startswith(os.pardir + os.sep) or os.path.isabs(relative)
            ):
                return absolute
        raise ValidationError(path, "Path is outside the allowed directories")


_default_guard = PathGuard()


def validate_path(path: object) -> str:
    return _default_guard.validate(path)


def validate_path_within(path: object, allowed_base_dirs: Sequence[str]) -> str:
    return _default_guard.validate_within(path, allowed_base_dirs)
