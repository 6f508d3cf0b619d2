"""Container resource names (datastores, helper files) derived from user input."""

from __future__ import annotations

import re

from leaklock.errors import ValidationError

MAX_NAME_LENGTH = 255

_SAFE_NAME = re.compile(r"[A-Za-z0-9._-]+")


def sanitize_resource_name(name: object) -> str:
    """Return ``name`` unchanged if it only uses ``[A-Za-z0-9._-]``.

    Offending characters are never stripped: two different inputs must not
    collapse into the same resource name.
    """
    if not isinstance(name, str):
        raise ValidationError(name, "Resource name must be a string")
    if not 1 <= len(name) <= MAX_NAME_LENGTH:
        raise ValidationError(name, f"Resource name must be 1-{MAX_NAME_LENGTH} characters long")
    if not _SAFE_NAME.fullmatch(name):
        raise ValidationError(name, "Resource name may only contain letters, digits, '.', '_' and '-'")
    if name in {".", ".."}:
        raise ValidationError(name, "Resource name cannot be a relative directory reference")
    return name
