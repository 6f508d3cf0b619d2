"""Structured command plans for history rewrites.

A plan is a working directory plus a list of argv steps; it is executed
without a shell. ``render`` produces the single shell line shown to the
operator before anything destructive happens.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Union

_SAFE_WORD = re.compile(r"[A-Za-z0-9_./=:@%+,-]+")
_DOUBLE_QUOTE_SPECIALS = re.compile(r'([\\"$`])')


class PathArg(str):
    """An argv entry holding a filesystem path; always quoted when rendered."""


def quote_arg(arg: str) -> str:
    if not isinstance(arg, PathArg) and _SAFE_WORD.fullmatch(arg):
        return arg
    # ! stays outside double quotes, where interactive bash would expand history
    quoted = ['"' + _DOUBLE_QUOTE_SPECIALS.sub(r"\\\1", part) + '"' for part in arg.split("!")]
    return "'!'".join(quoted)


@dataclass(frozen=True)
class CommandStep:
    argv: tuple[str, ...]
    description: str = ""

    def render(self) -> str:
        return " ".join(quote_arg(arg) for arg in self.argv)


@dataclass(frozen=True)
class DeleteBackupRefsStep:
    """Drop the ``refs/original/`` backups git filter-branch leaves behind."""

    git_path: str = "git"
    namespace: str = "refs/original/"
    description: str = "Delete filter-branch backup refs"

    def render(self) -> str:
        git = quote_arg(self.git_path)
        return f'{git} for-each-ref --format="%(refname)" {quote_arg(self.namespace)} | xargs -n 1 {git} update-ref -d'


Step = Union[CommandStep, DeleteBackupRefsStep]


@dataclass(frozen=True)
class PlanFile:
    """A helper file written right before the plan runs and removed afterwards."""

    path: str
    content: str = field(repr=False)


@dataclass(frozen=True)
class CommandPlan:
    workdir: str
    steps: tuple[Step, ...]
    files: tuple[PlanFile, ...] = ()

    def render(self) -> str:
        parts = [f"cd {quote_arg(PathArg(self.workdir))}"]
        parts.extend(step.render() for step in self.steps)
        return " && ".join(parts)
