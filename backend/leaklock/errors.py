"""Error taxonomy shared by the scanning and history-rewrite layers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence


class LeakLockError(Exception):
    """Base class for every error surfaced to the operator."""


class ValidationError(LeakLockError):
    """Untrusted input was rejected before reaching an external process."""

    def __init__(self, value: Any, reason: str):
        self.value = value
        self.reason = reason
        super().__init__(f"{reason}: {value!r}")


class ExternalToolError(LeakLockError):
    def __init__(self, command: Sequence[str], returncode: int | None, stdout: str = "", stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"{self.command[0] if self.command else 'command'} exited with {returncode}: {stderr.strip() or stdout.strip()}"
        )


class ToolTimeoutError(LeakLockError, TimeoutError):
    def __init__(self, command: Sequence[str], timeout_seconds: float):
        self.command = list(command)
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{' '.join(self.command[:2])} timed out after {timeout_seconds}s")


class ToolUnavailableError(LeakLockError):
    pass


class OperationInProgressError(LeakLockError):
    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"A {operation} is already in progress for this session")


class StaleCommandError(LeakLockError):
    """The prepared command no longer matches the session, or was not confirmed."""


@dataclass(frozen=True)
class StaleRefsWarning:
    """Advisory shown before destructive actions; never blocks execution."""

    last_fetched_at: datetime | None
    stale_after_minutes: int

    @property
    def message(self) -> str:
        if self.last_fetched_at is None:
            return "Remote refs have never been fetched in this session."
        return (
            f"Remote refs were last fetched at {self.last_fetched_at.isoformat()}, "
            f"more than {self.stale_after_minutes} minutes ago."
        )
