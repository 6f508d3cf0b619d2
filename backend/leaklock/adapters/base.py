from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Sequence

import structlog

from leaklock.errors import ExternalToolError, ToolTimeoutError, ToolUnavailableError

logger = structlog.get_logger(__name__)


@dataclass
class ToolResult:
    success: bool
    output: str
    error: str | None = None
    return_code: int | None = None
    command: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_seconds: float | None = None
    failure_reason: str | None = None
    timeout_seconds: float | None = None

    @property
    def combined_output(self) -> str:
        return "\n".join(part for part in (self.output, self.error) if part)

    def raise_for_status(self) -> "ToolResult":
        if self.success:
            return self
        if self.failure_reason == "timeout":
            raise ToolTimeoutError(self.command, self.timeout_seconds or 0)
        if self.failure_reason == "crash":
            raise ToolUnavailableError(self.error or f"Could not start {self.command[0]}")
        raise ExternalToolError(self.command, self.return_code, self.output, self.error or "")


def _decode(data: bytes | None) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


async def run_command(
    cmd: Sequence[str],
    timeout: float = 120,
    env: dict[str, str] | None = None,
    workdir: str | None = None,
    accepted_exit_codes: Iterable[int] = (),
) -> ToolResult:
    """Run ``cmd`` without a shell and capture its output.

    Exit code 0 and every code in ``accepted_exit_codes`` count as success.
    The process is killed once ``timeout`` seconds have passed.
    """
    command: List[str] = list(cmd)
    accepted = {0, *accepted_exit_codes}
    environment = os.environ.copy()
    environment.update(env or {})

    logger.info("process.run", command=command, workdir=workdir, timeout_seconds=timeout)
    started_at = datetime.utcnow()
    start = time.perf_counter()
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=workdir,
            env=environment,
        )
    except OSError as exc:
        logger.warning("process.crash", command=command, error=str(exc))
        return ToolResult(
            success=False,
            output="",
            error=str(exc),
            command=command,
            started_at=started_at,
            finished_at=datetime.utcnow(),
            duration_seconds=time.perf_counter() - start,
            failure_reason="crash",
        )

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("process.timeout", command=command, timeout_seconds=timeout)
        return ToolResult(
            success=False,
            output="",
            error="timeout",
            command=command,
            started_at=started_at,
            finished_at=datetime.utcnow(),
            duration_seconds=time.perf_counter() - start,
            failure_reason="timeout",
            timeout_seconds=timeout,
        )

    duration = time.perf_counter() - start
    success = proc.returncode in accepted
    logger.info(
        "process.finished",
        command=command[:2],
        returncode=proc.returncode,
        duration_seconds=duration,
    )
    return ToolResult(
        success=success,
        output=_decode(stdout),
        error=_decode(stderr) or None,
        return_code=proc.returncode,
        command=command,
        started_at=started_at,
        finished_at=datetime.utcnow(),
        duration_seconds=duration,
        failure_reason=None if success else "non-zero-exit",
        timeout_seconds=timeout,
    )


async def detect_tool_version(binary: str, timeout: int = 10) -> str | None:
    result = await run_command([binary, "--version"], timeout=timeout)
    output = (result.output or result.error or "").strip()
    if not result.success:
        return None
    return output.splitlines()[0] if output else None
