from __future__ import annotations

import os
import shutil

import structlog

from leaklock.adapters.base import ToolResult, detect_tool_version, run_command
from leaklock.config import get_settings
from leaklock.errors import ToolUnavailableError
from leaklock.security import sanitize_resource_name

logger = structlog.get_logger(__name__)

settings = get_settings()


def _volume(host_path: str, container_path: str) -> str:
    return f"{host_path}:{container_path}"


async def check_docker() -> str:
    """Return the docker version string; raise when the CLI or the daemon is unavailable."""
    config = settings.get_tool_config("docker")
    version = await detect_tool_version(settings.docker_path, timeout=config.timeout_seconds)
    if version is None:
        raise ToolUnavailableError("Docker is not installed or not in PATH")
    daemon = await run_command([settings.docker_path, "info"], timeout=config.timeout_seconds, env=config.env)
    if not daemon.success:
        raise ToolUnavailableError("Docker daemon is not running")
    return version


async def pull_image() -> bool:
    config = settings.get_tool_config("pull")
    result = await run_command(
        [settings.docker_path, "pull", settings.scanner_image],
        timeout=config.timeout_seconds,
        env=config.env,
    )
    if not result.success:
        # a previously pulled image is still usable
        logger.warning("noseyparker.pull_failed", image=settings.scanner_image, reason=result.failure_reason)
    return result.success


async def init_datastore(datastore_path: str) -> ToolResult:
    config = settings.get_tool_config("datastore")
    os.makedirs(datastore_path, exist_ok=True)
    cmd = [
        settings.docker_path, "run", "--rm",
        "-v", _volume(datastore_path, settings.datastore_mount),
        settings.scanner_image,
        "datastore", "init", "--datastore", settings.datastore_mount,
    ]
    result = await run_command(cmd, timeout=config.timeout_seconds, env=config.env)
    return result.raise_for_status()


async def run_scan(scan_root: str, datastore_path: str) -> ToolResult:
    config = settings.get_tool_config("scan")
    cmd = [
        settings.docker_path, "run", "--rm",
        "-v", _volume(scan_root, settings.scan_mount),
        "-v", _volume(datastore_path, settings.datastore_mount),
        settings.scanner_image,
        "scan", "--datastore", settings.datastore_mount,
        "--git-history", "full",
        settings.scan_mount,
    ]
    result = await run_command(
        cmd,
        timeout=config.timeout_seconds,
        env=config.env,
        accepted_exit_codes=config.accepted_exit_codes,
    )
    return result.raise_for_status()


async def run_report(datastore_path: str) -> ToolResult:
    """Run the JSON report; the caller decides how to treat a failed report."""
    config = settings.get_tool_config("report")
    cmd = [
        settings.docker_path, "run", "--rm",
        "-v", _volume(datastore_path, settings.datastore_mount),
        settings.scanner_image,
        "report", "--datastore", settings.datastore_mount,
        "--format", "json",
    ]
    result = await run_command(
        cmd,
        timeout=config.timeout_seconds,
        env=config.env,
        accepted_exit_codes=config.accepted_exit_codes,
    )
    if result.failure_reason == "timeout":
        result.raise_for_status()
    return result


async def remove_datastore(datastore_path: str) -> bool:
    """Delete the datastore, falling back to a root container for files owned by docker."""
    if not os.path.exists(datastore_path):
        return True
    try:
        shutil.rmtree(datastore_path)
        return True
    except OSError as exc:
        logger.warning("noseyparker.rmtree_failed", datastore=datastore_path, error=str(exc))

    parent = os.path.dirname(datastore_path)
    name = sanitize_resource_name(os.path.basename(datastore_path))
    cmd = [
        settings.docker_path, "run", "--rm",
        "--user", "root",
        "-v", _volume(parent, "/workspace"),
        settings.cleanup_image,
        "rm", "-rf", f"/workspace/{name}",
    ]
    config = settings.get_tool_config("cleanup")
    result = await run_command(cmd, timeout=config.timeout_seconds, env=config.env)
    return result.success and not os.path.exists(datastore_path)
