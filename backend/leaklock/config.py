from __future__ import annotations

import os
from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from leaklock.models import DependencyHandling


class ToolSettings(BaseModel):
    timeout_seconds: int = 120
    accepted_exit_codes: list[int] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LEAKLOCK_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    docker_path: str = Field(default=os.environ.get("DOCKER_PATH", "docker"))
    git_path: str = Field(default=os.environ.get("GIT_PATH", "git"))
    java_path: str = Field(default=os.environ.get("JAVA_PATH", "java"))
    scanner_image: str = "ghcr.io/praetorian-inc/noseyparker:latest"
    cleanup_image: str = "alpine:latest"
    bfg_jar_path: str = Field(default=os.environ.get("BFG_JAR_PATH", "/tmp/bfg.jar"))
    scan_mount: str = "/scan"
    datastore_mount: str = "/datastore"
    datastore_prefix: str = ".noseyparker-temp"
    replacements_file_name: str = ".leaklock-replacements.txt"
    push_remote: str = "origin"
    dependency_handling: DependencyHandling = Field(
        default=DependencyHandling.WARNING,
        description="How findings in dependency directories are reported: warning, exclude or include",
    )
    stale_after_minutes: int = 15
    max_secret_display_length: int = 50
    default_replacement: str = "***REMOVED***"
    replacements: dict[str, str] = Field(
        default_factory=lambda: {
            "api_key": "***REMOVED_API_KEY***",
            "password": "***REMOVED_PASSWORD***",
            "private_key": "***REMOVED_PRIVATE_KEY***",
            "token": "***REMOVED_TOKEN***",
            "secret": "***REMOVED_SECRET***",
        }
    )
    tool_settings: dict[str, ToolSettings] = Field(
        default_factory=lambda: {
            "default": ToolSettings(),
            "docker": ToolSettings(timeout_seconds=30),
            "pull": ToolSettings(timeout_seconds=120),
            "datastore": ToolSettings(timeout_seconds=120),
            "cleanup": ToolSettings(timeout_seconds=60),
            # Nosey Parker exits with 2 when it found matches
            "scan": ToolSettings(timeout_seconds=300, accepted_exit_codes=[2]),
            "report": ToolSettings(timeout_seconds=60, accepted_exit_codes=[2]),
            "git": ToolSettings(timeout_seconds=120),
            "rewrite": ToolSettings(timeout_seconds=3600),
        }
    )

    def get_tool_config(self, tool: str) -> ToolSettings:
        base = self.tool_settings.get("default", ToolSettings())
        specific = self.tool_settings.get(tool)
        if specific:
            merged = {**base.model_dump(), **specific.model_dump(exclude_defaults=True)}
            return ToolSettings(**merged)
        return base


@lru_cache
def get_settings() -> Settings:
    return Settings()
