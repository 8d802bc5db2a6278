"""Configuration management for vbox-mcp."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .backends.models import GuestCredentials


class VBoxMcpSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    vms_dir: Path = Field(
        default=Path("~/.vagrant-mcp/vms"), validation_alias="VBOX_MCP_VMS_DIR"
    )
    vagrant_path: str = Field(default="vagrant", validation_alias="VAGRANT_PATH")
    vboxmanage_path: str | None = Field(default=None, validation_alias="VBOXMANAGE_PATH")
    exec_timeout_seconds: float = Field(default=300.0, validation_alias="VBOX_MCP_EXEC_TIMEOUT")
    native_timeout_seconds: float = Field(default=60.0, validation_alias="VBOX_MCP_NATIVE_TIMEOUT")
    upload_timeout_seconds: float = Field(default=600.0, validation_alias="VBOX_MCP_UPLOAD_TIMEOUT")
    guest_username: str = Field(default="vagrant", validation_alias="VBOX_MCP_GUEST_USER")
    guest_password: str = Field(default="vagrant", validation_alias="VBOX_MCP_GUEST_PASSWORD")
    guest_workdir: str = Field(default="/home/vagrant", validation_alias="VBOX_MCP_GUEST_WORKDIR")
    poll_interval_ms: int = Field(default=2000, validation_alias="VBOX_MCP_POLL_INTERVAL_MS")
    wait_timeout_seconds: float = Field(default=600.0, validation_alias="VBOX_MCP_WAIT_TIMEOUT")
    cancel_grace_seconds: float = Field(default=1.0, validation_alias="VBOX_MCP_CANCEL_GRACE")
    log_level: str = Field(default="INFO", validation_alias="VBOX_MCP_LOG_LEVEL")
    journal_path: Path = Field(
        default=Path("~/.vagrant-mcp/journal"), validation_alias="VBOX_MCP_JOURNAL_PATH"
    )
    journal_enabled: bool = Field(default=True, validation_alias="VBOX_MCP_JOURNAL_ENABLED")
    recipe_paths: Annotated[tuple[Path, ...], NoDecode] = Field(default=(), validation_alias="VBOX_MCP_RECIPE_PATHS")
    url_guard_enabled: bool = Field(default=True, validation_alias="VBOX_MCP_URL_GUARD")
    url_guard_timeout: float = Field(default=5.0, validation_alias="VBOX_MCP_URL_GUARD_TIMEOUT")
    min_disk_gb_hard: float = Field(default=2.0, validation_alias="VBOX_MCP_MIN_DISK_GB_HARD")
    min_disk_gb_soft: float = Field(default=5.0, validation_alias="VBOX_MCP_MIN_DISK_GB_SOFT")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "VBOX_MCP_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("vms_dir", "journal_path")
    @classmethod
    def _expand_user(cls, value: Path) -> Path:
        return Path(value).expanduser()

    @field_validator("recipe_paths", mode="before")
    @classmethod
    def _parse_recipe_paths(cls, value):
        if value is None or value == "":
            return ()
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts)
        raise TypeError("VBOX_MCP_RECIPE_PATHS must be a list of paths or a path-separated string")

    @field_validator(
        "exec_timeout_seconds", "native_timeout_seconds", "upload_timeout_seconds", "wait_timeout_seconds"
    )
    @classmethod
    def _validate_timeouts(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator("poll_interval_ms")
    @classmethod
    def _validate_poll_interval(cls, value: int) -> int:
        if value < 10:
            raise ValueError("VBOX_MCP_POLL_INTERVAL_MS must be >= 10")
        return value

    @property
    def guest_credentials(self) -> GuestCredentials:
        return GuestCredentials(self.guest_username, self.guest_password)


@lru_cache(maxsize=1)
def get_settings() -> VBoxMcpSettings:
    """Return cached settings instance."""

    settings = VBoxMcpSettings()
    settings.vms_dir = settings.vms_dir.expanduser().resolve()
    settings.journal_path = settings.journal_path.expanduser().resolve()
    settings.recipe_paths = tuple(path.expanduser().resolve() for path in settings.recipe_paths)
    return settings


__all__ = ["VBoxMcpSettings", "get_settings"]
