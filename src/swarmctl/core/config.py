"""Application configuration management.

Handles loading and validating configuration from multiple sources:
    - TOML/JSON config files
    - Environment variables (SWARMCTL_* prefix)
    - Default values

Key components:
    - AppConfig: Main configuration model
    - load_config(): Safe config loading with fallback
    - ConfigLoadResult: Metadata about config source
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal
from unittest.mock import patch

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

CONFIG_ENV_VAR = "SWARMCTL_CONFIG"
DEFAULT_CONFIG_NAME = "swarmctl.toml"

TieBreakName = Literal["declaration", "lexicographic", "priority", "touch-set-size"]


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or validated."""


# -----------------------------------------------------------------------------
# Sub-configuration Models
# -----------------------------------------------------------------------------


class OrchestratorConfig(BaseModel):
    """Scheduling and merge-ordering policy."""

    max_parallel: int = Field(
        default=4, ge=1, description="Maximum number of tasks advancing phases concurrently."
    )
    review_retries: int = Field(
        default=1,
        ge=0,
        description="Automatic implement/review cycles after a changes-requested verdict.",
    )
    tie_break: TieBreakName = Field(
        default="declaration",
        description="How conflicting tasks with no explicit dependency are ordered.",
    )
    preserve_failed_workspaces: bool = Field(
        default=True,
        description="Keep workspaces of tasks that failed implementation for inspection.",
    )
    state_dir: Path = Field(
        default=Path(".swarmctl"), description="Directory holding persisted run state."
    )


class RetryConfig(BaseModel):
    """Backoff policy for transient collaborator failures."""

    attempts: int = Field(default=3, ge=1, description="Total attempts per provider call.")
    initial_delay: float = Field(default=0.5, ge=0.0, description="First backoff in seconds.")
    max_delay: float = Field(default=8.0, ge=0.0, description="Upper bound for a single backoff.")
    multiplier: float = Field(default=2.0, ge=1.0, description="Backoff growth factor.")


class WorkspaceConfig(BaseModel):
    """Git worktree workspace provider settings."""

    worktree_root: Path | None = Field(
        default=None, description="Optional location for task worktrees (default: temp dir)."
    )
    baseline_branch: str = Field(default="main", description="Branch every task merges into.")
    branch_prefix: str = Field(default="swarm", description="Prefix for per-task branches.")
    validate_command: str | None = Field(
        default=None, description="Shell command validating the baseline after each merge."
    )
    validate_timeout: float = Field(default=600.0, gt=0, description="Validation timeout (s).")


class PhaseCommandConfig(BaseModel):
    """Shell commands executed by the command phase worker."""

    explore: str | None = Field(default=None, description="Command for the exploring phase.")
    plan: str | None = Field(default=None, description="Command for the planning phase.")
    implement: str | None = Field(default=None, description="Command for the implementing phase.")
    review: str | None = Field(
        default=None, description="Command for the reviewing phase (none approves)."
    )
    timeout: float = Field(default=900.0, gt=0, description="Per-phase command timeout (s).")


class UserConfig(BaseModel):
    """Operator preferences."""

    log_level: str = Field(default="INFO", description="Log level for swarmctl output.")


@dataclass
class ConfigLoadResult:
    path: Path
    file_loaded: bool
    env_overrides: set[str]
    error: str | None = None


def _ensure_directory(path: Path, name: str) -> Path:
    """Ensure directory exists, creating if necessary. Raises on failure."""
    expanded = path.expanduser().resolve()
    try:
        expanded.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ValueError(f"Cannot create {name} directory {expanded}: {exc}") from exc
    return expanded


class AppConfig(BaseSettings):
    """Application-wide configuration with nested sub-configs."""

    model_config = SettingsConfigDict(
        env_prefix="SWARMCTL_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    phases: PhaseCommandConfig = Field(default_factory=PhaseCommandConfig)
    user: UserConfig = Field(default_factory=UserConfig)

    @field_validator("workspace", mode="after")
    @classmethod
    def ensure_worktree_root(cls, v: WorkspaceConfig) -> WorkspaceConfig:
        """Ensure a configured worktree root exists."""
        if v.worktree_root is not None:
            v.worktree_root = _ensure_directory(v.worktree_root, "worktree")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
    ]:
        # Environment variables override config file entries.
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)


_NESTED_MODELS: dict[str, type[BaseModel]] = {
    "orchestrator": OrchestratorConfig,
    "retry": RetryConfig,
    "workspace": WorkspaceConfig,
    "phases": PhaseCommandConfig,
    "user": UserConfig,
}


def _resolve_config_path(config_path: Path | None, env_vars: Mapping[str, str]) -> Path:
    candidate = config_path or env_vars.get(CONFIG_ENV_VAR) or (Path.cwd() / DEFAULT_CONFIG_NAME)
    return Path(candidate).expanduser()


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}

    raw = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    parser = json.loads if suffix == ".json" else tomllib.loads

    try:
        data = parser(raw)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Syntax error in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config root in {path} must be a mapping.")

    return data


def _detect_env_overrides(env_vars: Mapping[str, str]) -> set[str]:
    """Detect which fields are overridden by environment variables.

    For nested models, detects vars like SWARMCTL_ORCHESTRATOR__MAX_PARALLEL.
    """
    prefix = AppConfig.model_config.get("env_prefix", "")
    delimiter = AppConfig.model_config.get("env_nested_delimiter", "__")
    overrides: set[str] = set()

    for group_name, model_cls in _NESTED_MODELS.items():
        for field in model_cls.model_fields:
            env_key = f"{prefix}{group_name}{delimiter}{field}".upper()
            if env_key in env_vars:
                overrides.add(f"{group_name}.{field}")

    return overrides


def load_config(
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[AppConfig, ConfigLoadResult]:
    """
    Load configuration with Safe Mode fallback.
    If the file is invalid, returns default config + error message.
    """
    env_vars: Mapping[str, str] = os.environ if env is None else {**os.environ, **env}
    resolved_path = _resolve_config_path(config_path, env_vars)
    env_overrides = _detect_env_overrides(env_vars)

    error: str | None = None
    file_loaded = False
    file_data: dict[str, Any] = {}

    try:
        file_data = _read_config_file(resolved_path)
        file_loaded = resolved_path.exists()
    except ConfigError as exc:
        error = str(exc)

    context_manager = (
        patch.dict(os.environ, env_vars, clear=False) if env is not None else nullcontext()
    )

    try:
        with context_manager:
            config = AppConfig(**file_data)
    except (ValidationError, ValueError) as exc:
        error = str(exc)
        config = AppConfig()

    load_result = ConfigLoadResult(
        path=resolved_path,
        file_loaded=file_loaded,
        env_overrides=env_overrides,
        error=error,
    )

    return config, load_result


__all__ = [
    "AppConfig",
    "ConfigError",
    "ConfigLoadResult",
    "OrchestratorConfig",
    "PhaseCommandConfig",
    "RetryConfig",
    "TieBreakName",
    "UserConfig",
    "WorkspaceConfig",
    "load_config",
]
