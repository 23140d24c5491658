"""Project configuration management.

Handles loading and validating `.phaselauncher/config.json`:
    - JSON config file in the project's launcher directory
    - Environment variables (PLAUNCH_* prefix, `__` for nesting)
    - Default values

Key components:
    - LauncherConfig: Main configuration model
    - ProjectPaths: Locations of the launcher's documents
    - load_config(): Safe config loading with fallback
    - ConfigLoadResult: Metadata about config source
    - PRESETS: Config documents written by `plaunch init`
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from phaselauncher.core.result import ConfigError

LAUNCHER_DIRNAME = ".phaselauncher"
DEFAULT_ERROR_PATTERN = r"(?i)\b(error|failed|failure)\b"


@dataclass(frozen=True)
class ProjectPaths:
    """Filesystem layout of a project's launcher metadata."""

    root: Path

    @property
    def launcher_dir(self) -> Path:
        return self.root / LAUNCHER_DIRNAME

    @property
    def config_file(self) -> Path:
        return self.launcher_dir / "config.json"

    @property
    def plan_file(self) -> Path:
        return self.launcher_dir / "todos.json"

    @property
    def worktree_state_file(self) -> Path:
        return self.launcher_dir / "worktree_state.json"

    @property
    def prompts_dir(self) -> Path:
        return self.launcher_dir / "prompts"


# -----------------------------------------------------------------------------
# Sub-configuration Models
# -----------------------------------------------------------------------------


class ValidationCommand(BaseModel):
    """A command run by the CTO validation cycle."""

    command: str
    description: str = ""
    error_pattern: str = Field(
        default=DEFAULT_ERROR_PATTERN,
        description="Regex counting error lines in the output of a failing run.",
    )

    @field_validator("error_pattern")
    @classmethod
    def compile_pattern(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as exc:
            raise ValueError(f"invalid error_pattern: {exc}") from exc
        return v


class CtoConfig(BaseModel):
    """Quality gate settings."""

    validation_commands: list[ValidationCommand] = Field(default_factory=list)
    few_errors_max: int = Field(
        default=5, ge=0, description="Largest failure count fixed in place by the CTO."
    )
    max_remediation_depth: int = Field(
        default=3, ge=0, description="Longest chain of remediation phases before halting."
    )
    command_timeout: float = Field(
        default=1800.0, gt=0, description="Seconds before a validation command is killed."
    )
    validation_timeout: float = Field(
        default=7200.0,
        gt=0,
        description="Seconds after which an unfinished validation claim may be retaken.",
    )


class WorktreeConfig(BaseModel):
    """Worktree isolation settings. Immutable for a run."""

    enabled: bool = False
    naming_pattern: str = Field(default="phase-{id}-{timestamp}")
    max_worktrees: int = Field(default=5, ge=1)
    base_branch: str = "main"
    auto_cleanup: bool = False
    root: Path | None = Field(
        default=None,
        description="Directory holding worktrees (default: next to the main repository).",
    )

    @field_validator("naming_pattern")
    @classmethod
    def require_id_placeholder(cls, v: str) -> str:
        if "{id}" not in v:
            raise ValueError("naming_pattern must contain the {id} placeholder")
        return v


class AgentConfig(BaseModel):
    """How agent processes are started."""

    command: list[str] = Field(
        default_factory=lambda: ["claude", "--dangerously-skip-permissions"],
        description="Executable and arguments; the prompt is fed on stdin.",
    )
    before_stop_commands: list[str] = Field(
        default_factory=list, description="Commands every agent runs before finishing."
    )


class StorageConfig(BaseModel):
    lock_timeout: float = Field(default=30.0, gt=0)


@dataclass
class ConfigLoadResult:
    path: Path
    file_loaded: bool
    env_overrides: set[str]
    error: str | None = None


class LauncherConfig(BaseSettings):
    """Project-wide configuration with nested sub-configs."""

    model_config = SettingsConfigDict(
        env_prefix="PLAUNCH_",
        env_nested_delimiter="__",
        extra="ignore",
        frozen=True,
    )

    name: str = "Project"
    log_level: str = "INFO"
    agent: AgentConfig = Field(default_factory=AgentConfig)
    cto: CtoConfig = Field(default_factory=CtoConfig)
    worktree: WorktreeConfig = Field(default_factory=WorktreeConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

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


PRESETS: dict[str, dict[str, Any]] = {
    "empty": {
        "name": "Project",
        "agent": {"before_stop_commands": []},
        "cto": {"validation_commands": [], "few_errors_max": 5},
    },
    "lamdera": {
        "name": "Lamdera Project",
        "agent": {"before_stop_commands": []},
        "cto": {
            "validation_commands": [
                {
                    "command": "lamdera make src/Frontend.elm src/Backend.elm",
                    "description": "Compile Lamdera project",
                },
                {
                    "command": "elm-test-rs --compiler /opt/homebrew/bin/lamdera",
                    "description": "Run tests with Lamdera compiler",
                },
            ],
            "few_errors_max": 5,
        },
    },
}


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Syntax error in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config root in {path} must be a mapping.")

    return data


def _detect_env_overrides(env_vars: Mapping[str, str]) -> set[str]:
    """Detect which nested fields are overridden by PLAUNCH_<GROUP>__<FIELD> variables."""
    prefix = LauncherConfig.model_config.get("env_prefix", "")
    delimiter = LauncherConfig.model_config.get("env_nested_delimiter", "__")
    overrides: set[str] = set()

    nested_models: dict[str, type[BaseModel]] = {
        "agent": AgentConfig,
        "cto": CtoConfig,
        "worktree": WorktreeConfig,
        "storage": StorageConfig,
    }

    for group_name, model_cls in nested_models.items():
        for field in model_cls.model_fields:
            env_key = f"{prefix}{group_name}{delimiter}{field}".upper()
            if env_key in env_vars:
                overrides.add(f"{group_name}.{field}")

    return overrides


def load_config(project_root: Path) -> tuple[LauncherConfig, ConfigLoadResult]:
    """
    Load configuration with Safe Mode fallback.
    If the file is invalid, returns default config + error message.
    """
    resolved_path = ProjectPaths(project_root).config_file
    env_overrides = _detect_env_overrides(os.environ)

    error: str | None = None
    file_loaded = False
    file_data: dict[str, Any] = {}

    try:
        file_data = _read_config_file(resolved_path)
        file_loaded = resolved_path.exists()
    except ConfigError as exc:
        error = str(exc)

    try:
        config = LauncherConfig(**file_data)
    except ValidationError as exc:
        error = str(exc)
        try:
            config = LauncherConfig()
        except ValidationError:
            # The environment itself is invalid; fall back to pure defaults.
            config = LauncherConfig.model_construct()

    return config, ConfigLoadResult(
        path=resolved_path,
        file_loaded=file_loaded,
        env_overrides=env_overrides,
        error=error,
    )


def write_preset(path: Path, preset: str) -> None:
    """Write a preset config document, refusing unknown preset names."""
    if preset not in PRESETS:
        raise ConfigError(
            f"Unknown preset '{preset}'", context={"available": ", ".join(sorted(PRESETS))}
        )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(PRESETS[preset], indent=2) + "\n", encoding="utf-8")
