"""fersk configuration using pydantic-settings.

Settings are read, in decreasing precedence, from explicit overrides (the
command line), environment variables with the FERSK_ prefix, a TOML config
file in the user's config directory, and the defaults below.

The config file location is resolved with platformdirs, e.g.
~/.config/fersk/config.toml on Linux.
"""

import errno
import logging
from pathlib import Path
from typing import Any, Optional, Tuple, Type

import platformdirs
import structlog
from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from fersk.provisioner.workspace import SnapshotMode, WorkspaceConfig
from fersk.runner.command import DEFAULT_TERMINATION_GRACE_SECONDS, RunnerConfig

logger = structlog.get_logger(__name__)

APP_NAME = "fersk"
CONFIG_FILENAME = "config.toml"
LOG_FORMATS = ("console", "json")

DEFAULT_TOML = """\
# fersk configuration
#
# Every setting can also be given as an environment variable with the
# FERSK_ prefix, e.g. FERSK_WORK_PATH=/tmp/fersk.

# Directory under which disposable workspaces are created.
# work_path = "{work_path}"

# "committed" copies only the checked-out commit. "working-tree" also
# carries over staged and unstaged changes to tracked files.
snapshot_mode = "committed"

# Check out submodules inside the workspace.
submodules = true

# git executable used for cloning.
git_path = "git"

# Suppress git progress output while provisioning.
quiet_git = true

# Stop the command after this many seconds. Unset waits indefinitely.
# command_timeout_seconds = 3600

# Seconds between SIGTERM and SIGKILL when a command has to be stopped.
termination_grace_seconds = {grace}

# Log level and format ("console" or "json"). Logs go to stderr.
log_level = "INFO"
log_format = "console"
"""


def default_config_dir() -> Path:
    return platformdirs.user_config_path(APP_NAME)


def default_config_path() -> Path:
    return default_config_dir() / CONFIG_FILENAME


def default_work_path() -> Path:
    return platformdirs.user_cache_path(APP_NAME) / "workspaces"


class FerskSettings(BaseSettings):
    """fersk configuration.

    All environment variables are prefixed with FERSK_ (e.g. FERSK_WORK_PATH).
    """

    model_config = SettingsConfigDict(
        env_prefix="FERSK_",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Workspace Configuration
    # -------------------------------------------------------------------------
    # Root directory for disposable workspaces
    work_path: Path = Field(default_factory=default_work_path)

    # Whether uncommitted tracked changes are carried into the workspace
    snapshot_mode: SnapshotMode = SnapshotMode.COMMITTED

    # Check out submodules recursively
    submodules: bool = True

    # -------------------------------------------------------------------------
    # Git Configuration
    # -------------------------------------------------------------------------
    git_path: str = "git"

    quiet_git: bool = True

    # -------------------------------------------------------------------------
    # Command Configuration
    # -------------------------------------------------------------------------
    # None waits for the command indefinitely
    command_timeout_seconds: Optional[int] = None

    termination_grace_seconds: float = DEFAULT_TERMINATION_GRACE_SECONDS

    # -------------------------------------------------------------------------
    # Logging Configuration
    # -------------------------------------------------------------------------
    log_level: str = "INFO"

    log_format: str = "console"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls),
        )

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("work_path")
    @classmethod
    def validate_work_path(cls, v: Path) -> Path:
        """Expand ~ and require an absolute path."""
        path = Path(v).expanduser()
        if not path.is_absolute():
            raise ValueError("work_path must be an absolute path")
        return path

    @field_validator("git_path")
    @classmethod
    def validate_git_path(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("git_path cannot be empty")
        return v

    @field_validator("command_timeout_seconds")
    @classmethod
    def validate_command_timeout(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("command_timeout_seconds must be at least 1")
        return v

    @field_validator("termination_grace_seconds")
    @classmethod
    def validate_termination_grace(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("termination_grace_seconds must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"log_level must be a logging level name, got {v!r}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        fmt = v.strip().lower()
        if fmt not in LOG_FORMATS:
            raise ValueError(f"log_format must be one of {', '.join(LOG_FORMATS)}")
        return fmt

    def workspace_config(self) -> WorkspaceConfig:
        return WorkspaceConfig(
            base_path=self.work_path,
            snapshot_mode=self.snapshot_mode,
            submodules=self.submodules,
        )

    def runner_config(self) -> RunnerConfig:
        return RunnerConfig(
            timeout_seconds=self.command_timeout_seconds,
            termination_grace_seconds=self.termination_grace_seconds,
        )


def get_settings(config_file: Optional[Path] = None, **overrides: Any) -> FerskSettings:
    """Load settings from overrides, environment and a TOML file.

    Args:
        config_file: TOML file to read. Defaults to the platform config
            location. A missing file is treated as empty.
        **overrides: Explicit values taking precedence over every source.
            None values are ignored.

    Returns:
        FerskSettings: Validated settings.

    Raises:
        pydantic.ValidationError: If any value is invalid.
    """
    toml_file = Path(config_file) if config_file else default_config_path()

    class FileSettings(FerskSettings):
        model_config = SettingsConfigDict(toml_file=toml_file)

    explicit = {key: value for key, value in overrides.items() if value is not None}
    return FileSettings(**explicit)


def write_default_config(path: Optional[Path] = None, force: bool = False) -> Path:
    """Write the commented default configuration file.

    Args:
        path: Destination file. Defaults to the platform config location.
        force: Overwrite an existing file.

    Returns:
        The path written to.

    Raises:
        FileExistsError: If the file exists and force is False.
        OSError: If the file cannot be written.
    """
    config_path = Path(path) if path else default_config_path()

    if config_path.exists() and not force:
        raise FileExistsError(errno.EEXIST, "Config file already exists", str(config_path))

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        DEFAULT_TOML.format(
            work_path=default_work_path().as_posix(),
            grace=DEFAULT_TERMINATION_GRACE_SECONDS,
        ),
        encoding="utf-8",
    )

    logger.info("Wrote default configuration", path=str(config_path))
    return config_path
