"""Centralized Pydantic models, enums, and type aliases for devloop."""

from __future__ import annotations

import sys
from enum import Enum
from pathlib import Path
from typing import ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field

from devloop.constants import (
    BOOTSTRAP_FILENAME,
    DEFAULT_BUILD_NAME,
    DEFAULT_IGNORE_DIRS,
    DEFAULT_MODE_ENV_VAR,
    DEFAULT_SOURCE_EXTENSIONS,
    DEFAULT_STOP_TIMEOUT,
    DEVELOPMENT_MODE,
)

BuildMode = Literal["development", "production"]


# === Enums ===


class LifecycleState(str, Enum):
    """Lifecycle of the managed server process."""

    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    EXITING = "exiting"

    @property
    def is_live(self) -> bool:
        return self in (LifecycleState.STARTING, LifecycleState.RUNNING)


class MenuState(str, Enum):
    """Interactive controller state."""

    HIDDEN = "hidden"
    AWAITING_CHOICE = "awaiting_choice"


class MenuChoice(str, Enum):
    """Options offered by the interactive menu."""

    RESTART = "Restart"
    SHOW_STDOUT = "Show stdout"


# === Build Models ===


class CompilationResult(BaseModel):
    """Normalized outcome of one completed build."""

    has_errors: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    @property
    def is_clean(self) -> bool:
        return not self.errors and not self.warnings


class OutputConfig(BaseModel):
    """Where the build writes its artifacts."""

    path: Path
    filename: str = "index.py"
    bootstrap_filename: str = BOOTSTRAP_FILENAME


class ResolveConfig(BaseModel):
    """Which source files take part in a build."""

    extensions: list[str] = Field(default_factory=lambda: list(DEFAULT_SOURCE_EXTENSIONS))
    ignore_dirs: list[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE_DIRS))


class BuildConfig(BaseModel):
    """Configuration handed to a build engine.

    `context` is the directory that is watched and compiled; `entry` must live
    inside it. `build_command` switches from the built-in Python engine to an
    external command.
    """

    name: str = DEFAULT_BUILD_NAME
    mode: BuildMode = "development"
    context: Path
    entry: Path
    output: OutputConfig
    resolve: ResolveConfig = Field(default_factory=ResolveConfig)
    build_command: list[str] | None = None
    hot: bool = True
    is_debug: bool = True

    @property
    def output_entry(self) -> Path:
        """Path of the built entry module."""
        return self.output.path / self.output.filename

    @property
    def bootstrap_entry(self) -> Path:
        """Path of the generated bootstrap that installs the hot runtime."""
        return self.output.path / self.output.bootstrap_filename

    @property
    def spawn_entry(self) -> Path:
        """Entry the supervisor should launch for this build."""
        if self.hot and self.build_command is None:
            return self.bootstrap_entry
        return self.output_entry


# === Supervisor Models ===


class SpawnOptions(BaseModel):
    """How the managed server process is launched."""

    entry: Path
    interpreter: str = Field(default_factory=lambda: sys.executable)
    exec_args: list[str] = Field(default_factory=list)
    cwd: Path | None = None
    mode_env_var: str = DEFAULT_MODE_ENV_VAR
    mode_value: str = DEVELOPMENT_MODE
    dotenv_path: Path | None = None
    port: int | None = None
    stop_timeout: float = DEFAULT_STOP_TIMEOUT

    def command(self) -> list[str]:
        return [self.interpreter, *self.exec_args, str(self.entry)]


class SupervisorEvent(BaseModel):
    """Observable lifecycle event of the managed process."""

    kind: Literal["spawned", "exited"]
    pid: int
    exit_code: int | None = None
    requested: bool = False

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


# === Project Configuration Models ===


class DevLoopSettings(BaseModel):
    """Project settings read from `[tool.devloop]` in pyproject.toml."""

    entry: str | None = None
    output_path: str | None = Field(default=None, alias="output-path")
    build_command: list[str] | None = Field(default=None, alias="build-command")
    interpreter: str | None = None
    mode_env_var: str | None = Field(default=None, alias="mode-env-var")
    port: int | None = None
    hot: bool | None = None
    dotenv: str | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(populate_by_name=True)
