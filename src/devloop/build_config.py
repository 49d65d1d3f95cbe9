"""Shared build configuration for the server bundle."""

from pathlib import Path

from pydantic import ValidationError

from devloop.constants import (
    DEFAULT_BUILD_NAME,
    DEFAULT_ENTRY,
    DEFAULT_IGNORE_DIRS,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_SOURCE_EXTENSIONS,
)
from devloop.engine import BuildConfigError
from devloop.models import BuildConfig, OutputConfig, ResolveConfig


def create_server_build_config(
    *,
    mode: str = "development",
    entry: str | Path = DEFAULT_ENTRY,
    is_debug: bool = True,
    output_path: str | Path = DEFAULT_OUTPUT_DIR,
    build_command: list[str] | None = None,
    hot: bool = True,
    name: str = DEFAULT_BUILD_NAME,
) -> BuildConfig:
    """Create the build configuration for a server entry module.

    The build context is the directory holding the entry. Relative paths are
    resolved against the current working directory.

    Raises:
        BuildConfigError: If the values do not form a valid configuration
    """
    entry_path = Path(entry).resolve()
    output = Path(output_path).resolve()
    ignore_dirs = list(DEFAULT_IGNORE_DIRS)

    try:
        return BuildConfig(
            name=name,
            mode=mode,  # pyright: ignore[reportArgumentType]
            context=entry_path.parent,
            entry=entry_path,
            output=OutputConfig(path=output, filename=entry_path.name),
            resolve=ResolveConfig(
                extensions=list(DEFAULT_SOURCE_EXTENSIONS), ignore_dirs=ignore_dirs
            ),
            build_command=build_command,
            hot=hot,
            is_debug=is_debug,
        )
    except ValidationError as e:
        raise BuildConfigError(str(e)) from e
