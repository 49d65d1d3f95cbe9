import logging
import time
import tomllib
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn
from typer import Exit
from typing_extensions import override

from devloop.models import DevLoopSettings

# Configure console to handle encoding errors gracefully on Windows
console = Console(legacy_windows=False)
err_console = Console(stderr=True, legacy_windows=False)


def format_duration(milliseconds: int) -> str:
    """Human readable build time, `850ms` below a second and `2.31s` above."""
    if milliseconds < 1000:
        return f"{milliseconds}ms"
    return f"{milliseconds / 1000:.2f}s"


@contextmanager
def transient_spinner(description: str, target: Console | None = None) -> Iterator[None]:
    """Show a spinner while the block runs. It leaves nothing on screen."""
    with Progress(
        SpinnerColumn(finished_text=""),
        TextColumn("[progress.description]{task.description}"),
        console=target or console,
        transient=True,
    ) as progress:
        progress.add_task(description, total=None)
        yield


def print_with_prefix(
    prefix: str, text: str, color: str, width: int = 10, target: Console | None = None
):
    """Print text with a colored, timestamped prefix.

    Args:
        prefix: The prefix text to display
        text: The main text to display
        color: The color for the prefix
        width: The width to pad the prefix to (default: 10)
        target: Console to print to (default: stdout console)
    """
    current_time = time.time()
    timestamp = time.strftime("%H:%M:%S", time.localtime(current_time))
    milliseconds = int((current_time % 1) * 1000)
    timestamp_with_ms = f"{timestamp}.{milliseconds:03d}"

    padded_prefix = escape(prefix).ljust(width)

    out = target or console
    for line in text.split("\n"):
        out.print(
            f"[dim]{timestamp_with_ms}[/dim] | [{color}]{padded_prefix}[/] | {escape(line)}",
            highlight=False,
        )


class PrefixedLogHandler(logging.Handler):
    """A logging handler that uses print_with_prefix to output log messages."""

    def __init__(
        self,
        prefix: str,
        color: str,
        width: int = 10,
        target: Console | None = None,
    ):
        super().__init__()
        self.prefix: str = prefix
        self.color: str = color
        self.width: int = width
        self.target: Console | None = target

    @override
    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            color = self.color
            if record.levelno >= logging.ERROR:
                color = "red"
            elif record.levelno >= logging.WARNING:
                color = "yellow"

            print_with_prefix(
                self.prefix, msg, color, width=self.width, target=self.target
            )
        except Exception:
            self.handleError(record)


def ensure_dir(path: Path) -> None:
    """Create directory if it doesn't exist."""
    path.mkdir(parents=True, exist_ok=True)


def read_project_settings(app_dir: Path) -> DevLoopSettings:
    """Read `[tool.devloop]` from the project's pyproject.toml.

    Missing file or section yields default settings. A malformed file is a
    configuration error and stops the CLI.
    """
    pyproject_path = app_dir / "pyproject.toml"
    if not pyproject_path.exists():
        return DevLoopSettings()

    try:
        data = tomllib.loads(pyproject_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        console.print(f"[red]❌ Failed to parse {pyproject_path}: {e}[/red]")
        raise Exit(code=1)

    section = data.get("tool", {}).get("devloop", {})
    try:
        return DevLoopSettings.model_validate(section)
    except ValidationError as e:
        console.print(f"[red]❌ Invalid \\[tool.devloop] settings in {pyproject_path}[/red]")
        console.print(f"[red]{escape(str(e))}[/red]")
        raise Exit(code=1)
