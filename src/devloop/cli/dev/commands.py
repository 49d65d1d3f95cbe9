"""Dev commands for the devloop CLI."""

import asyncio
import shlex
import sys
from pathlib import Path
from typing import Annotated

from typer import Argument, Context, Exit, Option, Typer

from devloop.build_config import create_server_build_config
from devloop.cli.dev.logging import configure_dev_logging
from devloop.cli.dev.session import DevSession
from devloop.cli.dev.status import StatusLine
from devloop.cli.dev.watcher import (
    compilation_result_from_stats,
    render_compilation_result,
    report_config_error,
)
from devloop.constants import DEFAULT_ENTRY, DEFAULT_MODE_ENV_VAR, DEFAULT_OUTPUT_DIR
from devloop.engine import BuildConfigError, BuildStats, create_engine
from devloop.models import BuildConfig, DevLoopSettings, SpawnOptions
from devloop.utils import console, format_duration, read_project_settings, transient_spinner

# Create the dev app (subcommand group)
dev_app = Typer(name="dev", help="Build, run and hot-update a development server")


def _build_summary(stats: BuildStats) -> str:
    duration = format_duration(stats.to_json()["time"])
    if stats.has_errors():
        count = len(stats.errors)
        noun = "error" if count == 1 else "errors"
        return f"[red]💥 Build failed with {count} {noun}[/red] ({duration})"
    return f"🏁 Build finished ({duration})"


def _resolve_build_config(
    settings: DevLoopSettings,
    *,
    entry: Path | None,
    output_path: Path | None,
    build_command: str | None,
    hot: bool | None,
    mode: str,
) -> BuildConfig:
    """Build config from CLI options, then [tool.devloop] settings, then defaults."""
    command = (
        shlex.split(build_command) if build_command is not None else settings.build_command
    )
    try:
        return create_server_build_config(
            mode=mode,
            entry=entry if entry is not None else (settings.entry or DEFAULT_ENTRY),
            is_debug=mode == "development",
            output_path=output_path
            if output_path is not None
            else (settings.output_path or DEFAULT_OUTPUT_DIR),
            build_command=command,
            hot=hot if hot is not None else (settings.hot if settings.hot is not None else True),
        )
    except BuildConfigError as e:
        report_config_error(e)
        raise Exit(code=1)


@dev_app.command(
    name="start",
    help="Watch and build the server, keep it running and hot-update it on every change",
    context_settings={"allow_extra_args": True, "ignore_unknown_options": True},
)
def dev_start(
    ctx: Context,
    entry: Annotated[
        Path | None,
        Argument(help=f"Server entry module. Defaults to [tool.devloop] entry or {DEFAULT_ENTRY}"),
    ] = None,
    output_path: Annotated[
        Path | None, Option("--output-path", "-o", help="Directory for build output")
    ] = None,
    build_command: Annotated[
        str | None,
        Option("--build-command", help="External build command run on every change"),
    ] = None,
    interpreter: Annotated[
        str | None, Option(help="Interpreter used to run the server")
    ] = None,
    port: Annotated[
        int | None,
        Option(help="Port the server listens on; restarts wait until it is released"),
    ] = None,
    mode_env_var: Annotated[
        str | None,
        Option("--mode-env-var", help="Environment variable forced to 'development'"),
    ] = None,
    hot: Annotated[
        bool | None,
        Option("--hot/--no-hot", help="Install the hot update runtime in the server"),
    ] = None,
    interactive: Annotated[
        bool,
        Option("--interactive/--no-interactive", help="Enable the keyboard menu"),
    ] = True,
    verbose: Annotated[
        bool, Option("--verbose", "-v", help="Show debug logs from devloop")
    ] = False,
):
    """Start the development loop. Extra arguments are passed to the interpreter."""
    configure_dev_logging(verbose=verbose)
    app_dir = Path.cwd()
    settings = read_project_settings(app_dir)

    build_config = _resolve_build_config(
        settings,
        entry=entry,
        output_path=output_path,
        build_command=build_command,
        hot=hot,
        mode="development",
    )

    dotenv_path = Path(settings.dotenv) if settings.dotenv else app_dir / ".env"
    spawn_options = SpawnOptions(
        entry=build_config.spawn_entry,
        interpreter=interpreter or settings.interpreter or sys.executable,
        exec_args=list(ctx.args),
        cwd=app_dir,
        mode_env_var=mode_env_var or settings.mode_env_var or DEFAULT_MODE_ENV_VAR,
        dotenv_path=dotenv_path,
        port=port if port is not None else settings.port,
    )

    session = DevSession(
        build_config,
        spawn_options,
        interactive=interactive and sys.stdin.isatty(),
    )
    try:
        exit_code = asyncio.run(session.run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")
        exit_code = 0

    if exit_code:
        raise Exit(code=exit_code)


@dev_app.command(name="build", help="Build the server once and report the result")
def dev_build(
    entry: Annotated[
        Path | None,
        Argument(help=f"Server entry module. Defaults to [tool.devloop] entry or {DEFAULT_ENTRY}"),
    ] = None,
    output_path: Annotated[
        Path | None, Option("--output-path", "-o", help="Directory for build output")
    ] = None,
    build_command: Annotated[
        str | None, Option("--build-command", help="External build command")
    ] = None,
    production: Annotated[
        bool, Option("--production", help="Build without debug helpers")
    ] = False,
    verbose: Annotated[
        bool, Option("--verbose", "-v", help="Show debug logs from devloop")
    ] = False,
):
    """Run a single build with the same message policy as `dev start`."""
    configure_dev_logging(verbose=verbose)
    settings = read_project_settings(Path.cwd())
    build_config = _resolve_build_config(
        settings,
        entry=entry,
        output_path=output_path,
        build_command=build_command,
        hot=None,
        mode="production" if production else "development",
    )

    try:
        engine = create_engine(build_config)
    except BuildConfigError as e:
        report_config_error(e)
        raise Exit(code=1)

    with transient_spinner("🔨 Compiling..."):
        stats = asyncio.run(engine.compile(set()))
    console.print(_build_summary(stats))

    result = compilation_result_from_stats(stats)
    status = StatusLine(console)
    render_compilation_result(result, status)
    status.close()
    if result.has_errors:
        raise Exit(code=1)
