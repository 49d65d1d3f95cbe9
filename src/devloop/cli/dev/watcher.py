"""Watch-mode compilation and build result rendering."""

from __future__ import annotations

import asyncio
import inspect
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

from rich.console import Console
from rich.markup import escape
from typer import Exit

from devloop.cli.dev.logging import DevLogComponent, LogGate, get_logger
from devloop.cli.dev.status import StatusLine
from devloop.constants import GATE_OWNER_BUILD
from devloop.engine import (
    BuildConfigError,
    BuildEngine,
    BuildStats,
    Watching,
    create_engine,
)
from devloop.models import BuildConfig, CompilationResult
from devloop.utils import console

ResultHandler = Callable[[CompilationResult], Awaitable[None] | None]
EngineFactory = Callable[[BuildConfig | Mapping[str, Any]], BuildEngine]

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


class CompilationFailed(Exception):
    """The first compilation finished with errors or could not run."""

    def __init__(self, result: CompilationResult | None, message: str | None = None):
        if message is None and result is not None and result.errors:
            message = result.errors[0]
        super().__init__(message or "Compilation failed")
        self.result: CompilationResult | None = result


def _clean_messages(messages: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    cleaned: list[str] = []
    for message in messages:
        lines = [line.rstrip() for line in _ANSI_ESCAPE.sub("", message).splitlines()]
        text = "\n".join(lines).strip("\n")
        if not text.strip() or text in seen:
            continue
        seen.add(text)
        cleaned.append(text)
    return cleaned


def format_build_messages(stats_json: Mapping[str, Any]) -> tuple[list[str], list[str]]:
    """Turn a build report into display-ready (errors, warnings)."""
    return (
        _clean_messages(stats_json.get("errors", [])),
        _clean_messages(stats_json.get("warnings", [])),
    )


def compilation_result_from_stats(stats: BuildStats) -> CompilationResult:
    errors, warnings = format_build_messages(stats.to_json())
    return CompilationResult(
        has_errors=stats.has_errors(),
        errors=tuple(errors),
        warnings=tuple(warnings),
    )


def messages_to_render(result: CompilationResult) -> list[str]:
    """Messages shown for a result.

    Only the first error is shown since later ones are usually follow-ups of
    it. Warnings are shown only for builds without errors.
    """
    if result.errors:
        return list(result.errors[:1])
    return list(result.warnings)


def render_compilation_result(
    result: CompilationResult, status: StatusLine, target: Console | None = None
) -> None:
    out = target or console
    if result.is_clean:
        status.succeed("Compiled successfully!")
        return

    if result.errors:
        status.fail("Failed to compile.")
    else:
        status.warn("Compiled with warnings.")
    out.print()
    out.print("\n\n".join(messages_to_render(result)), markup=False, highlight=False)
    out.print()


def report_config_error(error: BaseException, target: Console | None = None) -> None:
    out = target or console
    out.print("[red]Failed to compile.[/red]")
    out.print()
    out.print(f"[red]{escape(str(error))}[/red]")


class CompilationWatcher:
    """Runs the build engine in watch mode and reports every result."""

    def __init__(
        self,
        *,
        gate: LogGate,
        status: StatusLine,
        engine_factory: EngineFactory = create_engine,
        target: Console | None = None,
    ) -> None:
        self.gate: LogGate = gate
        self.status: StatusLine = status
        self._engine_factory: EngineFactory = engine_factory
        self._console: Console = target or console
        self.first_compilation: asyncio.Future[CompilationResult] | None = None
        self._logger = get_logger(DevLogComponent.WATCHER)

    def start(
        self, config: BuildConfig | Mapping[str, Any], on_result: ResultHandler
    ) -> Watching:
        """Start watching.

        Raises:
            Exit: With code 1 if the configuration is rejected by the engine
        """
        try:
            engine = self._engine_factory(config)
        except BuildConfigError as e:
            report_config_error(e, self._console)
            raise Exit(code=1)

        self.first_compilation = asyncio.get_running_loop().create_future()
        engine.hooks.watch_run.tap("devloop-start-log", self._on_watch_run)
        engine.hooks.done.tap("devloop-finished-log", self._on_done)

        async def _callback(error: BaseException | None, stats: BuildStats | None) -> None:
            if error is not None or stats is None:
                self._on_fault(error)
                return
            outcome = on_result(compilation_result_from_stats(stats))
            if inspect.isawaitable(outcome):
                await outcome

        watching = engine.watch(_callback)
        watching.add_done_callback(self._on_watch_stopped)
        return watching

    def _on_watch_run(self) -> None:
        self.gate.pause(GATE_OWNER_BUILD)
        self.status.busy("[cyan]Compiling...[/cyan]")

    def _on_done(self, stats: BuildStats) -> None:
        result = compilation_result_from_stats(stats)
        self._logger.debug(f"Build finished in {stats.to_json()['time']}ms")
        render_compilation_result(result, self.status, self._console)
        if not result.has_errors:
            self.gate.resume(GATE_OWNER_BUILD)

        future = self.first_compilation
        if future is not None and not future.done():
            if result.has_errors:
                future.set_exception(CompilationFailed(result))
            else:
                future.set_result(result)

    def _on_fault(self, error: BaseException | None) -> None:
        self.status.fail(f"Build failed: {escape(str(error))}")
        future = self.first_compilation
        if future is not None and not future.done():
            future.set_exception(CompilationFailed(None, str(error)))

    def _on_watch_stopped(self, task: asyncio.Task[None]) -> None:
        future = self.first_compilation
        if future is None or future.done():
            return
        if task.cancelled():
            future.cancel()
        else:
            future.set_exception(CompilationFailed(None, "Watching stopped"))
