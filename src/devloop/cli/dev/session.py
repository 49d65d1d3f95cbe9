"""One `devloop dev start` run: watcher, supervisor and controller wired together."""

from __future__ import annotations

import asyncio

from rich.console import Console
from rich.markup import escape

from devloop.cli.dev.controller import ChoiceMenu, InteractiveController, TerminalInput
from devloop.cli.dev.logging import DevLogComponent, LogGate, get_logger
from devloop.cli.dev.status import StatusLine
from devloop.cli.dev.supervisor import ServerSupervisor, SpawnError
from devloop.cli.dev.watcher import CompilationFailed, CompilationWatcher
from devloop.models import BuildConfig, CompilationResult, SpawnOptions
from devloop.utils import console


class DevSession:
    """Owns every collaborator of a dev run and tears them down on exit."""

    def __init__(
        self,
        build_config: BuildConfig,
        spawn_options: SpawnOptions,
        *,
        interactive: bool = True,
        target: Console | None = None,
    ) -> None:
        self.build_config: BuildConfig = build_config
        self.interactive: bool = interactive
        self._console: Console = target or console
        self.gate: LogGate = LogGate()
        self.status: StatusLine = StatusLine(self._console)
        self.supervisor: ServerSupervisor = ServerSupervisor(
            spawn_options, gate=self.gate, on_spawn_error=self._on_spawn_error
        )
        self.watcher: CompilationWatcher = CompilationWatcher(
            gate=self.gate, status=self.status, target=self._console
        )
        self.exit_code: int = 0
        self._closed: asyncio.Event | None = None
        self._logger = get_logger(DevLogComponent.SUPERVISOR)

    def close(self, exit_code: int = 0) -> None:
        if exit_code:
            self.exit_code = exit_code
        if self._closed is not None:
            self._closed.set()

    async def run(self) -> int:
        """Run until interrupted or a hard failure.

        Raises:
            Exit: With code 1 if the build configuration is rejected
        """
        self._closed = asyncio.Event()
        watching = self.watcher.start(self.build_config, self._on_compiled)
        watching.add_done_callback(self._on_watch_stopped)

        try:
            assert self.watcher.first_compilation is not None
            try:
                await self.watcher.first_compilation
            except CompilationFailed:
                self._logger.debug("First compilation failed, waiting for changes")

            if self.interactive:
                await self._run_interactive()
            else:
                await self._closed.wait()
        finally:
            watching.close()
            await watching.wait_closed()
            await self.supervisor.shutdown()
            self.status.close()

        return self.exit_code

    async def _run_interactive(self) -> None:
        assert self._closed is not None
        with TerminalInput() as source:
            controller = InteractiveController(
                supervisor=self.supervisor,
                gate=self.gate,
                status=self.status,
                source=source,
                menu=ChoiceMenu(source, self._console),
                on_interrupt=self.close,
            )
            controller.start()
            try:
                await self._closed.wait()
            finally:
                controller.close()
                menu_task = controller.menu_task
                if menu_task is not None:
                    await asyncio.gather(menu_task, return_exceptions=True)

    async def _on_compiled(self, result: CompilationResult) -> None:
        if result.has_errors:
            return
        try:
            await self.supervisor.signal_hot_update()
        except SpawnError:
            # reported through _on_spawn_error
            return

    def _on_spawn_error(self, error: SpawnError) -> None:
        self._console.print(f"[red]❌ {escape(str(error))}[/red]")
        self.close(exit_code=1)

    def _on_watch_stopped(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._console.print(f"[red]❌ Watching stopped: {escape(str(error))}[/red]")
            self.close(exit_code=1)
