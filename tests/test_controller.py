"""Tests for the interactive controller, menu and terminal input."""

from __future__ import annotations

import asyncio
import io
import os
import time
from collections.abc import Callable, Sequence
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio
from rich.console import Console

from devloop.cli.dev.controller import (
    ChoiceMenu,
    InteractiveController,
    InterruptRequested,
    Key,
    TerminalInput,
    decode_keys,
)
from devloop.cli.dev.logging import LogGate
from devloop.cli.dev.status import StatusLine
from devloop.cli.dev.supervisor import ServerSupervisor, SpawnError
from devloop.cli.dev.watcher import CompilationWatcher
from devloop.constants import RUNNING_HINT
from devloop.engine import BuildHooks, BuildStats, Watching, WatchCallback
from devloop.models import MenuChoice, MenuState


class FakeSource:
    """Input source double that counts attach/detach calls."""

    def __init__(self, chunks: Sequence[bytes] = ()) -> None:
        self.callback: Callable[[bytes], None] | None = None
        self.attach_count = 0
        self.detach_count = 0
        self._chunks = list(chunks)

    @property
    def attached(self) -> bool:
        return self.callback is not None

    def attach(self, callback: Callable[[bytes], None]) -> None:
        if self.callback is not None:
            raise RuntimeError("Input listener is already attached")
        self.callback = callback
        self.attach_count += 1

    def detach(self) -> None:
        if self.callback is None:
            return
        self.callback = None
        self.detach_count += 1

    async def read(self) -> bytes:
        await asyncio.sleep(0)
        return self._chunks.pop(0)

    def press(self, data: bytes) -> None:
        assert self.callback is not None, "listener is detached"
        self.callback(data)


class FakeMenu:
    def __init__(self) -> None:
        self.asked = 0
        self.answer: asyncio.Future[MenuChoice] = asyncio.get_running_loop().create_future()

    async def ask(
        self, question: str, choices: Sequence[MenuChoice], default: int = 0
    ) -> MenuChoice:
        self.asked += 1
        assert list(choices) == [MenuChoice.RESTART, MenuChoice.SHOW_STDOUT]
        return await self.answer


class Harness:
    def __init__(self) -> None:
        self.source = FakeSource()
        self.menu = FakeMenu()
        self.gate = LogGate()
        self.status = StatusLine(Console(file=io.StringIO()))
        self.supervisor = Mock(spec=ServerSupervisor)
        self.supervisor.restart = AsyncMock()
        self.on_interrupt = Mock()
        self.controller = InteractiveController(
            supervisor=self.supervisor,
            gate=self.gate,
            status=self.status,
            source=self.source,
            menu=self.menu,  # type: ignore[arg-type]
            on_interrupt=self.on_interrupt,
        )

    async def open_menu(self) -> None:
        self.controller.start()
        self.source.press(b"x")
        await asyncio.sleep(0)

    async def finish_menu(self) -> None:
        task = self.controller.menu_task
        assert task is not None
        await asyncio.wait_for(task, timeout=5)


@pytest_asyncio.fixture
async def harness() -> Harness:
    return Harness()


class TestDecodeKeys:
    def test_decodes_navigation_and_control_keys(self) -> None:
        assert decode_keys(b"\x1b[A\x1b[Bkj\r \x03x") == [
            Key.UP,
            Key.DOWN,
            Key.UP,
            Key.DOWN,
            Key.ENTER,
            Key.ENTER,
            Key.INTERRUPT,
            Key.OTHER,
        ]

    def test_application_mode_arrows(self) -> None:
        assert decode_keys(b"\x1bOA\x1bOB") == [Key.UP, Key.DOWN]


class TestPassthrough:
    @pytest.mark.asyncio
    async def test_start_attaches_listener_and_shows_hint(self, harness: Harness) -> None:
        harness.controller.start()
        assert harness.source.attached
        assert harness.status.text == RUNNING_HINT
        assert harness.controller.state is MenuState.HIDDEN

    @pytest.mark.asyncio
    async def test_interrupt_exits_immediately(self, harness: Harness) -> None:
        harness.controller.start()
        harness.source.press(b"\x03")
        harness.on_interrupt.assert_called_once_with()
        await asyncio.sleep(0)
        assert harness.menu.asked == 0
        assert harness.controller.state is MenuState.HIDDEN

    @pytest.mark.asyncio
    async def test_interrupt_wins_over_other_keys_in_same_chunk(self, harness: Harness) -> None:
        harness.controller.start()
        harness.source.press(b"a\x03")
        harness.on_interrupt.assert_called_once_with()
        assert harness.controller.state is MenuState.HIDDEN

    @pytest.mark.asyncio
    async def test_any_key_opens_menu(self, harness: Harness) -> None:
        await harness.open_menu()
        assert harness.controller.state is MenuState.AWAITING_CHOICE
        assert harness.gate.paused
        assert not harness.source.attached
        assert harness.status.suppressed
        assert not harness.status.visible
        assert harness.menu.asked == 1


class TestMenu:
    @pytest.mark.asyncio
    async def test_show_stdout_returns_to_passthrough(self, harness: Harness) -> None:
        await harness.open_menu()
        harness.menu.answer.set_result(MenuChoice.SHOW_STDOUT)
        await harness.finish_menu()

        assert harness.controller.state is MenuState.HIDDEN
        assert not harness.gate.paused
        assert harness.source.attached
        assert harness.source.attach_count == 2
        assert harness.status.text == RUNNING_HINT
        assert not harness.status.suppressed
        harness.supervisor.restart.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_restart_resumes_only_after_new_child_started(self, harness: Harness) -> None:
        released = asyncio.Event()

        async def slow_restart() -> None:
            await released.wait()

        harness.supervisor.restart = AsyncMock(side_effect=slow_restart)
        await harness.open_menu()
        harness.menu.answer.set_result(MenuChoice.RESTART)
        await asyncio.sleep(0.05)

        assert harness.supervisor.restart.await_count == 1
        assert harness.gate.paused
        assert not harness.source.attached

        released.set()
        await harness.finish_menu()
        assert not harness.gate.paused
        assert harness.source.attached
        assert harness.source.attach_count == 2

    @pytest.mark.asyncio
    async def test_input_while_menu_open_is_ignored(self, harness: Harness) -> None:
        await harness.open_menu()
        harness.controller.handle_input(b"y")
        harness.controller.handle_input(b"z")
        await asyncio.sleep(0)
        assert harness.menu.asked == 1

        harness.menu.answer.set_result(MenuChoice.SHOW_STDOUT)
        await harness.finish_menu()
        assert harness.source.attach_count == 2
        assert harness.source.detach_count == 1

    @pytest.mark.asyncio
    async def test_interrupt_inside_menu(self, harness: Harness) -> None:
        harness.on_interrupt.side_effect = harness.controller.close
        await harness.open_menu()
        harness.menu.answer.set_exception(InterruptRequested())
        await harness.finish_menu()

        harness.on_interrupt.assert_called_once_with()
        assert harness.controller.state is MenuState.HIDDEN
        assert not harness.source.attached

    @pytest.mark.asyncio
    async def test_failed_restart_still_returns_to_passthrough(self, harness: Harness) -> None:
        harness.supervisor.restart = AsyncMock(side_effect=SpawnError("no interpreter"))
        await harness.open_menu()
        harness.menu.answer.set_result(MenuChoice.RESTART)
        await harness.finish_menu()

        assert harness.controller.state is MenuState.HIDDEN
        assert harness.source.attached
        assert not harness.gate.paused

    @pytest.mark.asyncio
    async def test_menu_can_be_reopened(self, harness: Harness) -> None:
        await harness.open_menu()
        harness.menu.answer.set_result(MenuChoice.SHOW_STDOUT)
        await harness.finish_menu()

        harness.menu.answer = asyncio.get_running_loop().create_future()
        harness.source.press(b"x")
        await asyncio.sleep(0)
        assert harness.menu.asked == 2
        harness.menu.answer.set_result(MenuChoice.SHOW_STDOUT)
        await harness.finish_menu()
        assert harness.source.attach_count == 3

    @pytest.mark.asyncio
    async def test_failed_restart_is_logged_as_error(self, harness: Harness) -> None:
        harness.supervisor.restart = AsyncMock(side_effect=SpawnError("no interpreter"))
        harness.controller._logger = Mock()
        await harness.open_menu()
        harness.menu.answer.set_result(MenuChoice.RESTART)
        await harness.finish_menu()

        harness.controller._logger.error.assert_called_once()
        assert "no interpreter" in harness.controller._logger.error.call_args[0][0]


class ScriptedEngine:
    """Engine double whose builds are triggered by the test."""

    def __init__(self) -> None:
        self.hooks = BuildHooks()
        self.callback: WatchCallback | None = None
        self.stopped = asyncio.Event()

    def watch(self, callback: WatchCallback) -> Watching:
        self.callback = callback
        return Watching(asyncio.create_task(self.stopped.wait()))

    async def build(self, errors: list[str] | None = None) -> None:
        assert self.callback is not None
        now = time.time()
        stats = BuildStats(errors=errors or [], warnings=[], start_time=now, end_time=now)
        self.hooks.watch_run.call()
        self.hooks.done.call(stats)
        await self.callback(None, stats)  # type: ignore[misc]


class TestMenuAndBuilds:
    @pytest_asyncio.fixture
    async def engine(self, harness: Harness) -> ScriptedEngine:
        return ScriptedEngine()

    def _start_watching(self, harness: Harness, engine: ScriptedEngine) -> Watching:
        watcher = CompilationWatcher(
            gate=harness.gate,
            status=harness.status,
            engine_factory=lambda config: engine,  # type: ignore[arg-type,return-value]
            target=Console(file=io.StringIO()),
        )
        return watcher.start({}, lambda result: None)

    @pytest.mark.asyncio
    async def test_clean_build_keeps_logs_hidden_while_menu_is_open(
        self, harness: Harness, engine: ScriptedEngine
    ) -> None:
        watching = self._start_watching(harness, engine)
        await harness.open_menu()
        assert harness.controller.state is MenuState.AWAITING_CHOICE

        await engine.build()
        assert harness.gate.paused
        assert harness.gate.filter(b"server log") is None

        harness.menu.answer.set_result(MenuChoice.SHOW_STDOUT)
        await harness.finish_menu()
        assert not harness.gate.paused

        watching.close()
        await watching.wait_closed()

    @pytest.mark.asyncio
    async def test_closing_menu_keeps_logs_hidden_after_failed_build(
        self, harness: Harness, engine: ScriptedEngine
    ) -> None:
        watching = self._start_watching(harness, engine)
        await harness.open_menu()

        await engine.build(errors=["boom"])
        harness.menu.answer.set_result(MenuChoice.SHOW_STDOUT)
        await harness.finish_menu()

        assert harness.controller.state is MenuState.HIDDEN
        assert harness.gate.paused

        await engine.build()
        assert not harness.gate.paused

        watching.close()
        await watching.wait_closed()


class TestChoiceMenu:
    @pytest.mark.asyncio
    async def test_enter_selects_default(self) -> None:
        menu = ChoiceMenu(FakeSource([b"\r"]), Console(file=io.StringIO()))
        choice = await menu.ask("What do you want to do?", [MenuChoice.RESTART, MenuChoice.SHOW_STDOUT])
        assert choice is MenuChoice.RESTART

    @pytest.mark.asyncio
    async def test_arrow_moves_selection(self) -> None:
        output = io.StringIO()
        menu = ChoiceMenu(FakeSource([b"\x1b[B", b"\r"]), Console(file=output))
        choice = await menu.ask("What do you want to do?", [MenuChoice.RESTART, MenuChoice.SHOW_STDOUT])
        assert choice is MenuChoice.SHOW_STDOUT
        assert "Show stdout" in output.getvalue()

    @pytest.mark.asyncio
    async def test_selection_wraps_around(self) -> None:
        menu = ChoiceMenu(FakeSource([b"k\r"]), Console(file=io.StringIO()))
        choice = await menu.ask("What do you want to do?", [MenuChoice.RESTART, MenuChoice.SHOW_STDOUT])
        assert choice is MenuChoice.SHOW_STDOUT

    @pytest.mark.asyncio
    async def test_ctrl_c_raises(self) -> None:
        menu = ChoiceMenu(FakeSource([b"\x03"]), Console(file=io.StringIO()))
        with pytest.raises(InterruptRequested):
            await menu.ask("What do you want to do?", [MenuChoice.RESTART, MenuChoice.SHOW_STDOUT])

    @pytest.mark.asyncio
    async def test_closed_input_picks_default(self) -> None:
        menu = ChoiceMenu(FakeSource([b""]), Console(file=io.StringIO()))
        choice = await menu.ask("What do you want to do?", [MenuChoice.RESTART, MenuChoice.SHOW_STDOUT], default=1)
        assert choice is MenuChoice.SHOW_STDOUT


class TestTerminalInput:
    @pytest.mark.asyncio
    async def test_attach_delivers_input_and_refuses_second_listener(self) -> None:
        read_fd, write_fd = os.pipe()
        source = TerminalInput(fd=read_fd)
        received: list[bytes] = []
        try:
            source.attach(received.append)
            with pytest.raises(RuntimeError, match="already attached"):
                source.attach(received.append)

            os.write(write_fd, b"a")
            for _ in range(100):
                if received:
                    break
                await asyncio.sleep(0.01)
            assert received == [b"a"]

            source.detach()
            assert not source.attached
            os.write(write_fd, b"b")
            assert await asyncio.wait_for(source.read(), timeout=5) == b"b"
        finally:
            source.detach()
            os.close(read_fd)
            os.close(write_fd)

    @pytest.mark.asyncio
    async def test_read_while_attached_is_refused(self) -> None:
        read_fd, write_fd = os.pipe()
        source = TerminalInput(fd=read_fd)
        try:
            source.attach(lambda data: None)
            with pytest.raises(RuntimeError):
                await source.read()
        finally:
            source.detach()
            os.close(read_fd)
            os.close(write_fd)
