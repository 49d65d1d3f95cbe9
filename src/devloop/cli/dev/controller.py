"""Interactive keyboard control of a running dev session.

In passthrough mode server logs stream to the terminal and every key press
opens a small menu. Ctrl-C always exits right away, menu or not.
"""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import Callable, Sequence
from enum import Enum
from types import TracebackType
from typing import Protocol

from rich.console import Console
from rich.live import Live
from rich.text import Text

from devloop.cli.dev.logging import DevLogComponent, LogGate, get_logger
from devloop.cli.dev.status import StatusLine
from devloop.cli.dev.supervisor import ServerSupervisor, SpawnError
from devloop.constants import GATE_OWNER_MENU, INTERRUPT_SEQUENCE, RUNNING_HINT
from devloop.models import MenuChoice, MenuState
from devloop.utils import console

InputCallback = Callable[[bytes], None]

MENU_QUESTION = "What do you want to do?"
MENU_CHOICES: tuple[MenuChoice, ...] = (MenuChoice.RESTART, MenuChoice.SHOW_STDOUT)


class Key(str, Enum):
    UP = "up"
    DOWN = "down"
    ENTER = "enter"
    INTERRUPT = "interrupt"
    OTHER = "other"


_SEQUENCES: tuple[tuple[bytes, Key], ...] = (
    (b"\x1b[A", Key.UP),
    (b"\x1bOA", Key.UP),
    (b"\x1b[B", Key.DOWN),
    (b"\x1bOB", Key.DOWN),
)

_SINGLE_KEYS: dict[bytes, Key] = {
    INTERRUPT_SEQUENCE: Key.INTERRUPT,
    b"\r": Key.ENTER,
    b"\n": Key.ENTER,
    b" ": Key.ENTER,
    b"k": Key.UP,
    b"K": Key.UP,
    b"j": Key.DOWN,
    b"J": Key.DOWN,
}


def decode_keys(data: bytes) -> list[Key]:
    """Split raw terminal input into key presses."""
    keys: list[Key] = []
    i = 0
    while i < len(data):
        for sequence, key in _SEQUENCES:
            if data.startswith(sequence, i):
                keys.append(key)
                i += len(sequence)
                break
        else:
            keys.append(_SINGLE_KEYS.get(data[i : i + 1], Key.OTHER))
            i += 1
    return keys


class InterruptRequested(Exception):
    """Ctrl-C was pressed while the menu owned the terminal."""


class InputSource(Protocol):
    @property
    def attached(self) -> bool: ...

    def attach(self, callback: InputCallback) -> None: ...

    def detach(self) -> None: ...

    async def read(self) -> bytes: ...


class TerminalInput:
    """Stdin in cbreak mode, with Ctrl-C delivered as input instead of SIGINT.

    Use as a context manager to put the terminal in cbreak mode and restore it
    on exit. `attach` registers the passthrough listener; `read` is used by the
    menu while the listener is detached.
    """

    def __init__(self, fd: int | None = None) -> None:
        self._fd: int = sys.stdin.fileno() if fd is None else fd
        self._saved: list[object] | None = None
        self._callback: InputCallback | None = None
        self._logger = get_logger(DevLogComponent.CONTROLLER)

    @property
    def attached(self) -> bool:
        return self._callback is not None

    def __enter__(self) -> TerminalInput:
        import termios
        import tty

        self._saved = termios.tcgetattr(self._fd)
        tty.setcbreak(self._fd, termios.TCSANOW)
        attrs = termios.tcgetattr(self._fd)
        attrs[3] &= ~termios.ISIG
        termios.tcsetattr(self._fd, termios.TCSANOW, attrs)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        import termios

        self.detach()
        if self._saved is not None:
            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved)
            self._saved = None

    def attach(self, callback: InputCallback) -> None:
        if self._callback is not None:
            raise RuntimeError("Input listener is already attached")
        asyncio.get_running_loop().add_reader(self._fd, self._on_readable)
        self._callback = callback

    def detach(self) -> None:
        if self._callback is None:
            return
        asyncio.get_running_loop().remove_reader(self._fd)
        self._callback = None

    async def read(self) -> bytes:
        if self._callback is not None:
            raise RuntimeError("Cannot read while the input listener is attached")
        loop = asyncio.get_running_loop()
        future: asyncio.Future[bytes] = loop.create_future()

        def _ready() -> None:
            if not future.done():
                future.set_result(os.read(self._fd, 1024))

        loop.add_reader(self._fd, _ready)
        try:
            return await future
        finally:
            loop.remove_reader(self._fd)

    def _on_readable(self) -> None:
        data = os.read(self._fd, 1024)
        callback = self._callback
        if not data:
            self._logger.debug("Stdin closed, interactive input disabled")
            self.detach()
            return
        if callback is not None:
            callback(data)


class ChoiceMenu:
    """Single-choice prompt rendered with a transient rich Live display."""

    def __init__(self, source: InputSource, target: Console | None = None) -> None:
        self._source: InputSource = source
        self._console: Console = target or console

    async def ask(
        self, question: str, choices: Sequence[MenuChoice], default: int = 0
    ) -> MenuChoice:
        """Ask until a choice is confirmed.

        Raises:
            InterruptRequested: If Ctrl-C is pressed
        """
        index = default
        choice: MenuChoice | None = None
        with Live(
            self._render(question, choices, index),
            console=self._console,
            transient=True,
            auto_refresh=False,
        ) as live:
            while choice is None:
                data = await self._source.read()
                if not data:
                    choice = choices[default]
                    break
                for key in decode_keys(data):
                    if key is Key.INTERRUPT:
                        raise InterruptRequested()
                    if key is Key.ENTER:
                        choice = choices[index]
                        break
                    if key is Key.UP:
                        index = (index - 1) % len(choices)
                    elif key is Key.DOWN:
                        index = (index + 1) % len(choices)
                live.update(self._render(question, choices, index), refresh=True)

        self._console.print(
            Text.assemble(("? ", "green"), (question, "bold"), " ", (choice.value, "cyan"))
        )
        return choice

    @staticmethod
    def _render(question: str, choices: Sequence[MenuChoice], index: int) -> Text:
        text = Text.assemble(("? ", "green"), (question, "bold"))
        for i, choice in enumerate(choices):
            if i == index:
                text.append(f"\n❯ {choice.value}", style="cyan")
            else:
                text.append(f"\n  {choice.value}")
        return text


class InteractiveController:
    """Passthrough/menu state machine driven by terminal input."""

    def __init__(
        self,
        *,
        supervisor: ServerSupervisor,
        gate: LogGate,
        status: StatusLine,
        source: InputSource,
        menu: ChoiceMenu,
        on_interrupt: Callable[[], None],
    ) -> None:
        self.supervisor: ServerSupervisor = supervisor
        self.gate: LogGate = gate
        self.status: StatusLine = status
        self.source: InputSource = source
        self.menu: ChoiceMenu = menu
        self._on_interrupt: Callable[[], None] = on_interrupt
        self.state: MenuState = MenuState.HIDDEN
        self._active: bool = False
        self._menu_task: asyncio.Task[None] | None = None
        self._logger = get_logger(DevLogComponent.CONTROLLER)

    @property
    def menu_task(self) -> asyncio.Task[None] | None:
        return self._menu_task

    def start(self) -> None:
        """Enter passthrough mode."""
        if self._active:
            return
        self._active = True
        self.status.set_idle(RUNNING_HINT)
        self.source.attach(self.handle_input)

    def close(self) -> None:
        self._active = False
        self.source.detach()
        task = self._menu_task
        # the menu task itself closes the controller on Ctrl-C
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def handle_input(self, data: bytes) -> None:
        if INTERRUPT_SEQUENCE in data:
            self._logger.debug("Interrupt key received")
            self._on_interrupt()
            return
        if self.state is not MenuState.HIDDEN:
            return
        self._open_menu()

    def _open_menu(self) -> None:
        self.state = MenuState.AWAITING_CHOICE
        self.gate.pause(GATE_OWNER_MENU)
        self.status.clear()
        self.source.detach()
        self._menu_task = asyncio.create_task(self._run_menu(), name="devloop-menu")

    async def _run_menu(self) -> None:
        try:
            choice = await self.menu.ask(MENU_QUESTION, MENU_CHOICES)
            if choice is MenuChoice.RESTART:
                await self.supervisor.restart()
        except InterruptRequested:
            self._on_interrupt()
        except SpawnError as e:
            self._logger.error(f"Restart from menu failed: {e}")
        finally:
            self._close_menu()

    def _close_menu(self) -> None:
        self.state = MenuState.HIDDEN
        self.gate.resume(GATE_OWNER_MENU)
        self.status.restore()
        if self._active:
            self.source.attach(self.handle_input)
