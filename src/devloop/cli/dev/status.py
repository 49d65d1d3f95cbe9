"""Single-line terminal status indicator."""

from rich.console import Console
from rich.status import Status

from devloop.utils import console


class StatusLine:
    """A spinner line showing what devloop is doing.

    `busy` shows a transient activity (a build) on top of the idle text, and
    `settle` falls back to the idle text. `clear` hides the line until
    `restore`; updates made in between are remembered but not drawn.
    """

    def __init__(self, target: Console | None = None, spinner: str = "dots") -> None:
        self._console: Console = target or console
        self._spinner: str = spinner
        self._status: Status | None = None
        self._idle: str | None = None
        self._text: str | None = None
        self._busy: bool = False
        self._suppressed: bool = False

    @property
    def text(self) -> str | None:
        return self._text

    @property
    def visible(self) -> bool:
        return self._status is not None

    @property
    def suppressed(self) -> bool:
        return self._suppressed

    def set_idle(self, text: str | None) -> None:
        self._idle = text
        if not self._busy:
            self._show(text)

    def busy(self, text: str) -> None:
        self._busy = True
        self._show(text)

    def settle(self) -> None:
        self._busy = False
        self._show(self._idle)

    def clear(self) -> None:
        self._suppressed = True
        self._stop()

    def restore(self) -> None:
        self._suppressed = False
        self._show(self._text)

    def succeed(self, text: str) -> None:
        self._finish("[green]✔[/green]", text)

    def fail(self, text: str) -> None:
        self._finish("[red]✖[/red]", text)

    def warn(self, text: str) -> None:
        self._finish("[yellow]⚠[/yellow]", text)

    def close(self) -> None:
        self._stop()

    def _finish(self, symbol: str, text: str) -> None:
        self._console.print(f"{symbol} {text}", highlight=False)
        self.settle()

    def _show(self, text: str | None) -> None:
        self._text = text
        if self._suppressed:
            return
        if text is None:
            self._stop()
            return
        if self._status is None:
            self._status = Status(text, console=self._console, spinner=self._spinner)
            self._status.start()
        else:
            self._status.update(text)

    def _stop(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None
