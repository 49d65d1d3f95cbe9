"""Tests for the terminal status line."""

import io

from rich.console import Console

from devloop.cli.dev.status import StatusLine


def _status() -> tuple[StatusLine, io.StringIO]:
    output = io.StringIO()
    return StatusLine(Console(file=output, width=100)), output


class TestStatusLine:
    def test_busy_then_settle_returns_to_idle(self) -> None:
        status, _ = _status()
        status.set_idle("Server running")
        assert status.visible
        status.busy("Compiling...")
        assert status.text == "Compiling..."
        status.settle()
        assert status.text == "Server running"
        status.close()

    def test_idle_change_while_busy_is_deferred(self) -> None:
        status, _ = _status()
        status.busy("Compiling...")
        status.set_idle("Server running")
        assert status.text == "Compiling..."
        status.settle()
        assert status.text == "Server running"
        status.close()

    def test_clear_hides_until_restore(self) -> None:
        status, _ = _status()
        status.set_idle("Server running")
        status.clear()
        assert not status.visible
        status.busy("Compiling...")
        assert not status.visible
        status.settle()
        status.restore()
        assert status.visible
        assert status.text == "Server running"
        status.close()

    def test_without_idle_text_line_is_hidden(self) -> None:
        status, _ = _status()
        status.busy("Compiling...")
        status.settle()
        assert not status.visible

    def test_permanent_lines(self) -> None:
        status, output = _status()
        status.succeed("Compiled successfully!")
        status.fail("Failed to compile.")
        status.warn("Compiled with warnings.")
        text = output.getvalue()
        assert "✔ Compiled successfully!" in text
        assert "✖ Failed to compile." in text
        assert "⚠ Compiled with warnings." in text
