"""Centralized logging for `devloop dev` (component loggers, log gating and tagging)."""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import Callable
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, ConfigDict
from rich.console import Console
from rich.text import Text

from devloop.constants import (
    GATE_OWNER_DEFAULT,
    HMR_MARKER,
    SERVER_TAG,
    STREAM_CHUNK_SIZE,
    TAG_SEPARATOR,
)
from devloop.utils import PrefixedLogHandler

LogSink = Callable[[Text], None]


class DevLogComponent(str, Enum):
    """Where a log originated (used for fine-grained filtering)."""

    SUPERVISOR = "supervisor"
    WATCHER = "watcher"
    CONTROLLER = "controller"
    PROCESS_CONTROL = "process_control"
    ENGINE = "engine"


class _DevLogState(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(arbitrary_types_allowed=True)

    configured: bool = False
    verbose: bool = False


_STATE = _DevLogState()


def configure_dev_logging(*, verbose: bool = False, target: Console | None = None) -> None:
    """Configure all dev loggers to print through the rich console."""
    level = logging.DEBUG if verbose else logging.INFO

    for component in DevLogComponent:
        logger = logging.getLogger(f"devloop.dev.{component.value}")
        logger.setLevel(level)
        logger.handlers.clear()
        handler = PrefixedLogHandler("[devloop]", "magenta", target=target)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.propagate = False

    # watchfiles reports every raw filesystem event at DEBUG
    logging.getLogger("watchfiles").setLevel(logging.WARNING)

    _STATE.verbose = verbose
    _STATE.configured = True


def get_logger(component: DevLogComponent) -> logging.Logger:
    """Get a dev logger for a component (do not call stdlib logging directly)."""
    logger = logging.getLogger(f"devloop.dev.{component.value}")
    if not _STATE.configured:
        if not logger.handlers:
            logger.addHandler(logging.NullHandler())
        logger.propagate = False
    return logger


class LogGate:
    """Pausable filter shared by the child's stdout and stderr.

    The gate is closed while any owner holds it: the build while it runs or
    has errors on screen, the menu while its prompt is shown. Each owner
    only lifts its own hold. While paused every chunk is dropped. Nothing is
    buffered, so output produced while paused is lost for good.
    """

    def __init__(self, paused: bool = False) -> None:
        self._holders: set[str] = {GATE_OWNER_DEFAULT} if paused else set()

    @property
    def paused(self) -> bool:
        return bool(self._holders)

    @property
    def holders(self) -> frozenset[str]:
        return frozenset(self._holders)

    def pause(self, owner: str = GATE_OWNER_DEFAULT) -> None:
        self._holders.add(owner)

    def resume(self, owner: str = GATE_OWNER_DEFAULT) -> None:
        self._holders.discard(owner)

    def filter(self, chunk: bytes) -> bytes | None:
        if self.paused:
            return None
        return chunk


class LogTagger:
    """Prefix server output so it can be told apart from devloop's own."""

    def __init__(
        self,
        *,
        marker: str = HMR_MARKER,
        tag: str = SERVER_TAG,
        marker_style: str = "cyan",
        tag_style: str = "blue",
    ) -> None:
        self.marker: str = marker
        self.tag_label: str = tag
        self.marker_style: str = marker_style
        self.tag_style: str = tag_style

    def tag(self, text: str) -> Text:
        if text.startswith(self.marker):
            tagged = Text(text)
            tagged.highlight_words([self.marker], style=self.marker_style)
            return tagged
        return Text.assemble((self.tag_label, self.tag_style), TAG_SEPARATOR, text)


def console_sink(target: Console) -> LogSink:
    """Sink writing tagged chunks to a rich console without extra newlines."""

    def _write(text: Text) -> None:
        target.print(text, end="", soft_wrap=True, highlight=False)

    return _write


async def pipe_stream(
    reader: asyncio.StreamReader,
    gate: LogGate,
    tagger: LogTagger,
    sink: LogSink,
    *,
    chunk_size: int = STREAM_CHUNK_SIZE,
) -> None:
    """Pump a child stream through gate, decoder and tagger into a sink.

    Tagging is chunk-granular: one read is one tagged unit.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            break
        admitted = gate.filter(chunk)
        if admitted is None:
            decoder.reset()
            continue
        text = decoder.decode(admitted)
        if text:
            sink(tagger.tag(text))

    tail = decoder.decode(b"", final=True)
    if tail and not gate.paused:
        sink(tagger.tag(tail))
