"""Incremental build engines driven by watchfiles.

An engine owns one `BuildConfig`, exposes two hook points (`watch_run` and
`done`) and reports every completed build to a watch callback as
`(error, stats)`. Two engines ship with devloop:

- `PythonBuildEngine` compiles changed Python sources, copies the ones that
  compile into the output directory and writes a bootstrap entry that installs
  the hot update runtime before running the built entry.
- `CommandBuildEngine` delegates each build to an external command and parses
  its output for error and warning lines.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import os
import re
import shutil
import time
import warnings
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterator, Mapping
from pathlib import Path
from typing import Any

import watchfiles
from pydantic import BaseModel, Field, ValidationError

from devloop.cli.dev.logging import DevLogComponent, get_logger
from devloop.models import BuildConfig
from devloop.utils import ensure_dir

logger = get_logger(DevLogComponent.ENGINE)

WatchCallback = Callable[
    [BaseException | None, "BuildStats | None"], Awaitable[None] | None
]

_ERROR_LINE = re.compile(r"\berror\b", re.IGNORECASE)
_WARNING_LINE = re.compile(r"\bwarn(ing)?\b", re.IGNORECASE)

BOOTSTRAP_TEMPLATE = '''\
# Generated by devloop. Do not edit.
import runpy
import sys
{debug}
from devloop import hot

hot.install()
sys.path.insert(0, {output_dir!r})
sys.argv[0] = {entry!r}
runpy.run_path({entry!r}, run_name="__main__")
'''


class BuildConfigError(ValueError):
    """The build configuration cannot be used to create an engine."""


class Hook:
    """A named list of callbacks invoked in registration order."""

    def __init__(self, name: str) -> None:
        self.name: str = name
        self._taps: list[tuple[str, Callable[..., None]]] = []

    def tap(self, name: str, fn: Callable[..., None]) -> None:
        self._taps.append((name, fn))

    def call(self, *args: Any) -> None:
        for _, fn in self._taps:
            fn(*args)


class BuildHooks:
    """Hook points exposed by every engine."""

    def __init__(self) -> None:
        self.watch_run: Hook = Hook("watch_run")
        self.done: Hook = Hook("done")


class BuildStats(BaseModel):
    """Outcome of a single build run."""

    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    start_time: float
    end_time: float
    changed: list[str] = Field(default_factory=list)

    def has_errors(self) -> bool:
        return bool(self.errors)

    def has_warnings(self) -> bool:
        return bool(self.warnings)

    def to_json(self) -> dict[str, Any]:
        """JSON-serializable report of the build."""
        return {
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "time": int((self.end_time - self.start_time) * 1000),
            "changed": list(self.changed),
        }


class Watching:
    """Handle for a running watch loop."""

    def __init__(
        self, task: asyncio.Task[None], stop_event: asyncio.Event | None = None
    ) -> None:
        self.task: asyncio.Task[None] = task
        self._stop_event: asyncio.Event | None = stop_event

    @property
    def closed(self) -> bool:
        return self.task.done()

    def add_done_callback(self, fn: Callable[[asyncio.Task[None]], None]) -> None:
        self.task.add_done_callback(fn)

    def close(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if not self.task.done():
            self.task.cancel()

    async def wait_closed(self) -> None:
        """Wait for the loop to finish. Its outcome is left to done callbacks."""
        await asyncio.wait([self.task])


class BuildEngine(ABC):
    """Base class for watch-mode engines."""

    def __init__(self, config: BuildConfig) -> None:
        self.config: BuildConfig = config
        self.hooks: BuildHooks = BuildHooks()
        self._validate()

    def _validate(self) -> None:
        if not self.config.context.is_dir():
            raise BuildConfigError(
                f"Build context {self.config.context} is not a directory"
            )
        if not self.config.entry.is_file():
            raise BuildConfigError(f"Entry module {self.config.entry} does not exist")

    @abstractmethod
    async def compile(self, changed: set[Path]) -> BuildStats:
        """Run one build. An empty `changed` set means a full build."""

    @abstractmethod
    def watch_filter(self) -> watchfiles.BaseFilter:
        """Filter selecting the file changes that trigger a rebuild."""

    def watch(self, callback: WatchCallback) -> Watching:
        """Build now and again on every batch of source changes."""
        stop_event = asyncio.Event()
        task = asyncio.create_task(
            self._watch_loop(callback, stop_event),
            name=f"devloop-watch-{self.config.name}",
        )
        return Watching(task, stop_event)

    async def _watch_loop(
        self, callback: WatchCallback, stop_event: asyncio.Event
    ) -> None:
        await self._run(set(), callback)
        async for changes in watchfiles.awatch(
            self.config.context,
            watch_filter=self.watch_filter(),
            stop_event=stop_event,
        ):
            changed = {Path(path) for _, path in changes}
            logger.debug(f"Detected changes in {len(changed)} file(s)")
            await self._run(changed, callback)

    async def _run(self, changed: set[Path], callback: WatchCallback) -> None:
        self.hooks.watch_run.call()
        try:
            stats = await self.compile(changed)
        except Exception as e:
            logger.debug(f"Build run failed: {e!r}")
            await _invoke(callback, e, None)
            return
        self.hooks.done.call(stats)
        await _invoke(callback, None, stats)


async def _invoke(
    callback: WatchCallback, error: BaseException | None, stats: BuildStats | None
) -> None:
    outcome = callback(error, stats)
    if inspect.isawaitable(outcome):
        await outcome


class PythonBuildEngine(BuildEngine):
    """Compile-checks Python sources and mirrors them into the output directory."""

    def __init__(self, config: BuildConfig) -> None:
        super().__init__(config)
        self._file_errors: dict[Path, list[str]] = {}
        self._file_warnings: dict[Path, list[str]] = {}
        self._built_once: bool = False

    def _validate(self) -> None:
        super()._validate()
        try:
            self.config.entry.relative_to(self.config.context)
        except ValueError:
            raise BuildConfigError(
                f"Entry {self.config.entry} is outside the build context {self.config.context}"
            )
        if self.config.output.path.resolve() == self.config.context.resolve():
            raise BuildConfigError("Output path must differ from the build context")

    def watch_filter(self) -> watchfiles.BaseFilter:
        return watchfiles.PythonFilter(
            ignore_paths=(self.config.output.path,),
            extra_extensions=tuple(
                ext for ext in self.config.resolve.extensions if ext not in (".py", ".pyx", ".pyd")
            ),
        )

    async def compile(self, changed: set[Path]) -> BuildStats:
        return await asyncio.to_thread(self._compile_sync, changed)

    def is_source(self, path: Path) -> bool:
        try:
            rel = path.relative_to(self.config.context)
        except ValueError:
            return False
        output = self.config.output.path
        if path == output or output in path.parents:
            return False
        if any(part in self.config.resolve.ignore_dirs for part in rel.parts[:-1]):
            return False
        return path.suffix in self.config.resolve.extensions

    def iter_sources(self) -> Iterator[Path]:
        ignore_dirs = set(self.config.resolve.ignore_dirs)
        for root, dirs, files in os.walk(self.config.context):
            root_path = Path(root)
            dirs[:] = sorted(
                d
                for d in dirs
                if d not in ignore_dirs and root_path / d != self.config.output.path
            )
            for name in sorted(files):
                path = root_path / name
                if self.is_source(path):
                    yield path

    def _compile_sync(self, changed: set[Path]) -> BuildStats:
        start = time.time()
        if not self._built_once or not changed:
            targets = set(self.iter_sources())
            self._file_errors.clear()
            self._file_warnings.clear()
            self._built_once = True
        else:
            targets = {path for path in changed if self.is_source(path)}

        for path in sorted(targets):
            if not path.exists():
                self._file_errors.pop(path, None)
                self._file_warnings.pop(path, None)
                self._remove_output(path)
                continue
            errors, found_warnings = self._check(path)
            self._file_errors[path] = errors
            self._file_warnings[path] = found_warnings
            if not errors:
                self._emit(path)

        if self.config.hot:
            self._write_bootstrap()

        return BuildStats(
            errors=[e for p in sorted(self._file_errors) for e in self._file_errors[p]],
            warnings=[
                w for p in sorted(self._file_warnings) for w in self._file_warnings[p]
            ],
            start_time=start,
            end_time=time.time(),
            changed=[str(self._relative(p)) for p in sorted(targets)],
        )

    def _relative(self, path: Path) -> Path:
        return path.relative_to(self.config.context)

    def _check(self, path: Path) -> tuple[list[str], list[str]]:
        rel = self._relative(path)
        source = path.read_bytes()

        if path.suffix == ".json":
            try:
                json.loads(source)
            except ValueError as e:
                return [f"{rel}\nJSONDecodeError: {e}"], []
            return [], []

        if path.suffix != ".py":
            return [], []

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                compile(source, str(path), "exec", dont_inherit=True)
            except SyntaxError as e:
                return [_format_syntax_error(rel, e)], []
            except ValueError as e:
                # null bytes in source on older interpreters
                return [f"{rel}\n{type(e).__name__}: {e}"], []

        return [], [
            f"{rel}:{w.lineno}\n{w.category.__name__}: {w.message}" for w in caught
        ]

    def _emit(self, path: Path) -> None:
        dest = self.config.output.path / self._relative(path)
        ensure_dir(dest.parent)
        shutil.copy2(path, dest)

    def _remove_output(self, path: Path) -> None:
        dest = self.config.output.path / self._relative(path)
        dest.unlink(missing_ok=True)

    def _write_bootstrap(self) -> None:
        debug = "import faulthandler\n\nfaulthandler.enable()\n" if self.config.is_debug else ""
        content = BOOTSTRAP_TEMPLATE.format(
            debug=debug,
            output_dir=str(self.config.output.path),
            entry=str(self.config.output_entry),
        )
        bootstrap = self.config.bootstrap_entry
        ensure_dir(bootstrap.parent)
        if not bootstrap.exists() or bootstrap.read_text(encoding="utf-8") != content:
            bootstrap.write_text(content, encoding="utf-8")


def _format_syntax_error(rel: Path, error: SyntaxError) -> str:
    location = f"{rel}:{error.lineno}:{error.offset}" if error.lineno else str(rel)
    lines = [location, f"{type(error).__name__}: {error.msg}"]
    if error.text:
        lines.append(f"  {error.text.rstrip()}")
        if error.offset:
            lines.append("  " + " " * (error.offset - 1) + "^")
    return "\n".join(lines)


def parse_command_output(output: str, returncode: int) -> tuple[list[str], list[str]]:
    """Split build command output into error and warning messages."""
    lines = [line.rstrip() for line in output.splitlines() if line.strip()]
    found_warnings = [line for line in lines if _WARNING_LINE.search(line)]
    if returncode == 0:
        return [], found_warnings

    errors = [
        line
        for line in lines
        if _ERROR_LINE.search(line) and not _WARNING_LINE.search(line)
    ]
    if not errors:
        errors = [output.strip() or f"Build command exited with code {returncode}"]
    return errors, found_warnings


class CommandBuildEngine(BuildEngine):
    """Runs an external build command for every batch of changes."""

    def _validate(self) -> None:
        super()._validate()
        command = self.config.build_command
        if not command:
            raise BuildConfigError("Build command is empty")
        if shutil.which(command[0]) is None and not Path(command[0]).exists():
            raise BuildConfigError(f"Build command not found: {command[0]}")

    def watch_filter(self) -> watchfiles.BaseFilter:
        return watchfiles.DefaultFilter(
            ignore_dirs=tuple(self.config.resolve.ignore_dirs),
            ignore_paths=(self.config.output.path,),
        )

    async def compile(self, changed: set[Path]) -> BuildStats:
        assert self.config.build_command is not None
        start = time.time()
        process = await asyncio.create_subprocess_exec(
            *self.config.build_command,
            cwd=self.config.context,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        out, _ = await process.communicate()
        returncode = process.returncode if process.returncode is not None else 1
        errors, found_warnings = parse_command_output(
            out.decode("utf-8", errors="replace"), returncode
        )
        return BuildStats(
            errors=errors,
            warnings=found_warnings,
            start_time=start,
            end_time=time.time(),
            changed=sorted(str(p) for p in changed),
        )


def create_engine(config: BuildConfig | Mapping[str, Any]) -> BuildEngine:
    """Validate a build configuration and create the matching engine.

    Raises:
        BuildConfigError: If the configuration is malformed or unusable
    """
    if not isinstance(config, BuildConfig):
        try:
            config = BuildConfig.model_validate(config)
        except ValidationError as e:
            raise BuildConfigError(str(e)) from e

    if config.build_command is not None:
        return CommandBuildEngine(config)
    return PythonBuildEngine(config)
