"""Lifecycle of the single managed server process.

`ServerSupervisor` owns at most one live child at a time. Every transition
(spawn, hot update, child message, restart, shutdown) runs under one lock, so
concurrent requests queue up in arrival order instead of interleaving.
"""

from __future__ import annotations

import asyncio
import json
import os
import socket
from collections.abc import AsyncIterator, Callable
from typing import Any

from dotenv import dotenv_values

from devloop.cli.dev.logging import (
    DevLogComponent,
    LogGate,
    LogSink,
    LogTagger,
    console_sink,
    get_logger,
    pipe_stream,
)
from devloop.cli.dev.process_control import (
    TrackedProcess,
    find_listeners_for_port,
    stop_process,
    terminate,
    track_process,
    wait_for_port_free,
)
from devloop.constants import DEFAULT_KILL_TIMEOUT, DEFAULT_PORT_FREE_TIMEOUT, IPC_FD_ENV
from devloop.models import LifecycleState, SpawnOptions, SupervisorEvent
from devloop.utils import console, err_console

SupervisorListener = Callable[[SupervisorEvent], None]

_DRAIN_TIMEOUT = 1.0


class SpawnError(RuntimeError):
    """The server process could not be started."""


class MessageChannel:
    """JSON-lines message channel over the parent end of a socket pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader: asyncio.StreamReader = reader
        self._writer: asyncio.StreamWriter = writer

    @classmethod
    async def open(cls, sock: socket.socket) -> MessageChannel:
        reader, writer = await asyncio.open_connection(sock=sock)
        return cls(reader, writer)

    @property
    def closed(self) -> bool:
        return self._writer.is_closing()

    async def send(self, payload: dict[str, Any] | None = None) -> None:
        if self._writer.is_closing():
            raise ConnectionResetError("message channel is closed")
        self._writer.write(json.dumps(payload or {}).encode() + b"\n")
        await self._writer.drain()

    async def messages(self) -> AsyncIterator[Any]:
        """Yield decoded messages until the child closes its end."""
        async for line in self._reader:
            if not line.strip():
                continue
            try:
                yield json.loads(line)
            except ValueError:
                yield line.decode("utf-8", errors="replace").strip()

    def close(self) -> None:
        self._writer.close()


class ServerProcessHandle:
    """The managed server process. Only `ServerSupervisor` transitions it."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        channel: MessageChannel,
        tracked: TrackedProcess | None,
    ) -> None:
        self.process: asyncio.subprocess.Process = process
        self.channel: MessageChannel = channel
        self.tracked: TrackedProcess | None = tracked
        self._state: LifecycleState = LifecycleState.STARTING
        self._exit_code: int | None = None
        self._stop_requested: bool = False
        self._exited: asyncio.Event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    def __repr__(self) -> str:
        return f"ServerProcessHandle(pid={self.pid}, state={self._state.value})"

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    async def wait_exited(self) -> int | None:
        """Wait until the exit has been observed and reported."""
        await self._exited.wait()
        return self._exit_code


def build_child_env(
    options: SpawnOptions, *, ipc_fd: int, base_env: dict[str, str] | None = None
) -> dict[str, str]:
    """Environment for the server process.

    Parent environment, then `.env` values, then the forced development mode
    and the update channel descriptor.
    """
    env = dict(os.environ if base_env is None else base_env)
    if options.dotenv_path is not None and options.dotenv_path.exists():
        env.update(
            {k: v for k, v in dotenv_values(options.dotenv_path).items() if v is not None}
        )
    env[options.mode_env_var] = options.mode_value
    env[IPC_FD_ENV] = str(ipc_fd)
    return env


class ServerSupervisor:
    """Keeps exactly one server process in sync with the latest build."""

    def __init__(
        self,
        options: SpawnOptions,
        *,
        gate: LogGate | None = None,
        tagger: LogTagger | None = None,
        stdout_sink: LogSink | None = None,
        stderr_sink: LogSink | None = None,
        on_spawn_error: Callable[[SpawnError], None] | None = None,
    ) -> None:
        self.options: SpawnOptions = options
        self.gate: LogGate = gate or LogGate()
        self.tagger: LogTagger = tagger or LogTagger()
        self._stdout_sink: LogSink = stdout_sink or console_sink(console)
        self._stderr_sink: LogSink = stderr_sink or console_sink(err_console)
        self._on_spawn_error: Callable[[SpawnError], None] | None = on_spawn_error
        self._handle: ServerProcessHandle | None = None
        self._lock: asyncio.Lock = asyncio.Lock()
        self._listeners: list[SupervisorListener] = []
        self._logger = get_logger(DevLogComponent.SUPERVISOR)

    @property
    def handle(self) -> ServerProcessHandle | None:
        return self._handle

    @property
    def state(self) -> LifecycleState:
        if self._handle is None:
            return LifecycleState.ABSENT
        return self._handle.state

    def add_listener(self, listener: SupervisorListener) -> None:
        self._listeners.append(listener)

    def _emit(self, event: SupervisorEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    # === Operations ===

    async def spawn(self) -> ServerProcessHandle:
        """Start the server process.

        Raises:
            SpawnError: If a live process already exists or the OS refuses to start one
        """
        async with self._lock:
            return await self._spawn_locked()

    async def signal_hot_update(self) -> ServerProcessHandle:
        """Tell the running server a new build is ready, starting one if needed."""
        async with self._lock:
            handle = self._handle
            if handle is None or handle.state is not LifecycleState.RUNNING:
                return await self._spawn_locked()
            try:
                await handle.channel.send({})
            except (ConnectionError, OSError) as e:
                self._logger.warning(
                    f"Update channel of pid={handle.pid} is closed ({e}), replacing process"
                )
                self._terminate(handle)
                return await self._spawn_locked()
            self._logger.debug(f"Sent hot update signal to pid={handle.pid}")
            return handle

    async def on_child_message(
        self, handle: ServerProcessHandle | None, payload: Any = None
    ) -> ServerProcessHandle:
        """Replace the current server process.

        Any message counts regardless of its payload. The old process is not
        waited for.
        """
        async with self._lock:
            sender = handle.pid if handle is not None else None
            self._logger.debug(f"Child pid={sender} asked to be replaced")
            current = self._handle
            if current is not None:
                self._terminate(current)
            return await self._spawn_locked()

    async def restart(self) -> ServerProcessHandle:
        """Stop the current process, wait for its exit, then start a new one."""
        async with self._lock:
            current = self._handle
            if current is not None:
                await self._stop(current, wait_for_port=True)
            return await self._spawn_locked()

    def on_child_exit(self, handle: ServerProcessHandle, exit_code: int | None) -> None:
        """Record a process exit. Never starts a new process."""
        handle._exit_code = exit_code
        handle._state = LifecycleState.ABSENT
        handle.channel.close()
        if self._handle is handle:
            self._handle = None

        if handle.stop_requested:
            self._logger.debug(f"Server process pid={handle.pid} stopped")
        elif exit_code == 0:
            self._logger.info(f"Server process pid={handle.pid} exited cleanly")
        else:
            self._logger.error(
                f"Server process pid={handle.pid} exited with code {exit_code}"
            )

        self._emit(
            SupervisorEvent(
                kind="exited",
                pid=handle.pid,
                exit_code=exit_code,
                requested=handle.stop_requested,
            )
        )
        handle._exited.set()

    async def shutdown(self) -> None:
        """Stop the current process, if any, and wait for it."""
        async with self._lock:
            current = self._handle
            if current is not None:
                await self._stop(current, wait_for_port=False)

    # === Internals (lock held) ===

    async def _spawn_locked(self) -> ServerProcessHandle:
        current = self._handle
        if current is not None and current.state.is_live:
            raise SpawnError(
                f"Server process pid={current.pid} is still {current.state.value}"
            )

        parent_sock, child_sock = socket.socketpair()
        env = build_child_env(self.options, ipc_fd=child_sock.fileno())
        command = self.options.command()
        self._logger.debug(f"Starting server: {' '.join(command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=self.options.cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                pass_fds=(child_sock.fileno(),),
            )
        except OSError as e:
            parent_sock.close()
            error = SpawnError(f"Failed to start {command[-1]}: {e}")
            self._logger.error(str(error))
            if self._on_spawn_error is not None:
                self._on_spawn_error(error)
            raise error from e
        finally:
            child_sock.close()

        channel = await MessageChannel.open(parent_sock)
        handle = ServerProcessHandle(process, channel, track_process(process.pid))
        self._handle = handle

        assert process.stdout is not None and process.stderr is not None
        handle._tasks = [
            asyncio.create_task(
                pipe_stream(process.stdout, self.gate, self.tagger, self._stdout_sink),
                name=f"devloop-stdout-{process.pid}",
            ),
            asyncio.create_task(
                pipe_stream(process.stderr, self.gate, self.tagger, self._stderr_sink),
                name=f"devloop-stderr-{process.pid}",
            ),
            asyncio.create_task(
                self._read_messages(handle), name=f"devloop-ipc-{process.pid}"
            ),
            asyncio.create_task(
                self._watch_exit(handle), name=f"devloop-exit-{process.pid}"
            ),
        ]
        handle._state = LifecycleState.RUNNING
        self._logger.debug(f"Server process pid={process.pid} started")
        self._emit(SupervisorEvent(kind="spawned", pid=process.pid))
        return handle

    def _terminate(self, handle: ServerProcessHandle) -> None:
        if handle.state is LifecycleState.ABSENT:
            return
        handle._stop_requested = True
        handle._state = LifecycleState.EXITING
        terminate(handle.process, handle.tracked)

    async def _stop(self, handle: ServerProcessHandle, *, wait_for_port: bool) -> None:
        if handle.state is LifecycleState.ABSENT:
            return
        handle._stop_requested = True
        handle._state = LifecycleState.EXITING
        await stop_process(
            handle.process,
            handle.tracked,
            name="server",
            sigterm_timeout=self.options.stop_timeout,
            sigkill_timeout=DEFAULT_KILL_TIMEOUT,
        )
        await handle.wait_exited()

        port = self.options.port
        if wait_for_port and port is not None:
            if not await wait_for_port_free(port, timeout=DEFAULT_PORT_FREE_TIMEOUT):
                listeners = find_listeners_for_port(port)
                self._logger.warning(
                    f"Port {port} is still in use (listening pids: {listeners or 'unknown'})"
                )

    # === Per-process tasks ===

    async def _read_messages(self, handle: ServerProcessHandle) -> None:
        try:
            async for payload in handle.channel.messages():
                self._logger.debug(f"Message from pid={handle.pid}: {payload!r}")
                try:
                    await self.on_child_message(handle, payload)
                except SpawnError:
                    # already reported through on_spawn_error
                    return
        except (ConnectionError, OSError) as e:
            self._logger.debug(f"Update channel of pid={handle.pid} closed: {e}")

    async def _watch_exit(self, handle: ServerProcessHandle) -> None:
        exit_code = await handle.process.wait()
        # forked workers may keep the pipes open after the root exits
        await asyncio.wait(handle._tasks[:2], timeout=_DRAIN_TIMEOUT)
        self.on_child_exit(handle, exit_code)
