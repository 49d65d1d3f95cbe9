"""Process tracking and stop helpers for the managed server process.

Design goals:
- Only signal processes we started (tracked by pid + create_time).
- Signal the whole process group so servers that fork workers go down too.
- Prefer graceful shutdown (SIGTERM first), escalate to SIGKILL after a timeout.
- Verify the root has exited before a replacement is started.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import socket
import time
from typing import ClassVar

import psutil
from pydantic import BaseModel, ConfigDict

from devloop.cli.dev.logging import DevLogComponent, get_logger
from devloop.constants import DEFAULT_KILL_TIMEOUT, DEFAULT_STOP_TIMEOUT

logger = get_logger(DevLogComponent.PROCESS_CONTROL)

_FORCE_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)


class TrackedProcess(BaseModel):
    """A process we started and are allowed to manage."""

    pid: int
    create_time: float
    pgid: int | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


def _get_pgid_safe(pid: int) -> int | None:
    # Windows doesn't have pgid.
    if os.name == "nt":
        return None
    try:
        return os.getpgid(pid)
    except OSError:
        return None


def track_process(pid: int) -> TrackedProcess | None:
    """Create a TrackedProcess for a running PID, recording create_time and pgid.

    A process still sharing our own group is tracked without a pgid, so group
    signals can never reach devloop itself.
    """
    try:
        proc = psutil.Process(pid)
        create_time = float(proc.create_time())
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None

    pgid = _get_pgid_safe(pid)
    if pgid is not None and pgid == _get_pgid_safe(os.getpid()):
        pgid = None
    return TrackedProcess(pid=pid, create_time=create_time, pgid=pgid)


def validate_tracked(tp: TrackedProcess) -> psutil.Process | None:
    """Return a psutil.Process only if PID matches create_time (prevents PID reuse bugs)."""
    try:
        proc = psutil.Process(tp.pid)
        if abs(float(proc.create_time()) - tp.create_time) > 0.001:
            return None
        return proc
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def list_descendants(tp: TrackedProcess) -> list[psutil.Process]:
    proc = validate_tracked(tp)
    if proc is None:
        return []
    try:
        return proc.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


def list_group_members(pgid: int) -> list[int]:
    """Return PIDs in a process group (POSIX only)."""
    if os.name == "nt":
        return []
    pids: list[int] = []
    for proc in psutil.process_iter(["pid"]):
        pid = int(proc.pid)
        if _get_pgid_safe(pid) != pgid:
            continue
        try:
            if proc.status() == psutil.STATUS_ZOMBIE:
                continue
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        pids.append(pid)
    return pids


def signal_tracked_process(tp: TrackedProcess, *, force: bool = False) -> bool:
    """Send SIGTERM (or SIGKILL with `force`) to a tracked process and its children.

    Returns:
        True if at least one process was signalled
    """
    sig = _FORCE_SIGNAL if force else signal.SIGTERM

    if tp.pgid is not None:
        try:
            os.killpg(tp.pgid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            logger.debug(f"Not allowed to signal process group {tp.pgid}, signalling tree")

    proc = validate_tracked(tp)
    if proc is None:
        return False

    sent = False
    for target in [*list_descendants(tp), proc]:
        try:
            if force:
                target.kill()
            else:
                target.terminate()
            sent = True
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.debug(f"Access denied signalling pid={target.pid}")
    return sent


async def wait_for_exit(process: asyncio.subprocess.Process, timeout: float) -> bool:
    try:
        await asyncio.wait_for(process.wait(), timeout)
        return True
    except TimeoutError:
        return False


async def wait_for_group_empty(pgid: int, timeout: float, poll: float = 0.1) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not list_group_members(pgid):
            return True
        await asyncio.sleep(poll)
    return not list_group_members(pgid)


def terminate(process: asyncio.subprocess.Process, tp: TrackedProcess | None) -> None:
    """Ask a process to stop without waiting for it."""
    if process.returncode is not None:
        return
    if tp is not None and signal_tracked_process(tp):
        return
    with contextlib.suppress(ProcessLookupError):
        process.terminate()


async def stop_process(
    process: asyncio.subprocess.Process,
    tp: TrackedProcess | None,
    *,
    name: str,
    sigterm_timeout: float = DEFAULT_STOP_TIMEOUT,
    sigkill_timeout: float = DEFAULT_KILL_TIMEOUT,
) -> int | None:
    """Stop a process and its group, escalating to SIGKILL.

    Returns:
        The exit code of the root process, None if it could not be reaped
    """
    if process.returncode is None:
        logger.debug(f"Stopping {name} pid={process.pid}")
        terminate(process, tp)
        if not await wait_for_exit(process, sigterm_timeout):
            logger.warning(
                f"{name} pid={process.pid} did not exit after {sigterm_timeout}s, killing"
            )
            if tp is None or not signal_tracked_process(tp, force=True):
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
            await wait_for_exit(process, sigkill_timeout)

    # Workers forked by the server may outlive the root.
    if tp is not None and tp.pgid is not None:
        if not await wait_for_group_empty(tp.pgid, sigkill_timeout):
            logger.debug(f"Killing leftover members of process group {tp.pgid}")
            with contextlib.suppress(ProcessLookupError):
                os.killpg(tp.pgid, _FORCE_SIGNAL)

    return process.returncode


def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """Check whether a TCP port can be bound."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_listeners_for_port(port: int) -> list[int]:
    """Return PIDs that have a LISTEN socket bound to the port (best-effort)."""
    pids: set[int] = set()
    try:
        connections = psutil.net_connections(kind="inet")
    except (psutil.AccessDenied, PermissionError):
        return []
    for conn in connections:
        if not conn.laddr or getattr(conn.laddr, "port", None) != port:
            continue
        if conn.status == psutil.CONN_LISTEN and conn.pid:
            pids.add(int(conn.pid))
    return sorted(pids)


async def wait_for_port_free(
    port: int, *, timeout: float, poll: float = 0.1, host: str = "127.0.0.1"
) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if is_port_available(port, host):
            return True
        await asyncio.sleep(poll)
    return is_port_available(port, host)
