"""Hot update runtime loaded inside the managed server process.

The supervisor passes one end of a socket pair to the child and names its file
descriptor in `DEVLOOP_IPC_FD`. Messages are JSON lines. An empty object from
the parent means "a new build is ready"; the child runs its dispose callbacks
and answers with an empty object, asking to be replaced.

Usage inside a server:

    from devloop import hot

    hot.install()

    @hot.on_dispose
    def close_pool() -> None:
        pool.close()
"""

import os
import socket
import threading
import traceback
from collections.abc import Callable

from devloop.constants import HMR_MARKER, IPC_FD_ENV

DisposeHandler = Callable[[], None]


def _log(message: str) -> None:
    print(f"{HMR_MARKER} {message}", flush=True)


class HotClient:
    """Child side of the update channel."""

    def __init__(self, fd: int | None = None) -> None:
        self._fd: int | None = fd
        self._sock: socket.socket | None = None
        self._lock: threading.Lock = threading.Lock()
        self._dispose_handlers: list[DisposeHandler] = []
        self._thread: threading.Thread | None = None

    @property
    def installed(self) -> bool:
        return self._sock is not None

    def install(self) -> bool:
        """Connect to the supervisor and start listening for updates.

        Returns:
            False when the process was not started by devloop
        """
        with self._lock:
            if self._sock is not None:
                return True
            fd = self._fd
            if fd is None:
                raw = os.environ.get(IPC_FD_ENV)
                if not raw:
                    return False
                fd = int(raw)
            self._sock = socket.socket(fileno=fd)

        self._thread = threading.Thread(
            target=self._listen, args=(self._sock,), name="devloop-hot", daemon=True
        )
        self._thread.start()
        _log("Waiting for update signal from devloop...")
        return True

    def on_dispose(self, handler: DisposeHandler) -> DisposeHandler:
        self._dispose_handlers.append(handler)
        return handler

    def request_restart(self) -> bool:
        """Ask the supervisor to replace this process."""
        with self._lock:
            if self._sock is None:
                return False
            self._sock.sendall(b"{}\n")
        return True

    def _listen(self, sock: socket.socket) -> None:
        with sock.makefile("rb") as reader:
            for line in reader:
                if line.strip():
                    self._handle_update()

    def _handle_update(self) -> None:
        _log("Update available, restarting server...")
        for handler in list(self._dispose_handlers):
            try:
                handler()
            except Exception:
                traceback.print_exc()
        self.request_restart()


# Global client for the current process
_client = HotClient()


def install() -> bool:
    """Install the hot update runtime for this process."""
    return _client.install()


def on_dispose(handler: DisposeHandler) -> DisposeHandler:
    """Register a callback run before the process asks to be replaced."""
    return _client.on_dispose(handler)


def request_restart() -> bool:
    """Ask devloop to restart this process."""
    return _client.request_restart()


def is_enabled() -> bool:
    """Whether this process was started by devloop with an update channel."""
    return _client.installed or IPC_FD_ENV in os.environ
