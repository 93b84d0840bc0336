"""PTY-backed terminal session.

The hub does no terminal emulation: bytes from the pseudo-terminal are decoded
and handed to listeners, and the observer renders them. Recent output is kept
in a bounded buffer so a reconnecting observer can replay it.
"""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import os
import pty
import signal
import struct
import termios
from collections import deque
from typing import Callable, Mapping, Optional, Sequence

from hivegrid.constants import DEFAULT_COLS, DEFAULT_ROWS, OUTPUT_BUFFER_MAX_CHUNKS
from hivegrid.logging_config import get_logger

logger = get_logger(__name__)

DataListener = Callable[[str], None]
ExitListener = Callable[[int], None]

_READ_SIZE = 65536
_KILL_GRACE_S = 3.0


class SessionClosedError(RuntimeError):
    """Raised when writing to or resizing a session that has exited or been disposed."""


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is the PTY slave
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


class TerminalSession:
    """One spawned process attached to a pseudo-terminal."""

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        buffer_max_chunks: int = OUTPUT_BUFFER_MAX_CHUNKS,
    ) -> None:
        self.command = command
        self.args = list(args)
        self.cwd = cwd
        self.env = dict(env or {})
        self.cols = cols
        self.rows = rows
        self.exit_code: Optional[int] = None

        self._buffer: deque[str] = deque(maxlen=buffer_max_chunks)
        self._data_listeners: list[DataListener] = []
        self._exit_listeners: list[ExitListener] = []
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._master_fd: Optional[int] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._wait_task: Optional[asyncio.Task[None]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._disposed = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def is_active(self) -> bool:
        return self._process is not None and self.exit_code is None and not self._disposed

    def on_data(self, listener: DataListener) -> None:
        self._data_listeners.append(listener)

    def on_exit(self, listener: ExitListener) -> None:
        self._exit_listeners.append(listener)

    def get_buffer(self) -> list[str]:
        return list(self._buffer)

    async def start(self) -> None:
        """Spawn the process on a fresh PTY.

        Raises:
            OSError: the command could not be started (e.g. not installed)
        """
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, self.cols, self.rows)
            env = {**os.environ, "TERM": "xterm-256color", **self.env}
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.cwd,
                env=env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        self._master_fd = master_fd
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(master_fd, self._on_readable)
        self._wait_task = asyncio.create_task(self._wait_for_exit())
        logger.debug("Started %s (pid %s) in %s", self.command, self._process.pid, self.cwd)

    def _on_readable(self) -> None:
        if self._master_fd is None:
            return
        try:
            data = os.read(self._master_fd, _READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO: every slave handle closed, the process is gone
            self._stop_reading()
            return
        if not data:
            self._stop_reading()
            return
        self._emit(data)

    def _emit(self, data: bytes) -> None:
        text = self._decoder.decode(data)
        if not text:
            return
        self._buffer.append(text)
        if self._disposed:
            return
        for listener in list(self._data_listeners):
            try:
                listener(text)
            except Exception as e:
                logger.error("Terminal data listener failed: %s", e, exc_info=True)

    def _drain(self) -> None:
        """Read whatever output the process left behind before it exited."""
        if self._master_fd is None:
            return
        while True:
            try:
                data = os.read(self._master_fd, _READ_SIZE)
            except OSError:
                return
            if not data:
                return
            self._emit(data)

    def _stop_reading(self) -> None:
        if self._master_fd is not None and self._loop is not None:
            self._loop.remove_reader(self._master_fd)

    def _close_master(self) -> None:
        self._stop_reading()
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None

    async def _wait_for_exit(self) -> None:
        assert self._process is not None
        exit_code = await self._process.wait()
        self._drain()
        self._close_master()
        self.exit_code = exit_code
        logger.debug("Process %s exited with %s", self._process.pid, exit_code)
        for listener in list(self._exit_listeners):
            try:
                listener(exit_code)
            except Exception as e:
                logger.error("Terminal exit listener failed: %s", e, exc_info=True)

    def write(self, data: str) -> None:
        if not self.is_active() or self._master_fd is None:
            raise SessionClosedError("Terminal session has been disposed")
        payload = data.encode("utf-8")
        while payload:
            try:
                written = os.write(self._master_fd, payload)
            except BlockingIOError:
                continue
            payload = payload[written:]

    def resize(self, cols: int, rows: int) -> None:
        if not self.is_active() or self._master_fd is None:
            raise SessionClosedError("Terminal session has been disposed")
        _set_winsize(self._master_fd, cols, rows)
        self.cols = cols
        self.rows = rows

    def dispose(self) -> None:
        """Hang up the process group. Exit listeners still fire once it dies."""
        if self._disposed:
            return
        self._disposed = True
        if self._process is None or self.exit_code is not None:
            self._close_master()
            return
        try:
            os.killpg(self._process.pid, signal.SIGHUP)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning("killpg failed for %s: %s; killing process", self._process.pid, e)
            self._process.kill()
        if self._loop is not None:
            self._loop.call_later(_KILL_GRACE_S, self._force_kill)

    def _force_kill(self) -> None:
        if self._process is None or self.exit_code is not None:
            return
        logger.warning("Process %s ignored SIGHUP, sending SIGKILL", self._process.pid)
        try:
            os.killpg(self._process.pid, signal.SIGKILL)
        except OSError:
            pass

    async def wait(self) -> Optional[int]:
        if self._wait_task is not None:
            await self._wait_task
        return self.exit_code
