"""
Single-instance control of the background guard process.

A lock record (``~/.mcp-guard.pid``) holds the pid of the detached
server.  The process counts as running only if that pid is alive *and*
the server answers its status endpoint; anything else is a stale record
and is removed.

Invoking the toggle with no running instance spawns one; invoking it
again sends SIGTERM and removes the record.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import httpx

from .utils.safe_io import atomic_write_text_sync

logger = logging.getLogger("mcp_guard.toggle")

LOCK_FILE_NAME = ".mcp-guard.pid"

# Seconds allowed for the status endpoint to answer
STATUS_TIMEOUT = 1.0


def default_lock_path() -> Path:
    return Path.home() / LOCK_FILE_NAME


class ToggleError(Exception):
    """Raised when the background process cannot be started or stopped."""


@dataclass
class ToggleStatus:
    """Outcome of a status check or toggle.

    Attributes:
        running: Whether a responsive guard process is up.
        pid: Pid from the lock record when running.
        port: Port the guard listens on.
    """
    running: bool
    pid: Optional[int] = None
    port: Optional[int] = None

    @property
    def state(self) -> str:
        return "on" if self.running else "off"

    @property
    def address(self) -> str:
        return f"http://localhost:{self.port}"


def process_alive(pid: int) -> bool:
    """Signal-0 liveness probe.  A pid owned by another user is alive."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def probe_status(port: int, timeout: float = STATUS_TIMEOUT) -> bool:
    """Whether the guard's status endpoint answers with a 2xx in time.

    Timeouts, refused connections and error statuses all count as
    unreachable.
    """
    try:
        response = httpx.get(f"http://127.0.0.1:{port}/", timeout=timeout)
    except httpx.HTTPError:
        return False
    return response.is_success


def spawn_detached(config_path: str) -> int:
    """Start ``mcp-guard --serve`` in its own session; return its pid."""
    proc = subprocess.Popen(
        [sys.executable, "-m", "mcp_guard", "--serve", "--config", config_path],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        close_fds=True,
    )
    return proc.pid


class ProcessToggle:
    """Start, stop or query the background guard for one config.

    Args:
        config_path: Config file the background server is started with.
        port: Port the server listens on (used for the status probe).
        lock_path: Lock record location, ``~/.mcp-guard.pid`` by default.
        probe: Status endpoint check, ``(port) -> bool``.
        spawn: Detached process launcher, ``(config_path) -> pid``.
    """

    def __init__(
        self,
        config_path: str,
        port: int,
        lock_path: Optional[Path] = None,
        probe: Callable[[int], bool] = probe_status,
        spawn: Callable[[str], int] = spawn_detached,
    ) -> None:
        self.config_path = str(config_path)
        self.port = port
        self.lock_path = Path(lock_path) if lock_path is not None else default_lock_path()
        self._probe = probe
        self._spawn = spawn

    # -- lock record ---------------------------------------------------------

    def read_pid(self) -> Optional[int]:
        """Pid in the lock record, or ``None`` if absent.

        A record that does not hold an integer is removed.
        """
        try:
            raw = self.lock_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ToggleError(f"Cannot read lock record {self.lock_path}: {e}") from e
        try:
            return int(raw)
        except ValueError:
            logger.debug("Lock record %s is not a pid: %r", self.lock_path, raw)
            self._remove_lock()
            return None

    def _write_pid(self, pid: int) -> None:
        atomic_write_text_sync(self.lock_path, f"{pid}\n")

    def _remove_lock(self) -> None:
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass

    # -- operations ----------------------------------------------------------

    def status(self) -> ToggleStatus:
        """Check the lock record, the pid and the status endpoint.

        Stale records (dead pid, or a live pid whose server does not
        respond) are deleted and reported as off.
        """
        pid = self.read_pid()
        if pid is None:
            return ToggleStatus(running=False, port=self.port)

        if not process_alive(pid):
            logger.debug("Pid %d from lock record is not running", pid)
            self._remove_lock()
            return ToggleStatus(running=False, port=self.port)

        if not self._probe(self.port):
            logger.debug("Pid %d alive but port %d not responding", pid, self.port)
            self._remove_lock()
            return ToggleStatus(running=False, port=self.port)

        return ToggleStatus(running=True, pid=pid, port=self.port)

    def turn_on(self) -> ToggleStatus:
        """Spawn the detached server and record its pid."""
        try:
            pid = self._spawn(self.config_path)
        except OSError as e:
            raise ToggleError(f"Failed to start background server: {e}") from e
        self._write_pid(pid)
        logger.info("Started background guard pid=%d", pid)
        return ToggleStatus(running=True, pid=pid, port=self.port)

    def turn_off(self, pid: int) -> ToggleStatus:
        """SIGTERM *pid* and remove the lock record."""
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.debug("Pid %d already gone", pid)
        except PermissionError as e:
            raise ToggleError(f"Not allowed to stop pid {pid}: {e}") from e
        self._remove_lock()
        logger.info("Stopped background guard pid=%d", pid)
        return ToggleStatus(running=False, port=self.port)

    def toggle(self) -> ToggleStatus:
        """off -> on, on -> off."""
        current = self.status()
        if current.running and current.pid is not None:
            return self.turn_off(current.pid)
        return self.turn_on()
