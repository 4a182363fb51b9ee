"""
Resource lock — one exclusive holder per machine name.

Two interchangeable backends behind ``ResourceLock.acquire(name)``:

  - NativeLock:   ``flock(LOCK_EX)`` on ``<locks_dir>/<name>.lock``.  The OS
                  drops the lock when the holder's descriptor closes, including
                  when the holder dies.
  - PortableLock: for filesystems without reliable advisory locks.  A watcher
                  process polls for atomic ``O_CREAT|O_EXCL`` creation of the
                  marker, reports readiness, and owns the marker's removal
                  (see ``lock_watcher``).

``select_lock_backend`` probes the locks directory once at startup.
"""
from __future__ import annotations

import logging
import os
import subprocess
import sys
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from fleet_builder.config import Settings, python_env
from fleet_builder.errors import LockError

logger = logging.getLogger(__name__)

READY = "ready"
WATCHER_EXIT_TIMEOUT = 30.0  # seconds


def _get_fcntl() -> Optional[Any]:
    """fcntl on POSIX, None elsewhere."""
    if sys.platform == "win32":
        return None
    import fcntl
    return fcntl


class ResourceLock(ABC):
    """Blocking, exclusive, name-scoped lock."""

    backend: str = ""

    def __init__(self, locks_dir: Path):
        self.locks_dir = Path(locks_dir)

    def path_for(self, name: str) -> Path:
        return self.locks_dir / f"{name}.lock"

    def _ensure_dir(self) -> None:
        try:
            self.locks_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LockError(f"cannot create locks directory {self.locks_dir}: {e}") from e

    @abstractmethod
    def acquire(self, name: str) -> Iterator[Path]:
        """Block until *name* is owned; release when the context exits."""


class NativeLock(ResourceLock):
    backend = "native"

    @contextmanager
    def acquire(self, name: str) -> Iterator[Path]:
        fcntl = _get_fcntl()
        if fcntl is None:
            raise LockError("native locking is not available on this platform")

        path = self.path_for(name)
        self._ensure_dir()
        fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            logger.info(f"Waiting for lock {path}")
            fcntl.flock(fd, fcntl.LOCK_EX)
            logger.info(f"Acquired lock {path} (native)")
            yield path
        finally:
            os.close(fd)
            logger.info(f"Released lock {path}")


class PortableLock(ResourceLock):
    backend = "portable"

    def __init__(self, locks_dir: Path, poll_interval: float = 0.5):
        super().__init__(locks_dir)
        self.poll_interval = poll_interval

    def _spawn_watcher(self, marker: Path) -> subprocess.Popen:
        cmd = [
            sys.executable, "-m", "fleet_builder.core.lock_watcher",
            str(marker), "--poll", str(self.poll_interval),
        ]
        return subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            env=python_env(),
            text=True,
        )

    @contextmanager
    def acquire(self, name: str) -> Iterator[Path]:
        marker = self.path_for(name)
        self._ensure_dir()

        logger.info(f"Waiting for lock {marker}")
        watcher = self._spawn_watcher(marker)
        try:
            line = watcher.stdout.readline().strip()
            if line != READY:
                watcher.wait()
                raise LockError(
                    f"lock watcher for {marker} exited with {watcher.returncode} before acquiring"
                )
            logger.info(f"Acquired lock {marker} (portable, watcher pid {watcher.pid})")
            yield marker
        finally:
            self._release(watcher, marker)

    def _release(self, watcher: subprocess.Popen, marker: Path) -> None:
        # EOF on the watcher's stdin is the release signal.
        try:
            watcher.stdin.close()
        except BrokenPipeError:
            pass
        try:
            watcher.wait(timeout=WATCHER_EXIT_TIMEOUT)
        except subprocess.TimeoutExpired:
            logger.warning(f"Lock watcher {watcher.pid} did not exit, terminating")
            watcher.terminate()
            watcher.wait()
        watcher.stdout.close()
        logger.info(f"Released lock {marker}")


def probe_native_locking(locks_dir: Path) -> bool:
    """True when flock works on files inside *locks_dir*."""
    fcntl = _get_fcntl()
    if fcntl is None:
        return False

    probe = Path(locks_dir) / ".probe.lock"
    try:
        probe.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(probe), os.O_RDWR | os.O_CREAT, 0o644)
    except OSError as e:
        logger.warning(f"Lock probe could not open {probe}: {e}")
        return False
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        fcntl.flock(fd, fcntl.LOCK_UN)
        return True
    except BlockingIOError:
        # Someone else holds the probe: locking works.
        return True
    except OSError as e:
        logger.warning(f"flock unsupported in {locks_dir}: {e}")
        return False
    finally:
        os.close(fd)


def select_lock_backend(settings: Settings) -> ResourceLock:
    """Pick the lock backend from settings, probing when set to ``auto``."""
    choice = settings.lock_backend
    if choice == "auto":
        choice = "native" if probe_native_locking(settings.locks_dir) else "portable"
        logger.info(f"Lock backend probe selected '{choice}'")

    if choice == "native":
        return NativeLock(settings.locks_dir)
    return PortableLock(settings.locks_dir, poll_interval=settings.lock_poll_interval)
