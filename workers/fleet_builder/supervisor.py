"""
Process-tree supervisor — run a command so that nothing it starts outlives it.

The command leads a fresh process group together with a heartbeat watchdog.
Its stdout is copied to ours on a thread; if our consumer goes away the copy
keeps draining into nothing, so a closed terminal never reads as a failed
build.  The exit status comes from waiting on the command itself, never from
the state of its output stream.

Exit status: the command's own code, or 1 if it was killed by a signal or
the run was interrupted.
"""
from __future__ import annotations

import logging
import os
import subprocess
import sys
import threading
import time
from typing import BinaryIO, Dict, List, Optional, Sequence

from fleet_builder.config import Settings, python_env
from fleet_builder.core.process_group import ProcessGroup
from fleet_builder.errors import GroupCancelledError

logger = logging.getLogger(__name__)

WATCHDOG_COMMAND = (sys.executable, "-m", "fleet_builder.core.watchdog")
CHUNK_SIZE = 65536


class Supervisor:
    """Runs one primary command inside a supervised process group."""

    def __init__(
        self,
        command: Sequence[str],
        env: Optional[Dict[str, str]] = None,
        heartbeat_interval: float = 1.0,
        grace_period: float = 5.0,
        sink: Optional[BinaryIO] = None,
    ):
        self.command = list(command)
        self.env = env
        self.heartbeat_interval = heartbeat_interval
        self.grace_period = grace_period
        self.sink = sink if sink is not None else sys.stdout.buffer

        self.consumer_detached = False
        self.heartbeats = 0
        self.last_heartbeat: Optional[float] = None
        self.group: Optional[ProcessGroup] = None
        self.cancel_reason: Optional[str] = None

    # -- pipe consumers --------------------------------------------------------

    def _copy_output(self, src: BinaryIO) -> None:
        fd = src.fileno()
        while True:
            chunk = os.read(fd, CHUNK_SIZE)
            if not chunk:
                break
            if self.consumer_detached:
                continue
            try:
                self.sink.write(chunk)
                self.sink.flush()
            except (BrokenPipeError, ValueError, OSError) as e:
                self.consumer_detached = True
                logger.warning(f"Output consumer detached ({e}); draining until the job ends")
        src.close()

    def _drain_heartbeat(self, src: BinaryIO) -> None:
        for _ in src:
            self.heartbeats += 1
            self.last_heartbeat = time.monotonic()
        src.close()

    # -- run -------------------------------------------------------------------

    def _on_cancel(self, reason: str) -> None:
        self.cancel_reason = reason
        if reason != "exit":
            logger.warning(f"Run cancelled ({reason}), stopping the process group")

    def _stop_watchdog(self, watchdog: subprocess.Popen) -> None:
        watchdog.terminate()
        try:
            watchdog.wait(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            watchdog.kill()
            watchdog.wait()
        logger.debug(f"Watchdog {watchdog.pid} reaped after {self.heartbeats} beats")

    def run(self) -> int:
        threads: List[threading.Thread] = []

        with ProcessGroup(grace_period=self.grace_period) as group:
            self.group = group
            group.on_cancel(self._on_cancel)
            try:
                primary = group.spawn(
                    self.command,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    env=self.env,
                )
            except GroupCancelledError:
                logger.warning("Interrupted before the command started")
                return 1
            threads.append(threading.Thread(
                target=self._copy_output, args=(primary.stdout,), daemon=True,
            ))

            # The group may already be cancelled here; the primary is still waited on.
            watchdog = None
            try:
                watchdog = group.spawn(
                    list(WATCHDOG_COMMAND) + ["--interval", str(self.heartbeat_interval)],
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    env=python_env(),
                )
            except GroupCancelledError:
                logger.warning("Interrupted before the watchdog started")
            else:
                threads.append(threading.Thread(
                    target=self._drain_heartbeat, args=(watchdog.stdout,), daemon=True,
                ))
            for t in threads:
                t.start()

            code = primary.wait()
            logger.info(f"Primary {primary.pid} exited with {code}")
            if watchdog is not None:
                self._stop_watchdog(watchdog)

        for t in threads:
            t.join(timeout=self.grace_period)

        if group.cancelled_by is not None or code < 0:
            return 1
        return code


def supervise(command: Sequence[str], settings: Settings) -> int:
    """Run *command* under a supervisor configured from *settings*."""
    return Supervisor(
        command,
        env=settings.child_env(),
        heartbeat_interval=settings.heartbeat_interval,
        grace_period=settings.kill_grace_period,
    ).run()
