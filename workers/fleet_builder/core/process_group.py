"""
Scoped process group.

    with ProcessGroup(grace_period=5.0) as group:
        leader = group.spawn(cmd, stdout=subprocess.PIPE)
        group.spawn(other_cmd)      # joins the leader's group
        leader.wait()

The first spawned process leads a new process group; every later spawn
joins it, and so does everything those processes start.  While the scope is
active, fatal signals (abort, hangup, illegal instruction, interrupt, quit,
terminate) are trapped and turned into a group-wide SIGTERM.  Leaving the
scope, whatever the reason, cancels the group exactly once: registered
callbacks run, survivors get SIGTERM, then SIGKILL after the grace period.

SIGPIPE is not trapped; a detached output consumer surfaces as a write error.
"""
from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from typing import Callable, Dict, List, Optional, Sequence

from fleet_builder.errors import GroupCancelledError

logger = logging.getLogger(__name__)

TRAPPED_SIGNALS = (
    signal.SIGABRT,
    signal.SIGHUP,
    signal.SIGILL,
    signal.SIGINT,
    signal.SIGQUIT,
    signal.SIGTERM,
)
POLL_INTERVAL = 0.05


class ProcessGroup:
    """Process group handle with exactly-once cancellation."""

    def __init__(self, grace_period: float = 5.0):
        self.grace_period = grace_period
        self.pgid: Optional[int] = None
        self.processes: List[subprocess.Popen] = []
        self.cancelled_by: Optional[int] = None

        self._callbacks: List[Callable[[str], None]] = []
        self._cancelled = False
        self._previous: Dict[int, object] = {}

    # -- context manager -------------------------------------------------------

    def __enter__(self) -> ProcessGroup:
        for sig in TRAPPED_SIGNALS:
            self._previous[sig] = signal.signal(sig, self._on_signal)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            reason = "exit" if exc_type is None else f"error: {exc_type.__name__}"
            self.cancel(reason)
            self._reap()
        finally:
            for sig, handler in self._previous.items():
                signal.signal(sig, handler)
            self._previous.clear()
        return False

    # -- spawning --------------------------------------------------------------

    def spawn(self, cmd: Sequence[str], **popen_kwargs) -> subprocess.Popen:
        """Start *cmd* inside the group (as its leader if it is the first)."""
        if self._cancelled:
            raise GroupCancelledError(f"process group {self.pgid} already cancelled")
        popen_kwargs["process_group"] = 0 if self.pgid is None else self.pgid
        proc = subprocess.Popen(list(cmd), **popen_kwargs)
        if self.pgid is None:
            self.pgid = proc.pid
            logger.info(f"Process group {self.pgid} led by {cmd[0]}")
        self.processes.append(proc)
        return proc

    def on_cancel(self, callback: Callable[[str], None]) -> None:
        self._callbacks.append(callback)

    # -- cancellation ----------------------------------------------------------

    def signal_group(self, sig: int) -> bool:
        """Send *sig* to every member; False if the group is already empty."""
        if self.pgid is None:
            return False
        try:
            os.killpg(self.pgid, sig)
            return True
        except ProcessLookupError:
            return False

    def alive(self) -> bool:
        return self.signal_group(0)

    def cancel(self, reason: str) -> None:
        """Run callbacks and terminate the group; later calls do nothing."""
        if self._cancelled:
            return
        self._cancelled = True
        logger.info(f"Cancelling process group {self.pgid} ({reason})")
        for callback in self._callbacks:
            try:
                callback(reason)
            except Exception as e:
                logger.error(f"Cancel callback failed: {e}", exc_info=True)
        self.signal_group(signal.SIGTERM)

    def _on_signal(self, signum, frame):
        name = signal.Signals(signum).name
        logger.warning(f"Received {name}, terminating process group {self.pgid}")
        if self.cancelled_by is None:
            self.cancelled_by = signum
        self.cancel(name)

    def _reap(self) -> None:
        """Wait for members to exit; SIGKILL whatever outlives the grace period."""
        deadline = time.monotonic() + self.grace_period
        for proc in self.processes:
            remaining = max(0.0, deadline - time.monotonic())
            try:
                proc.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                break

        # Grandchildren are not ours to wait on; poll the group instead.
        while self.alive() and time.monotonic() < deadline:
            time.sleep(POLL_INTERVAL)

        if self.alive():
            logger.warning(f"Process group {self.pgid} survived SIGTERM, sending SIGKILL")
            self.signal_group(signal.SIGKILL)
        for proc in self.processes:
            proc.wait()
