"""
Lock watcher — owns a portable lock marker on behalf of a holder process.

Protocol with the holder (``PortableLock``):
  1. Poll for atomic creation of the marker file.
  2. Print ``ready`` on stdout once the marker is ours.
  3. Block until stdin reaches EOF: the holder released the lock or died.
  4. Remove the marker with termination signals ignored.

A TERM/INT/HUP received at any point jumps straight to step 4.  If the holder
disappears while we are still polling, exit without ever creating the marker.
"""
import argparse
import logging
import os
import select
import signal
import sys
from pathlib import Path
from typing import List, Optional

from fleet_builder.config import configure_logging

logger = logging.getLogger("fleet_builder.lock_watcher")

READY = "ready"
TRAPPED = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)
IGNORED_DURING_CLEANUP = TRAPPED + (signal.SIGPIPE,)


def _terminate(signum, frame):
    raise SystemExit(128 + signum)


def _holder_gone(fd: int, timeout: float) -> bool:
    """Wait up to *timeout* for stdin; True if the holder closed it."""
    readable, _, _ = select.select([fd], [], [], timeout)
    return bool(readable) and not os.read(fd, 4096)


def _ignore_termination() -> Optional[SystemExit]:
    """Ignore termination signals for good; return an exit raised on the way."""
    deferred = None
    pending = list(IGNORED_DURING_CLEANUP)
    while pending:
        try:
            signal.pthread_sigmask(signal.SIG_BLOCK, IGNORED_DURING_CLEANUP)
            while pending:
                signal.signal(pending[0], signal.SIG_IGN)
                pending.pop(0)
        except SystemExit as e:
            # A handler already pending fires once more before SIG_IGN sticks.
            deferred = e
    return deferred


def _remove_marker(marker: Path) -> None:
    deferred = _ignore_termination()
    marker.unlink(missing_ok=True)
    logger.info(f"Marker {marker} removed")
    if deferred is not None:
        raise deferred


def hold(marker: Path, poll_interval: float) -> int:
    stdin_fd = sys.stdin.fileno()
    owned = False
    for sig in TRAPPED:
        signal.signal(sig, _terminate)

    try:
        while True:
            signal.pthread_sigmask(signal.SIG_BLOCK, TRAPPED)
            try:
                fd = os.open(str(marker), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
                owned = True
            except FileExistsError:
                fd = None
            finally:
                signal.pthread_sigmask(signal.SIG_UNBLOCK, TRAPPED)

            if fd is not None:
                with os.fdopen(fd, "w") as fh:
                    fh.write(f"{os.getpid()}\n")
                break
            if _holder_gone(stdin_fd, poll_interval):
                logger.info(f"Holder went away while waiting for {marker}")
                return 1

        logger.info(f"Marker {marker} created")
        try:
            sys.stdout.write(READY + "\n")
            sys.stdout.flush()
        except BrokenPipeError:
            return 1

        while os.read(stdin_fd, 4096):
            pass
        return 0
    finally:
        if owned:
            _remove_marker(marker)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Hold a portable lock marker")
    parser.add_argument("marker", type=Path)
    parser.add_argument("--poll", type=float, default=0.5, help="Retry interval in seconds")
    args = parser.parse_args(argv)

    configure_logging(os.environ.get("FLEET_LOG_LEVEL", "INFO"))
    return hold(args.marker, args.poll)


if __name__ == "__main__":
    sys.exit(main())
