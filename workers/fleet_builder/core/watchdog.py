"""
Watchdog — heartbeat companion living in the supervised process group.

Writes one ``beat`` line per interval on stdout (a private pipe read by the
supervisor).  It does no work of its own: it keeps the group's channel busy
and gives the supervisor a liveness signal it can stop once the job is done.
"""
import argparse
import os
import sys
import time
from typing import List, Optional

BEAT = b"beat\n"


def beat(fd: int, interval: float) -> int:
    while True:
        try:
            os.write(fd, BEAT)
        except BrokenPipeError:
            # Supervisor stopped listening.
            return 0
        time.sleep(interval)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Emit a heartbeat line at a fixed interval")
    parser.add_argument("--interval", type=float, default=1.0)
    args = parser.parse_args(argv)
    return beat(sys.stdout.fileno(), args.interval)


if __name__ == "__main__":
    sys.exit(main())
