"""
Fleet dispatcher — start one job supervisor per platform and collect outcomes.

Jobs run as separate processes, each with stdout/stderr going to
``<logs_dir>/<platform>.log``.  Results are joined and printed in spawn
order; a job that finishes early is reported once every job started before
it has been reported.
"""
from __future__ import annotations

import logging
import subprocess
import sys
from typing import IO, Iterable, List, Optional, Sequence, Tuple

from fleet_builder.cli import build_parser, parse_args
from fleet_builder.config import Settings, configure_logging
from fleet_builder.errors import InvalidPlatformError
from fleet_builder.io.schema import JobRecord, Outcome, PlatformResult, RunReport
from fleet_builder.policy.inventory import Inventory

logger = logging.getLogger(__name__)

JOB_COMMAND = (sys.executable, "-m", "fleet_builder.build")


class Dispatcher:
    """Runs a set of platform builds concurrently, one process each."""

    def __init__(
        self,
        inventory: Inventory,
        settings: Settings,
        job_command: Sequence[str] = JOB_COMMAND,
        out: Optional[IO[str]] = None,
    ):
        self.inventory = inventory
        self.settings = settings
        self.job_command = list(job_command)
        self.out = out if out is not None else sys.stdout
        self.jobs: List[Tuple[JobRecord, subprocess.Popen]] = []

    def _say(self, message: str) -> None:
        print(message, file=self.out, flush=True)

    def spawn(self, platform: str) -> JobRecord:
        """Start the job supervisor for *platform* with output to its log."""
        machine = self.inventory.machine_for(platform)
        log_path = self.settings.log_path(platform)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        cmd = self.job_command + [platform]
        with open(log_path, "wb") as log:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                env=self.settings.child_env(),
            )

        record = JobRecord(platform=platform, machine=machine, pid=proc.pid, log_path=str(log_path))
        self.jobs.append((record, proc))
        logger.debug(f"Spawned {cmd} as pid {proc.pid}")
        self._say(f"started {platform} on {machine} (pid {proc.pid})")
        return record

    def run(self, platforms: Iterable[str]) -> RunReport:
        """
        Build every requested platform; an empty request means all.

        Raises InvalidPlatformError before anything is spawned if any
        platform is unknown.
        """
        selected = self.inventory.select(platforms)
        for platform in selected:
            self.spawn(platform)

        report = RunReport()
        for record, proc in self.jobs:
            code = proc.wait()
            outcome = Outcome.OK if code == 0 else Outcome.ERROR
            self._say(f"{record.platform}: {outcome.value}")
            report.add(PlatformResult(
                platform=record.platform,
                outcome=outcome,
                log_path=record.log_path,
                exit_code=code,
            ))

        if report.failures:
            self._say("failed platforms:")
            for result in report.failures:
                self._say(f"  {result.platform}: {result.log_path}")
        return report


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(build_parser(prog="fleet_builder.dispatch"), argv)
    if args is None:
        return 1
    settings = Settings()
    if args.ref:
        settings = settings.model_copy(update={"ref": args.ref})
    configure_logging(settings.log_level)

    try:
        inventory = Inventory.load(settings.inventory_file)
        report = Dispatcher(inventory, settings).run(args.platforms)
    except (InvalidPlatformError, OSError, ValueError) as e:
        print(f"mbuild: {e}", file=sys.stderr)
        return 1
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
