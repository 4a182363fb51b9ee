"""
mbuild — build every requested platform on its machine.

    mbuild [-r REF] [platform ...]

No platforms means every inventory platform.  Arguments are validated before
anything is started; the run itself executes under the process-tree
supervisor so an interrupt stops every job, ssh leg and lock watcher.
"""
import argparse
import sys
from typing import List, Optional

from fleet_builder.config import Settings, configure_logging
from fleet_builder.errors import InvalidPlatformError, UsageError
from fleet_builder.policy.inventory import Inventory
from fleet_builder.supervisor import supervise

DISPATCH_COMMAND = (sys.executable, "-m", "fleet_builder.dispatch")


class ArgumentParser(argparse.ArgumentParser):
    """argparse raising UsageError instead of exiting 2."""

    def error(self, message):
        raise UsageError(message)


def parse_args(parser: ArgumentParser, argv: Optional[List[str]]) -> Optional[argparse.Namespace]:
    """Parsed arguments, or None after reporting a usage error on stderr."""
    try:
        return parser.parse_args(argv)
    except UsageError as e:
        parser.print_usage(sys.stderr)
        print(f"{parser.prog}: error: {e}", file=sys.stderr)
        return None


def build_parser(prog: str = "mbuild") -> ArgumentParser:
    parser = ArgumentParser(
        prog=prog,
        description="Build platforms on their remote machines, one job per platform.",
    )
    parser.add_argument("-r", "--ref", help="Git branch, tag or commit to build")
    parser.add_argument(
        "platforms",
        nargs="*",
        metavar="platform",
        help="Platform identifiers (default: all inventory platforms)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(build_parser(), argv)
    if args is None:
        return 1

    settings = Settings()
    if args.ref:
        settings = settings.model_copy(update={"ref": args.ref})
    configure_logging(settings.log_level)

    try:
        inventory = Inventory.load(settings.inventory_file)
    except (OSError, ValueError) as e:
        print(f"mbuild: cannot load inventory: {e}", file=sys.stderr)
        return 1

    try:
        platforms = inventory.select(args.platforms)
    except InvalidPlatformError as e:
        print(f"mbuild: {e}", file=sys.stderr)
        return 1

    return supervise(list(DISPATCH_COMMAND) + platforms, settings)
