"""
Job supervisor — one platform, one machine, one lock.

``run_build`` resolves the platform's machine, holds that machine's lock for
the whole remote build, and on success archives the retrieved binary and
writes its receipt.  The lock is released on every exit path.

Run as a process by the dispatcher::

    python -m fleet_builder.build linux-x86_64 [--ref v1.2.0]

stdout/stderr of that process are the platform's log.
"""
import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from fleet_builder.config import Settings, configure_logging
from fleet_builder.core.artifact import describe_artifact, describe_file, package_artifact
from fleet_builder.core.lock import ResourceLock, select_lock_backend
from fleet_builder.core.remote import RemoteRunner, select_runner
from fleet_builder.errors import FleetError
from fleet_builder.io.schema import BuildReceipt, now_iso
from fleet_builder.io.writer import write_receipt
from fleet_builder.policy.inventory import Inventory

logger = logging.getLogger(__name__)


def receipt_path_for(settings: Settings, platform: str) -> Path:
    return settings.output_dir / f"{settings.artifact_prefix}-{platform}.receipt.json"


def run_build(
    platform: str,
    inventory: Inventory,
    settings: Settings,
    lock: Optional[ResourceLock] = None,
    runner: Optional[RemoteRunner] = None,
) -> BuildReceipt:
    """
    Build *platform* on its machine.

    Parameters
    ----------
    platform : str
        Platform identifier; must be in the inventory.
    inventory : Inventory
        Machine and protocol maps.
    settings : Settings
        Filesystem layout and remote command configuration.
    lock : ResourceLock, optional
        Lock backend.  Defaults to the probed backend for settings.locks_dir.
    runner : RemoteRunner, optional
        Remote adapter.  Defaults to the protocol inventory's choice.

    Returns
    -------
    BuildReceipt

    Raises
    ------
    InvalidPlatformError
        Before any lock is taken, if the platform is unknown.
    LockError, RemoteJobError
        If the lock or any remote step fails.
    """
    # ── Step 1: resolve machine (no side effects on failure) ─────────
    machine = inventory.machine_for(platform)
    adapter = inventory.adapter_for(platform)
    logger.info(f"Platform {platform} -> machine {machine} ({adapter.value} adapter)")

    lock = lock or select_lock_backend(settings)
    runner = runner or select_runner(platform, inventory, settings)
    started_at = now_iso()

    # ── Step 2: hold the machine for the whole job ───────────────────
    with lock.acquire(machine):
        logger.info(f"Building {platform} on {machine} (ref={settings.ref or 'default'})")
        artifact = runner.run(machine, platform)
        logger.info(f"Retrieved artifact {artifact}")

        # ── Step 3: package + receipt, success path only ─────────────
        archive = package_artifact(artifact)
        receipt = BuildReceipt(
            platform=platform,
            machine=machine,
            adapter=adapter.value,
            repo_url=settings.repo_url,
            ref=settings.ref,
            started_at=started_at,
            finished_at=now_iso(),
            artifact=describe_artifact(artifact),
            archive=describe_file(archive),
        )
        write_receipt(receipt, receipt_path_for(settings, platform))

    logger.info(f"Build {platform} finished: {archive}")
    return receipt


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Build one platform on its machine")
    parser.add_argument("platform")
    parser.add_argument("-r", "--ref", help="Git reference to build")
    args = parser.parse_args(argv)

    settings = Settings()
    if args.ref:
        settings = settings.model_copy(update={"ref": args.ref})
    configure_logging(settings.log_level)

    try:
        inventory = Inventory.load(settings.inventory_file)
        run_build(args.platform, inventory, settings)
    except FleetError as e:
        logger.error(f"Build {args.platform} failed: {e}")
        return 1
    except Exception as e:
        logger.error(f"Build {args.platform} crashed: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
