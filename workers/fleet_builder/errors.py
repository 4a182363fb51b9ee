"""Exception hierarchy shared by the CLI, dispatcher and job supervisor."""
from typing import Iterable, Optional


class FleetError(Exception):
    """Base class for every error raised by fleet_builder."""


class UsageError(FleetError):
    """Bad command-line flags or arguments."""


class InvalidPlatformError(FleetError):
    """One or more platforms are not present in the machine inventory."""

    def __init__(self, platforms: Iterable[str]):
        self.platforms = sorted(set(platforms))
        super().__init__(f"invalid platform: {', '.join(self.platforms)}")


class LockError(FleetError):
    """A machine lock could not be obtained."""


class RemoteJobError(FleetError):
    """A remote build step failed; no partial result is kept."""

    def __init__(self, step: str, message: str, exit_code: Optional[int] = None):
        self.step = step
        self.exit_code = exit_code
        super().__init__(f"{step} failed: {message}")


class GroupCancelledError(FleetError, RuntimeError):
    """A spawn was attempted after the process group was cancelled."""
