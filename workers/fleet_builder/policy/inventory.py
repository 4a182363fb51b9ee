"""
Inventory — which machine builds which platform, and how to talk to it.

The inventory is static data: constructed once at process start and passed
explicitly to the dispatcher and job supervisor.  Changing the fleet is an
inventory change, not a code change.
"""
import json
from dataclasses import dataclass, field
from enum import Enum, unique
from fnmatch import fnmatchcase
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from fleet_builder.errors import InvalidPlatformError


@unique
class AdapterKind(str, Enum):
    """Remote shell flavour used to assemble build commands."""
    UNIX = "unix"
    WINDOWS = "windows"


# ── File format ──────────────────────────────────────────────────────────────

class InventoryFile(BaseModel):
    """On-disk JSON form of an inventory."""
    machines: Dict[str, str]
    protocols: List[Tuple[str, AdapterKind]] = Field(
        default_factory=lambda: [("windows-*", AdapterKind.WINDOWS), ("*", AdapterKind.UNIX)]
    )


# ── Inventory ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Inventory:
    """Read-only platform → machine and platform-pattern → adapter maps."""

    machines: Mapping[str, str]
    protocols: Tuple[Tuple[str, AdapterKind], ...] = field(default=())

    def __post_init__(self):
        # Freeze whatever mapping the caller handed in.
        object.__setattr__(self, "machines", MappingProxyType(dict(self.machines)))
        object.__setattr__(self, "protocols", tuple(
            (pattern, AdapterKind(kind)) for pattern, kind in self.protocols
        ))

    @classmethod
    def default(cls) -> "Inventory":
        """The stock fleet: one host per OS family."""
        return cls(
            machines={
                "linux-x86_64": "build-linux",
                "linux-i686": "build-linux",
                "linux-aarch64": "build-linux-arm",
                "linux-armv7": "build-linux-arm",
                "darwin-x86_64": "build-mac",
                "darwin-arm64": "build-mac",
                "freebsd-x86_64": "build-freebsd",
                "windows-x86_64": "build-windows",
                "windows-i686": "build-windows",
            },
            protocols=(
                ("windows-*", AdapterKind.WINDOWS),
                ("*", AdapterKind.UNIX),
            ),
        )

    @classmethod
    def from_file(cls, path: Path) -> "Inventory":
        """Load and validate an inventory JSON file."""
        data = InventoryFile.model_validate(json.loads(Path(path).read_text()))
        return cls(machines=data.machines, protocols=tuple(data.protocols))

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Inventory":
        if path is None:
            return cls.default()
        return cls.from_file(path)

    # -- queries ---------------------------------------------------------------

    @property
    def platforms(self) -> List[str]:
        return list(self.machines)

    def machine_for(self, platform: str) -> str:
        """Resolve a platform to its machine; unknown platforms are rejected."""
        try:
            return self.machines[platform]
        except KeyError:
            raise InvalidPlatformError([platform]) from None

    def adapter_for(self, platform: str) -> AdapterKind:
        """First protocol pattern matching *platform* wins; UNIX if none do."""
        for pattern, kind in self.protocols:
            if fnmatchcase(platform, pattern):
                return kind
        return AdapterKind.UNIX

    def select(self, requested: Iterable[str]) -> List[str]:
        """
        Validate and deduplicate requested platforms, keeping first-seen order.

        An empty request selects every inventory platform.  Any unknown
        platform rejects the whole request.
        """
        requested = list(requested)
        if not requested:
            return self.platforms

        unknown = [p for p in requested if p not in self.machines]
        if unknown:
            raise InvalidPlatformError(unknown)
        return list(dict.fromkeys(requested))


def split_platform(platform: str) -> Tuple[str, str]:
    """``linux-x86_64`` → ``("linux", "x86_64")``."""
    system, _, arch = platform.partition("-")
    return system, arch
