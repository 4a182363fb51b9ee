"""
Schema — Pydantic models for job records, run reports and build receipts.

  - JobRecord     — one spawned job supervisor (dispatcher bookkeeping).
  - RunReport     — ordered per-platform outcomes of a dispatcher run.
  - BuildReceipt  — provenance written next to each successful archive.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from fleet_builder import RECEIPT_VERSION, TOOL_NAME, __version__


# =============================================================================
# Dispatcher records
# =============================================================================

class Outcome(str, Enum):
    OK = "ok"
    ERROR = "error"


class JobRecord(BaseModel):
    """A job supervisor process started by the dispatcher."""
    platform: str
    machine: str
    pid: int
    log_path: str


class PlatformResult(BaseModel):
    platform: str
    outcome: Outcome
    log_path: str
    exit_code: Optional[int] = None


class RunReport(BaseModel):
    """Per-platform outcomes in reporting order."""
    results: List[PlatformResult] = Field(default_factory=list)

    def add(self, result: PlatformResult) -> None:
        self.results.append(result)

    @property
    def failures(self) -> List[PlatformResult]:
        return [r for r in self.results if r.outcome == Outcome.ERROR]

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1


# =============================================================================
# Build receipt
# =============================================================================

class ElfMeta(BaseModel):
    """Minimal ELF header facts; absent for Mach-O / PE artifacts."""
    elf_type: str = ""  # ET_EXEC, ET_DYN, ...
    arch: str = ""  # EM_X86_64, EM_AARCH64, ...
    build_id: Optional[str] = None


class FileMeta(BaseModel):
    path: str
    sha256: str
    size_bytes: int


class ArtifactMeta(FileMeta):
    elf: Optional[ElfMeta] = None


class ToolInfo(BaseModel):
    name: str = TOOL_NAME
    version: str = __version__
    receipt_version: str = RECEIPT_VERSION


class BuildReceipt(BaseModel):
    """
    Single receipt per successful platform build.

    Written as ``<prefix>-<platform>.receipt.json`` in the output directory.
    """
    tool: ToolInfo = ToolInfo()
    platform: str
    machine: str
    adapter: str
    repo_url: str
    ref: Optional[str] = None
    started_at: str
    finished_at: str
    artifact: ArtifactMeta
    archive: FileMeta


def now_iso() -> str:
    """Current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()
