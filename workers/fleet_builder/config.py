"""
Runtime configuration

Settings are read from ``FLEET_*`` environment variables (or a ``.env``
file) once per process.  Spawned dispatcher and job processes receive the
effective settings back through ``Settings.child_env()`` so command-line
overrides such as ``--ref`` reach every level of the process tree.
"""
import logging
import os
from pathlib import Path
from typing import Dict, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

PACKAGE_ROOT = Path(__file__).resolve().parent.parent

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
ENV_PREFIX = "FLEET_"


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        extra="ignore",
    )

    # Local filesystem layout
    logs_dir: Path = Path("logs")
    locks_dir: Path = Path("locks")
    output_dir: Path = Path("out")
    artifact_prefix: str = "app"

    # Source
    repo_url: str = "https://github.com/example/project.git"
    ref: Optional[str] = None

    # Remote build
    remote_workdir: str = "fleet-build"
    unix_build_command: str = "make ARCH={arch}"
    windows_build_command: str = "build.bat {arch}"
    unix_artifact_path: str = "dist/{prefix}"
    windows_artifact_path: str = "dist/{prefix}.exe"
    ssh_command: str = "ssh -o BatchMode=yes"
    scp_command: str = "scp -q -o BatchMode=yes"
    remote_timeout: int = 3600  # seconds, per remote step

    # Locking
    lock_backend: Literal["auto", "native", "portable"] = "auto"
    lock_poll_interval: float = 0.5  # seconds

    # Process-tree supervision
    heartbeat_interval: float = 1.0  # seconds
    kill_grace_period: float = 5.0  # seconds before SIGKILL

    inventory_file: Optional[Path] = None
    log_level: str = "INFO"

    def child_env(self) -> Dict[str, str]:
        """Environment for spawned processes: current env plus effective settings."""
        env = python_env()
        for name, value in self.model_dump().items():
            if value is None:
                continue
            env[f"{ENV_PREFIX}{name.upper()}"] = str(value)
        return env

    def log_path(self, platform: str) -> Path:
        return self.logs_dir / f"{platform}.log"


def configure_logging(level: str = "INFO") -> None:
    """Route diagnostics to stderr in the shared format."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def python_env(base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Copy of *base* (default ``os.environ``) where ``python -m fleet_builder.*`` resolves."""
    env = dict(os.environ if base is None else base)
    paths = [str(PACKAGE_ROOT)]
    if env.get("PYTHONPATH"):
        paths.append(env["PYTHONPATH"])
    env["PYTHONPATH"] = os.pathsep.join(paths)
    return env
