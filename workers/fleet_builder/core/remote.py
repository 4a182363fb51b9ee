"""
Remote job runner — build one platform on one machine over ssh.

Handles:
- Fresh clone of the repository on the remote machine
- Architecture-scoped build command (unix shell or cmd.exe)
- Retrieval of the single produced binary with scp

Any failing step raises RemoteJobError; there is no partial result.
"""
from __future__ import annotations

import logging
import os
import shlex
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List

from fleet_builder.config import Settings
from fleet_builder.errors import RemoteJobError
from fleet_builder.policy.inventory import AdapterKind, Inventory, split_platform

logger = logging.getLogger(__name__)


class RemoteRunner(ABC):
    """Adapter contract: ``run(machine, platform) -> local artifact path``."""

    kind: AdapterKind

    def __init__(self, settings: Settings):
        self.settings = settings

    # -- command assembly ------------------------------------------------------

    def template_values(self, platform: str) -> Dict[str, str]:
        _, arch = split_platform(platform)
        return {
            "arch": arch,
            "platform": platform,
            "prefix": self.settings.artifact_prefix,
            "workdir": f"{self.settings.remote_workdir}-{platform}",
        }

    @abstractmethod
    def build_script(self, platform: str) -> str:
        """Remote shell command line: clean, clone, checkout, build."""

    @abstractmethod
    def remote_artifact(self, platform: str) -> str:
        """Artifact path on the remote machine, relative to its home."""

    def local_artifact(self, platform: str) -> Path:
        return self.settings.output_dir / f"{self.settings.artifact_prefix}-{platform}"

    # -- execution -------------------------------------------------------------

    def _run_command(self, step: str, cmd: List[str]) -> None:
        """Run *cmd* with output going to our own stdout/stderr (the job log)."""
        logger.info(f"[{step}] {shlex.join(cmd)}")
        timeout = self.settings.remote_timeout
        try:
            result = subprocess.run(cmd, stdin=subprocess.DEVNULL, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise RemoteJobError(step, f"timed out after {timeout}s") from None
        except OSError as e:
            raise RemoteJobError(step, str(e)) from e

        if result.returncode != 0:
            raise RemoteJobError(step, f"exit code {result.returncode}", result.returncode)
        logger.info(f"[{step}] done")

    def run(self, machine: str, platform: str) -> Path:
        ssh = shlex.split(self.settings.ssh_command)
        scp = shlex.split(self.settings.scp_command)

        self._run_command("build", ssh + [machine, self.build_script(platform)])

        local = self.local_artifact(platform)
        local.parent.mkdir(parents=True, exist_ok=True)
        partial = local.with_name(f".{local.name}.{os.getpid()}.part")
        source = f"{machine}:{self.remote_artifact(platform)}"
        try:
            self._run_command("retrieve", scp + [source, str(partial)])
            if not partial.is_file():
                raise RemoteJobError("retrieve", f"{local} missing after copy")
            os.replace(partial, local)
        finally:
            partial.unlink(missing_ok=True)
        return local


class UnixShellRunner(RemoteRunner):
    kind = AdapterKind.UNIX

    def build_script(self, platform: str) -> str:
        v = self.template_values(platform)
        workdir = shlex.quote(v["workdir"])
        steps = [
            f"rm -rf {workdir}",
            f"git clone {shlex.quote(self.settings.repo_url)} {workdir}",
            f"cd {workdir}",
        ]
        if self.settings.ref:
            steps.append(f"git checkout {shlex.quote(self.settings.ref)}")
        steps.append(self.settings.unix_build_command.format(**v))
        return " && ".join(steps)

    def remote_artifact(self, platform: str) -> str:
        v = self.template_values(platform)
        return f"{v['workdir']}/{self.settings.unix_artifact_path.format(**v)}"


class WindowsShellRunner(RemoteRunner):
    kind = AdapterKind.WINDOWS

    def build_script(self, platform: str) -> str:
        v = self.template_values(platform)
        workdir = f'"{v["workdir"]}"'
        steps = [
            f'git clone "{self.settings.repo_url}" {workdir}',
            f"cd {workdir}",
        ]
        if self.settings.ref:
            steps.append(f'git checkout "{self.settings.ref}"')
        steps.append(self.settings.windows_build_command.format(**v))
        # An IF body runs to the end of the line unless parenthesized.
        return f"(if exist {workdir} rmdir /s /q {workdir}) & " + " && ".join(steps)

    def remote_artifact(self, platform: str) -> str:
        v = self.template_values(platform)
        return f"{v['workdir']}/{self.settings.windows_artifact_path.format(**v)}"


RUNNERS = {
    AdapterKind.UNIX: UnixShellRunner,
    AdapterKind.WINDOWS: WindowsShellRunner,
}


def select_runner(platform: str, inventory: Inventory, settings: Settings) -> RemoteRunner:
    """Adapter for *platform* according to the protocol inventory."""
    return RUNNERS[inventory.adapter_for(platform)](settings)
