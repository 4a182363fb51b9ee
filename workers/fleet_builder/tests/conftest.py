"""
Shared pytest fixtures for fleet_builder tests.

Remote machines are simulated by small Python scripts standing in for
``ssh`` and ``scp``:

  - fake ssh:  records the call, optionally sleeps, fails when the remote
               script mentions ``$FAKE_SSH_FAIL``.
  - fake scp:  writes a synthetic binary to the destination; when the source
               mentions ``$FAKE_SCP_FAIL`` it writes a truncated file and fails.

Both append one JSON line per call to ``$FAKE_REMOTE_LOG`` and record their
pid in ``$FAKE_PID_DIR`` when set, so tests can check for leftover processes.
"""
import json
import os
import shlex
import sys
import textwrap
import time
from pathlib import Path

import pytest

from fleet_builder.config import Settings, python_env
from fleet_builder.policy.inventory import AdapterKind, Inventory

FAKE_SSH = textwrap.dedent("""\
    import json, os, sys, time

    machine, script = sys.argv[-2], sys.argv[-1]
    if os.environ.get("FAKE_PID_DIR"):
        open(os.path.join(os.environ["FAKE_PID_DIR"], str(os.getpid())), "w").close()
    if os.environ.get("FAKE_REMOTE_LOG"):
        with open(os.environ["FAKE_REMOTE_LOG"], "a") as fh:
            fh.write(json.dumps({"tool": "ssh", "machine": machine, "script": script}) + "\\n")
    print(f"remote build on {machine}", flush=True)
    time.sleep(float(os.environ.get("FAKE_SSH_DELAY", "0")))
    fail = os.environ.get("FAKE_SSH_FAIL")
    if fail and fail in script:
        print("remote build failed", file=sys.stderr)
        sys.exit(3)
""")

FAKE_SCP = textwrap.dedent("""\
    import json, os, sys

    source, dest = sys.argv[-2], sys.argv[-1]
    if os.environ.get("FAKE_REMOTE_LOG"):
        with open(os.environ["FAKE_REMOTE_LOG"], "a") as fh:
            fh.write(json.dumps({"tool": "scp", "source": source, "dest": dest}) + "\\n")
    fail = os.environ.get("FAKE_SCP_FAIL")
    if fail and fail in source:
        with open(dest, "wb") as fh:
            fh.write(b"partial")
        print("copy failed", file=sys.stderr)
        sys.exit(1)
    with open(dest, "wb") as fh:
        fh.write(f"binary from {source}\\n".encode())
""")

FAKE_JOB = textwrap.dedent("""\
    import os, sys, time

    platform = sys.argv[-1]
    print(f"building {platform}", flush=True)
    delays = dict(item.split("=") for item in os.environ.get("FAKE_JOB_DELAY", "").split(",") if item)
    time.sleep(float(delays.get(platform, "0")))
    failing = os.environ.get("FAKE_JOB_FAIL", "").split(",")
    sys.exit(1 if platform in failing else 0)
""")


def _command(script: Path) -> str:
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"


@pytest.fixture
def write_script(tmp_path):
    """Write a helper script under tmp_path/bin and return its path."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _write(name: str, body: str) -> Path:
        path = bin_dir / name
        path.write_text(body)
        return path

    return _write


@pytest.fixture
def remote_log(tmp_path, monkeypatch) -> Path:
    path = tmp_path / "remote.jsonl"
    monkeypatch.setenv("FAKE_REMOTE_LOG", str(path))
    return path


@pytest.fixture
def read_remote_log(remote_log):
    def _read():
        if not remote_log.exists():
            return []
        return [json.loads(line) for line in remote_log.read_text().splitlines()]
    return _read


@pytest.fixture
def fake_tools(write_script, remote_log):
    """Shell-splittable commands for the fake ssh and scp."""
    return {
        "ssh": _command(write_script("fake_ssh.py", FAKE_SSH)),
        "scp": _command(write_script("fake_scp.py", FAKE_SCP)),
    }


@pytest.fixture
def fake_job(write_script):
    """Job command standing in for ``python -m fleet_builder.build``."""
    return [sys.executable, str(write_script("fake_job.py", FAKE_JOB))]


@pytest.fixture
def inventory() -> Inventory:
    return Inventory(
        machines={
            "linux-x86_64": "build-linux",
            "linux-i686": "build-linux",
            "darwin-arm64": "build-mac",
            "windows-x86_64": "build-windows",
        },
        protocols=(("windows-*", AdapterKind.WINDOWS), ("*", AdapterKind.UNIX)),
    )


@pytest.fixture
def settings(tmp_path, fake_tools) -> Settings:
    return Settings(
        logs_dir=tmp_path / "logs",
        locks_dir=tmp_path / "locks",
        output_dir=tmp_path / "out",
        artifact_prefix="app",
        repo_url="https://git.example.test/app.git",
        ssh_command=fake_tools["ssh"],
        scp_command=fake_tools["scp"],
        remote_timeout=60,
        lock_poll_interval=0.05,
        heartbeat_interval=0.1,
        kill_grace_period=2.0,
    )


@pytest.fixture
def inventory_file(tmp_path, inventory) -> Path:
    path = tmp_path / "inventory.json"
    path.write_text(json.dumps({
        "machines": dict(inventory.machines),
        "protocols": [[pattern, kind.value] for pattern, kind in inventory.protocols],
    }))
    return path


@pytest.fixture
def fleet_env(settings, inventory_file):
    """Environment for running the real CLI / dispatcher as a subprocess."""
    env = settings.child_env()
    env["FLEET_INVENTORY_FILE"] = str(inventory_file)
    env.update({k: v for k, v in os.environ.items() if k.startswith("FAKE_")})
    return python_env(env)


@pytest.fixture
def wait_gone():
    """Poll until every pid is gone (zombies count as gone)."""

    def _gone(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        try:
            stat = Path(f"/proc/{pid}/stat").read_text()
        except OSError:
            return True
        return stat.rsplit(")", 1)[1].split()[0] == "Z"

    def _wait(pids, timeout: float = 10.0) -> list:
        deadline = time.monotonic() + timeout
        alive = [p for p in pids if not _gone(p)]
        while alive and time.monotonic() < deadline:
            time.sleep(0.05)
            alive = [p for p in alive if not _gone(p)]
        return alive

    return _wait
