"""
test_build — the per-platform job: lock, remote run, archive, receipt.

  - Unknown platforms fail before any lock file or output exists.
  - The machine lock is held for the remote run and released on every path.
  - Archives and receipts exist only for successful builds.
"""
import json
from contextlib import contextmanager
from pathlib import Path

import pytest

from fleet_builder.build import main, receipt_path_for, run_build
from fleet_builder.core.lock import NativeLock, ResourceLock
from fleet_builder.core.remote import RemoteRunner
from fleet_builder.errors import InvalidPlatformError, RemoteJobError


class RecordingLock(ResourceLock):
    """Wraps a real lock and records acquire/release events."""

    def __init__(self, inner: ResourceLock):
        super().__init__(inner.locks_dir)
        self.inner = inner
        self.events = []

    @contextmanager
    def acquire(self, name):
        with self.inner.acquire(name) as path:
            self.events.append(("acquire", name))
            try:
                yield path
            finally:
                self.events.append(("release", name))


class StubRunner(RemoteRunner):
    """Writes a local artifact (or fails) without any remote call."""

    def __init__(self, settings, lock: RecordingLock, fail: bool = False):
        super().__init__(settings)
        self.lock = lock
        self.fail = fail
        self.held_during_run = None

    def build_script(self, platform):
        return ""

    def remote_artifact(self, platform):
        return ""

    def run(self, machine, platform):
        self.held_during_run = self.lock.events[-1] == ("acquire", machine)
        if self.fail:
            raise RemoteJobError("build", "exit code 2", 2)
        local = self.local_artifact(platform)
        local.parent.mkdir(parents=True, exist_ok=True)
        local.write_bytes(b"built")
        return local


@pytest.fixture
def recording_lock(settings):
    return RecordingLock(NativeLock(settings.locks_dir))


class TestRunBuild:

    def test_success_writes_archive_and_receipt(self, inventory, settings, recording_lock):
        runner = StubRunner(settings, recording_lock)
        receipt = run_build("linux-x86_64", inventory, settings, lock=recording_lock, runner=runner)

        assert runner.held_during_run is True
        assert recording_lock.events == [("acquire", "build-linux"), ("release", "build-linux")]
        assert (settings.output_dir / "app-linux-x86_64.tar.gz").is_file()
        assert receipt.machine == "build-linux"
        assert receipt.adapter == "unix"

        data = json.loads(receipt_path_for(settings, "linux-x86_64").read_text())
        assert data["archive"]["path"].endswith("app-linux-x86_64.tar.gz")

    def test_failure_releases_lock_without_archive(self, inventory, settings, recording_lock):
        runner = StubRunner(settings, recording_lock, fail=True)
        with pytest.raises(RemoteJobError):
            run_build("darwin-arm64", inventory, settings, lock=recording_lock, runner=runner)

        assert recording_lock.events == [("acquire", "build-mac"), ("release", "build-mac")]
        assert not (settings.output_dir / "app-darwin-arm64.tar.gz").exists()
        assert not receipt_path_for(settings, "darwin-arm64").exists()

    def test_unknown_platform_touches_nothing(self, inventory, settings, recording_lock):
        with pytest.raises(InvalidPlatformError):
            run_build("bogus-arch", inventory, settings, lock=recording_lock)
        assert recording_lock.events == []
        assert not settings.locks_dir.exists()
        assert not settings.output_dir.exists()

    def test_with_fake_remote(self, inventory, settings, read_remote_log):
        """Default lock and runner selection against the fake ssh/scp."""
        settings = settings.model_copy(update={"ref": "v1.0"})
        receipt = run_build("linux-i686", inventory, settings)

        assert receipt.ref == "v1.0"
        assert Path(receipt.artifact.path).read_text().startswith("binary from build-linux:")
        assert "git checkout v1.0" in read_remote_log()[0]["script"]
        assert (settings.locks_dir / "build-linux.lock").exists()


class TestMain:
    """``python -m fleet_builder.build`` entry point, run in-process."""

    @pytest.fixture(autouse=True)
    def env(self, settings, inventory_file, monkeypatch):
        for key, value in settings.child_env().items():
            if key.startswith("FLEET_"):
                monkeypatch.setenv(key, value)
        monkeypatch.setenv("FLEET_INVENTORY_FILE", str(inventory_file))

    def test_success(self, settings):
        assert main(["darwin-arm64"]) == 0
        assert (settings.output_dir / "app-darwin-arm64.tar.gz").is_file()

    def test_remote_failure(self, settings, monkeypatch):
        monkeypatch.setenv("FAKE_SSH_FAIL", "darwin-arm64")
        assert main(["darwin-arm64"]) == 1
        assert not (settings.output_dir / "app-darwin-arm64.tar.gz").exists()

    def test_unknown_platform(self, settings):
        assert main(["bogus-arch"]) == 1
        assert not settings.locks_dir.exists()
