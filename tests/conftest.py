"""
Pytest configuration and fixtures.

Pipeline and registry tests run against FakeRunner and FakeDownloader:
no external tools, no network.
"""
import os
import sys
import tempfile
import threading
from pathlib import Path

# Set test environment before importing app
os.environ["AUTOINSTALLER_WORKSPACE"] = tempfile.mkdtemp(prefix="autoinstaller-tests-")
os.environ["AUTOINSTALLER_RETRY_DELAY"] = "0"

import pytest
from fastapi.testclient import TestClient

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import app
from autoinstaller.core.command import Command, CommandError, CommandResult
from autoinstaller.core.jobs import JobRegistry
from autoinstaller.core.pipeline import BuildPipeline
from autoinstaller.core.settings import Settings
from autoinstaller.core.workspace import WorkspaceManager, create_workspace

JAMMY_ISO = "ubuntu-22.04.5-live-server-amd64.iso"
FOCAL_ISO = "ubuntu-20.04.6-live-server-amd64.iso"
ISO_CONTENT = b"fake iso image"

GRUB_CFG = """set timeout=30

menuentry "Try or Install Ubuntu Server" {
\tset gfxpayload=keep
\tlinux\t/casper/vmlinuz  quiet  ---
\tinitrd\t/casper/initrd
}
menuentry "Ubuntu Server with the HWE kernel" {
\tset gfxpayload=keep
\tlinux\t/casper/hwe-vmlinuz  quiet  ---
\tinitrd\t/casper/hwe-initrd
}
"""

TXT_CFG = """default live-install
label live-install
  menu label ^Install Ubuntu Server
  kernel /casper/vmlinuz
  append   initrd=/casper/initrd quiet  ---
"""

MD5SUM_TXT = """0123456789abcdef0123456789abcdef  ./.disk/info
fedcba9876543210fedcba9876543210  ./boot/grub/grub.cfg
00000000000000000000000000000000  ./casper/vmlinuz
"""

RELEASE_PAGE = f"""<html><body>
<a href="{JAMMY_ISO}">{JAMMY_ISO}</a>
<a href="SHA256SUMS">SHA256SUMS</a>
</body></html>
"""


def ok(command: Command, stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(command=str(command), stdout=stdout, stderr=stderr, exit_code=0)


def failed(command: Command, message: str = "boom", stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(
        command=str(command),
        stdout=stdout,
        stderr=stderr,
        error=CommandError(f"{command.executable} exited with status 1: {message}", exit_code=1),
        exit_code=1,
    )


def _write_extracted_tree(build_dir: Path, legacy: bool) -> None:
    (build_dir / "boot" / "grub").mkdir(parents=True, exist_ok=True)
    (build_dir / "boot" / "grub" / "grub.cfg").write_text(GRUB_CFG)
    (build_dir / "md5sum.txt").write_text(MD5SUM_TXT)
    (build_dir / "[BOOT]").mkdir(exist_ok=True)
    (build_dir / "[BOOT]" / "1-Boot-NoEmul.img").write_bytes(b"mbr")
    (build_dir / "[BOOT]" / "2-Boot-NoEmul.img").write_bytes(b"efi")
    if legacy:
        (build_dir / "isolinux").mkdir(exist_ok=True)
        (build_dir / "isolinux" / "txt.cfg").write_text(TXT_CFG)
        (build_dir / "boot" / "grub" / "loopback.cfg").write_text(
            'menuentry "Install Ubuntu Server" {\n\tlinux\t/casper/vmlinuz  quiet  ---\n}\n'
        )


class FakeRunner:
    """
    Stands in for CommandRunner.

    Records every command and answers per executable. The default handlers
    behave like a healthy Ubuntu host: extractors write an ISO tree,
    xorriso writes the output image, resolvers return package names.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.calls: list[Command] = []
        self.handlers = {
            "7z": self._extract_7z,
            "xorriso": self._xorriso,
            "curl": lambda c: ok(c, stdout=RELEASE_PAGE),
            "apt-cache": lambda c: ok(c, stdout=f"{c.argv[-1]}\n  Depends: libc6\nlibc6\n"),
            "aptitude": lambda c: ok(c, stdout=f"Package: {c.argv[-1]}\nProvided by: {c.argv[-1]}-gtk3 (2:9.1)\n"),
            "dpkg-scanpackages": lambda c: ok(c, stdout="Package: fake\nVersion: 1.0\n"),
        }

    def on(self, executable: str, handler) -> None:
        self.handlers[executable] = handler

    def fail(self, executable: str, message: str = "boom", stdout: str = "", stderr: str = "") -> None:
        self.on(executable, lambda c: failed(c, message, stdout, stderr))

    def run(self, command) -> CommandResult:
        if isinstance(command, str):
            command = Command.parse(command)
        with self._lock:
            self.calls.append(command)
        handler = self.handlers.get(command.executable)
        if handler is None:
            return ok(command)
        return handler(command)

    def run_with_retries(self, command, attempts: int, delay: float) -> CommandResult:
        result = None
        for attempt in range(1, attempts + 1):
            result = self.run(command)
            result.attempts = attempt
            if result.ok:
                return result
        return CommandResult(
            command=result.command,
            error=CommandError(f"failed to execute command after {attempts} attempts: {result.error}"),
            attempts=attempts,
        )

    def commands(self, executable: str) -> list[Command]:
        with self._lock:
            return [c for c in self.calls if c.executable == executable]

    def executables(self) -> list[str]:
        with self._lock:
            return [c.executable for c in self.calls]

    @staticmethod
    def _extract_7z(command: Command) -> CommandResult:
        build_dir = Path(command.argv[-1][len("-o"):])
        _write_extracted_tree(build_dir, legacy=False)
        return ok(command, stderr="7-Zip progress output")

    @staticmethod
    def _xorriso(command: Command) -> CommandResult:
        if "-osirrox" in command.argv:
            _write_extracted_tree(Path(command.argv[-1]), legacy=True)
            return ok(command)
        output = Path(command.argv[command.argv.index("-o") + 1])
        output.write_bytes(b"repackaged iso")
        return ok(command, stderr="xorriso : UPDATE : Writing")


class FakeDownloader:
    """Stands in for Downloader; serves canned bytes by URL suffix."""

    def __init__(self):
        self._lock = threading.Lock()
        self.fetched: list[str] = []
        self.files: dict[str, bytes] = {".iso": ISO_CONTENT}

    def fetch(self, url: str, dest: Path) -> Path:
        with self._lock:
            self.fetched.append(url)
        content = b""
        for suffix, data in self.files.items():
            if url.endswith(suffix):
                content = data
        Path(dest).write_bytes(content)
        return Path(dest)

    def fetch_if_missing(self, url: str, dest: Path) -> Path:
        if Path(dest).exists():
            return Path(dest)
        return self.fetch(url, dest)


def all_tools_present(name: str) -> str:
    return f"/usr/bin/{name}"


@pytest.fixture
def client():
    """Create a test client."""
    return TestClient(app)


@pytest.fixture
def test_settings(tmp_path):
    """Settings pointing at a temp workspace, without retry delays."""
    return Settings(workspace_dir=tmp_path / "workspaces", retry_delay_s=0.0)


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def fake_downloader():
    return FakeDownloader()


@pytest.fixture
def workspace(tmp_path):
    """A fresh workspace skeleton."""
    return create_workspace(tmp_path / "workspace")


@pytest.fixture
def source_iso(tmp_path):
    """A local jammy ISO."""
    path = tmp_path / "isos" / JAMMY_ISO
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(ISO_CONTENT)
    return path


@pytest.fixture
def focal_iso(tmp_path):
    """A local focal ISO."""
    path = tmp_path / "isos" / FOCAL_ISO
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(ISO_CONTENT)
    return path


@pytest.fixture
def make_pipeline(workspace, fake_runner, fake_downloader, test_settings):
    """Build a pipeline over the test workspace and fakes."""
    def _make(**kwargs):
        kwargs.setdefault("tool_lookup", all_tools_present)
        kwargs.setdefault("settings", test_settings)
        return BuildPipeline(
            workspace,
            runner=fake_runner,
            downloader=fake_downloader,
            **kwargs,
        )
    return _make


@pytest.fixture
def gate(fake_runner):
    """Blocks extraction until released, so a job can be observed mid-build."""
    entered = threading.Event()
    release = threading.Event()

    def blocking_extract(command):
        entered.set()
        release.wait(10)
        return FakeRunner._extract_7z(command)

    fake_runner.on("7z", blocking_extract)
    yield entered, release
    release.set()


@pytest.fixture
def registry(test_settings, fake_runner, fake_downloader):
    """A job registry whose pipelines run against the fakes."""
    reg = JobRegistry(
        settings=test_settings,
        workspaces=WorkspaceManager(test_settings.workspace_dir),
    )
    reg.pipeline_factory = lambda paths: BuildPipeline(
        paths,
        runner=fake_runner,
        downloader=fake_downloader,
        settings=test_settings,
        tool_lookup=all_tools_present,
    )
    return reg
