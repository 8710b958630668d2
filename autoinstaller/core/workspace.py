"""
Workspace layout for ISO builds.

A workspace is one directory tree holding everything a build touches:

    <root>/download/            fetched ISOs, SHA256SUMS, keyrings, output ISO
    <root>/BOOT/                boot images moved out of the extracted tree
    <root>/build/               extracted ISO contents (the tree repackaged)
    <root>/build/mnt/packages/  local apt repository for extra packages
    <root>/build/mnt/script/    generated install script
"""
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_DIR_MODE = 0o755

# Relative locations inside the extracted ISO
GRUB_CONFIG_PATH = "boot/grub/grub.cfg"
LOOPBACK_CONFIG_PATH = "boot/grub/loopback.cfg"
TXT_CONFIG_PATH = "isolinux/txt.cfg"
MD5SUM_FILE = "md5sum.txt"
META_DATA_FILE = "meta-data"
USER_DATA_FILE = "user-data"
SCRIPT_FILE_NAME = "install-pkgs.sh"

SHARED_WORKSPACE_NAME = "shared"


class WorkspaceError(Exception):
    """A workspace directory could not be created or reset."""
    pass


@dataclass(frozen=True)
class WorkspacePaths:
    """Canonical locations of every build artifact, derived from one root."""
    root: Path

    # Top-level directories
    @property
    def build_dir(self) -> Path:
        return self.root / "build"

    @property
    def download_dir(self) -> Path:
        return self.root / "download"

    @property
    def boot_dir(self) -> Path:
        return self.root / "BOOT"

    # Directories under build/
    @property
    def mount_dir(self) -> Path:
        return self.build_dir / "mnt"

    @property
    def boot_iso_dir(self) -> Path:
        """Where 7z puts the El Torito boot images of an extracted ISO."""
        return self.build_dir / "[BOOT]"

    @property
    def packages_dir(self) -> Path:
        return self.mount_dir / "packages"

    @property
    def scripts_dir(self) -> Path:
        return self.mount_dir / "script"

    def skeleton(self) -> list[Path]:
        """Every directory that must exist before a build starts."""
        return [
            self.root,
            self.download_dir,
            self.build_dir,
            self.mount_dir,
            self.packages_dir,
            self.scripts_dir,
        ]

    # Files
    def download_file(self, name: str) -> Path:
        return self.download_dir / name

    def script_file(self, name: str = SCRIPT_FILE_NAME) -> Path:
        return self.scripts_dir / name

    def build_file(self, relative: str) -> Path:
        return self.build_dir / relative

    @property
    def md5sum_file(self) -> Path:
        return self.build_file(MD5SUM_FILE)

    @property
    def grub_config_file(self) -> Path:
        return self.build_file(GRUB_CONFIG_PATH)

    @property
    def loopback_config_file(self) -> Path:
        return self.build_file(LOOPBACK_CONFIG_PATH)

    @property
    def txt_config_file(self) -> Path:
        return self.build_file(TXT_CONFIG_PATH)

    @property
    def meta_data_file(self) -> Path:
        return self.build_file(META_DATA_FILE)

    @property
    def user_data_file(self) -> Path:
        return self.build_file(USER_DATA_FILE)

    def sha256sums_file(self, suffix: str) -> Path:
        return self.download_dir / f"SHA256SUMS-{suffix}"

    def sha256sums_gpg_file(self, suffix: str) -> Path:
        return self.download_dir / f"SHA256SUMS-{suffix}.gpg"

    def keyring_file(self, key_id: str) -> Path:
        return self.download_dir / f"{key_id}.keyring"

    # Side effects
    def ensure_skeleton(self) -> None:
        """Create every skeleton directory, failing on the first that can't be made."""
        for directory in self.skeleton():
            try:
                directory.mkdir(mode=DEFAULT_DIR_MODE, parents=True, exist_ok=True)
            except OSError as e:
                raise WorkspaceError(f"failed to create directory {directory}: {e}") from e

    def reset_build_tree(self) -> None:
        """Drop a previous extraction and recreate the empty build skeleton."""
        for directory in (self.build_dir, self.boot_dir):
            if directory.exists():
                try:
                    shutil.rmtree(directory)
                except OSError as e:
                    raise WorkspaceError(f"failed to clear {directory}: {e}") from e
        self.ensure_skeleton()


def create_workspace(root: Path) -> WorkspacePaths:
    """Resolve the workspace layout under `root` and create its directories."""
    paths = WorkspacePaths(Path(root))
    paths.ensure_skeleton()
    logger.info(f"workspace_ready root={paths.root}")
    return paths


class WorkspaceManager:
    """Hands out a workspace per build job, or one shared workspace."""

    def __init__(self, base_dir: Path, isolate_jobs: bool = True):
        self._base_dir = Path(base_dir)
        self._isolate_jobs = isolate_jobs
        self._shared: Optional[WorkspacePaths] = None
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceError(f"failed to create directory {self._base_dir}: {e}") from e

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def isolate_jobs(self) -> bool:
        return self._isolate_jobs

    def workspace_for(self, job_id: str) -> WorkspacePaths:
        """Create (if needed) and return the workspace a job builds in."""
        if not self._isolate_jobs:
            if self._shared is None:
                self._shared = create_workspace(self._base_dir / SHARED_WORKSPACE_NAME)
            return self._shared
        return create_workspace(self._base_dir / job_id)

