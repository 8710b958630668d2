"""
Build Pipeline - turns a stock Ubuntu Server ISO into an autoinstall ISO.

Stages run strictly in order against one workspace:

    prepare -> download|upload -> [verify] -> extract -> inject -> [packages]
            -> kernel -> hwe -> md5 -> repackage

The first failing stage aborts the build with a StageError naming it.
There are no stage-level retries; the few external calls that retry do so
through CommandRunner.run_with_retries.

Every external tool goes through the CommandRunner, every HTTP fetch through
the Downloader, and every path through WorkspacePaths.
"""
import gzip
import hashlib
import logging
import os
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

from autoinstaller.core import boot_config
from autoinstaller.core.boot_config import BootConfigError
from autoinstaller.core.command import Command, CommandResult, CommandRunner
from autoinstaller.core.downloads import DownloadError, Downloader
from autoinstaller.core.releases import (
    ISO_SUFFIX,
    RECIPES,
    SUPPORTED_CODENAMES,
    UBUNTU_GPG_KEY_ID,
    UNKNOWN_CODENAME,
    ImageMeta,
    ImageNameError,
    ReleaseFamily,
    ToolRecipe,
    family_for,
    find_iso_name,
    iso_label,
)
from autoinstaller.core.settings import Settings, get_settings
from autoinstaller.core.workspace import (
    DEFAULT_DIR_MODE,
    GRUB_CONFIG_PATH,
    TXT_CONFIG_PATH,
    WorkspaceError,
    WorkspacePaths,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

SOURCE_LOCAL = "local"
SOURCE_DOWNLOAD = "download"
SOURCE_TYPES = (SOURCE_LOCAL, SOURCE_DOWNLOAD)

NETWORK_CHECK_HOST = "8.8.8.8"

# Tool probed on PATH -> apt packages that provide it
REQUIRED_TOOLS: dict[str, tuple[str, ...]] = {
    "xorriso": ("xorriso", "isolinux", "binutils", "fakeroot"),
    "sed": ("sed",),
    "curl": ("curl",),
    "gpg": ("gpg",),
    "7z": ("p7zip-full",),
    "dpkg-scanpackages": ("dpkg-dev",),
    "aptitude": ("aptitude",),
}

APT_CACHE_DEPENDS_FLAGS = (
    "--recurse",
    "--no-recommends",
    "--no-suggests",
    "--no-conflicts",
    "--no-breaks",
    "--no-replaces",
    "--no-enhances",
    "--no-pre-depends",
)

PACKAGES_INDEX = "Packages"
PACKAGES_INDEX_GZ = "Packages.gz"

HWE_UNSUPPORTED_MESSAGE = (
    "This source ISO does not support the HWE kernel. Proceeding with the regular kernel"
)

CANCELLED_MESSAGE = "cancelled"


class Stage(str, Enum):
    """Pipeline stage names, as they appear in job steps."""
    PREPARE = "prepare"
    DOWNLOAD = "download"
    UPLOAD = "upload"
    VERIFY = "verify"
    EXTRACT = "extract"
    INJECT = "inject"
    PACKAGES = "packages"
    KERNEL = "kernel"
    HWE = "hwe"
    MD5 = "md5"
    REPACKAGE = "repackage"


# Progress reported once a stage completes
STAGE_PROGRESS: dict[Stage, int] = {
    Stage.PREPARE: 10,
    Stage.UPLOAD: 20,
    Stage.DOWNLOAD: 30,
    Stage.VERIFY: 40,
    Stage.EXTRACT: 50,
    Stage.INJECT: 60,
    Stage.PACKAGES: 65,
    Stage.KERNEL: 70,
    Stage.HWE: 80,
    Stage.MD5: 90,
    Stage.REPACKAGE: 100,
}

# (log line when started, log line when completed)
STAGE_MESSAGES: dict[Stage, tuple[str, str]] = {
    Stage.PREPARE: ("Preparing temporary directory...", "Temporary directory prepared"),
    Stage.DOWNLOAD: ("Downloading ISO...", "ISO downloaded successfully"),
    Stage.UPLOAD: ("Using previously uploaded local ISO...", "Local ISO ready"),
    Stage.VERIFY: ("Verifying ISO (GPG)...", "ISO verified successfully"),
    Stage.EXTRACT: ("Extracting ISO contents...", "ISO contents extracted"),
    Stage.INJECT: ("Injecting user-data configuration...", "user-data injected"),
    Stage.PACKAGES: ("Preparing additional packages...", "Extra packages prepared"),
    Stage.KERNEL: ("Adding autoinstall kernel parameters...", "Kernel parameters added"),
    Stage.HWE: ("Configuring HWE kernel if requested...", "HWE kernel configuration processed"),
    Stage.MD5: ("Updating MD5 checksums if requested...", "MD5 checksums updated"),
    Stage.REPACKAGE: ("Repackaging ISO image...", "ISO repackaged successfully"),
}

# Prefix of the error message when a stage fails
STAGE_FAILURES: dict[Stage, str] = {
    Stage.PREPARE: "preprocessing failed",
    Stage.DOWNLOAD: "ISO download failed",
    Stage.UPLOAD: "local ISO unavailable",
    Stage.VERIFY: "ISO verification failed",
    Stage.EXTRACT: "ISO extraction failed",
    Stage.INJECT: "failed to add config data",
    Stage.PACKAGES: "failed to download and prepare packages",
    Stage.KERNEL: "failed to add autoinstall parameter",
    Stage.HWE: "failed to configure HWE kernel",
    Stage.MD5: "failed to update MD5 checksum",
    Stage.REPACKAGE: "failed to repackage ISO",
}


# =============================================================================
# Errors
# =============================================================================

class BuildRequestError(Exception):
    """A build request is structurally invalid."""
    pass


class IntegrityError(Exception):
    """The image digest is not listed in the signed checksum manifest."""
    pass


class BuildCancelled(Exception):
    """The build was cancelled between stages."""
    pass


class StageError(Exception):
    """A stage failed; carries the stage name."""

    def __init__(self, stage: Stage, message: str):
        self.stage = stage
        self.message = message
        super().__init__(f"{STAGE_FAILURES[stage]}: {message}")


# =============================================================================
# Request
# =============================================================================

@dataclass(frozen=True)
class BuildRequest:
    """Parameters of one build. Never mutated once accepted."""
    source_type: str
    destination_iso: str
    source_iso: str = ""
    codename: str = ""
    user_data: Union[str, bytes] = ""
    package_list: tuple[str, ...] = ()
    use_hwe_kernel: bool = False
    md5_checksum: bool = False
    gpg_verify: bool = False

    def __post_init__(self):
        object.__setattr__(self, "package_list", tuple(self.package_list or ()))

    def validate(self) -> None:
        """
        Structural checks only: source mode consistency, required fields,
        output suffix, no NUL bytes in paths.

        Raises:
            BuildRequestError: on the first problem found
        """
        if self.source_type not in SOURCE_TYPES:
            raise BuildRequestError("source_type must be 'local' or 'download'")
        if self.source_type == SOURCE_LOCAL and not self.source_iso:
            raise BuildRequestError("source_iso is required when source_type is 'local'")
        if self.source_type == SOURCE_DOWNLOAD and not self.codename:
            raise BuildRequestError("codename is required when source_type is 'download'")
        if self.codename and self.codename not in SUPPORTED_CODENAMES:
            raise BuildRequestError(
                f"codename must be one of: {', '.join(SUPPORTED_CODENAMES)}"
            )
        if not self.destination_iso.endswith(ISO_SUFFIX):
            raise BuildRequestError("destination_iso must end with .iso extension")
        if "\x00" in self.destination_iso:
            raise BuildRequestError("destination_iso must not contain NUL bytes")
        if "\x00" in self.source_iso:
            raise BuildRequestError("source_iso must not contain NUL bytes")


# =============================================================================
# Progress reporting
# =============================================================================

class BuildReporter:
    """Receives stage transitions and log lines. The default drops them."""

    def stage_started(self, stage: Stage, message: str) -> None:
        pass

    def stage_completed(self, stage: Stage, progress: int, message: str) -> None:
        pass

    def log(self, message: str) -> None:
        pass


@dataclass
class _BuildState:
    """What earlier stages learned, for the later ones."""
    request: BuildRequest
    codename: str
    recipe: ToolRecipe
    image: Optional[Path] = None
    output: Optional[Path] = None
    modified_configs: list[str] = field(default_factory=list)


# =============================================================================
# Pipeline
# =============================================================================

class BuildPipeline:
    """Runs the build stages for one workspace."""

    def __init__(
        self,
        paths: WorkspacePaths,
        runner: Optional[CommandRunner] = None,
        downloader: Optional[Downloader] = None,
        settings: Optional[Settings] = None,
        tool_lookup: Callable[[str], Optional[str]] = shutil.which,
        recipes: Optional[dict[ReleaseFamily, ToolRecipe]] = None,
    ):
        self.settings = settings or get_settings()
        self.paths = paths
        self.runner = runner or CommandRunner(self.settings)
        self.downloader = downloader or Downloader(self.settings)
        self.tool_lookup = tool_lookup
        self.recipes = recipes or RECIPES
        self._reporter = BuildReporter()

    def recipe_for(self, codename: str) -> ToolRecipe:
        return self.recipes[family_for(codename)]

    def run(
        self,
        request: BuildRequest,
        reporter: Optional[BuildReporter] = None,
        cancelled: Optional[Callable[[], bool]] = None,
    ) -> Path:
        """
        Run every applicable stage and return the repackaged ISO path.

        Raises:
            StageError: the first stage that failed
            BuildCancelled: `cancelled()` returned True before a stage
        """
        self._reporter = reporter or BuildReporter()
        codename = request.codename or UNKNOWN_CODENAME
        state = _BuildState(request=request, codename=codename, recipe=self.recipe_for(codename))
        if request.source_type == SOURCE_LOCAL:
            # Host files checked in prepare depend on the local image's release
            state.image = Path(request.source_iso)
            self._identify_release(state)

        self._stage(Stage.PREPARE, self._prepare, state, cancelled)

        if request.source_type == SOURCE_DOWNLOAD:
            self._stage(Stage.DOWNLOAD, self._download, state, cancelled)
            self._identify_release(state)
            if request.gpg_verify:
                self._stage(Stage.VERIFY, self._verify, state, cancelled)
        else:
            self._stage(Stage.UPLOAD, self._upload, state, cancelled)
            self._identify_release(state)

        self._stage(Stage.EXTRACT, self._extract, state, cancelled)
        self._stage(Stage.INJECT, self._inject, state, cancelled)
        if boot_config.normalize_package_names(request.package_list):
            self._stage(Stage.PACKAGES, self._packages, state, cancelled)
        self._stage(Stage.KERNEL, self._kernel, state, cancelled)
        self._stage(Stage.HWE, self._hwe, state, cancelled)
        self._stage(Stage.MD5, self._md5, state, cancelled)
        self._stage(Stage.REPACKAGE, self._repackage, state, cancelled)

        return state.output

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    def _stage(
        self,
        stage: Stage,
        action: Callable[[_BuildState], None],
        state: _BuildState,
        cancelled: Optional[Callable[[], bool]],
    ) -> None:
        if cancelled is not None and cancelled():
            logger.info(f"build_cancelled before_stage={stage.value}")
            raise BuildCancelled(CANCELLED_MESSAGE)

        started, completed = STAGE_MESSAGES[stage]
        self._reporter.stage_started(stage, started)
        logger.info(f"stage_start stage={stage.value}", extra={"stage": stage.value})

        try:
            action(state)
        except StageError:
            raise
        except (
            BootConfigError,
            DownloadError,
            ImageNameError,
            IntegrityError,
            WorkspaceError,
            OSError,
        ) as e:
            raise StageError(stage, str(e)) from e

        self._reporter.stage_completed(stage, STAGE_PROGRESS[stage], completed)
        logger.info(f"stage_done stage={stage.value}", extra={"stage": stage.value})

    def _run(
        self,
        stage: Stage,
        command: Command,
        attempts: int = 1,
        delay: Optional[float] = None,
    ) -> CommandResult:
        """Run a command that must succeed, surfacing its output on failure."""
        if attempts > 1:
            delay = self.settings.retry_delay_s if delay is None else delay
            result = self.runner.run_with_retries(command, attempts, delay)
        else:
            result = self.runner.run(command)

        if not result.ok:
            self._log_failed_output(result)
            raise StageError(stage, str(result.error))
        return result

    def _log_failed_output(self, result: CommandResult) -> None:
        if result.stdout.strip():
            self._reporter.log(f"stdout: {result.stdout.strip()}")
        if result.stderr.strip():
            self._reporter.log(f"stderr: {result.stderr.strip()}")

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self._reporter.log(f"WARNING: {message}")

    def _identify_release(self, state: _BuildState) -> None:
        """Take the release from the image file name when it is recognizable."""
        try:
            meta = ImageMeta.from_filename(state.image.name)
        except ImageNameError:
            meta = None

        if meta is not None and meta.codename != UNKNOWN_CODENAME:
            codename = meta.codename
        else:
            codename = state.request.codename or UNKNOWN_CODENAME

        if codename != state.codename:
            logger.info(f"release_identified codename={codename} image={state.image.name}")
        state.codename = codename
        state.recipe = self.recipe_for(codename)

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _prepare(self, state: _BuildState) -> None:
        self.paths.ensure_skeleton()

        missing = [tool for tool in REQUIRED_TOOLS if self.tool_lookup(tool) is None]
        if missing:
            packages = []
            for tool in missing:
                for name in REQUIRED_TOOLS[tool]:
                    if name not in packages:
                        packages.append(name)
            logger.info(f"tools_missing tools={','.join(missing)} installing={' '.join(packages)}")
            self._reporter.log(f"Installing missing tools: {', '.join(missing)}")

            self._run(
                Stage.PREPARE,
                Command.of("ping", "-c", "1", "-w", "1", NETWORK_CHECK_HOST),
                attempts=self.settings.retry_attempts,
            )
            self._run(
                Stage.PREPARE,
                Command.of("apt-get", "update", "-y"),
                attempts=self.settings.retry_attempts,
            )
            self._run(
                Stage.PREPARE,
                Command.of("apt-get", "install", "-y", *packages),
                attempts=self.settings.retry_attempts,
            )

        for required in state.recipe.required_files:
            if not Path(required).exists():
                raise StageError(
                    Stage.PREPARE,
                    f"{required} not found; on Ubuntu, install the 'isolinux' package",
                )

    def _download(self, state: _BuildState) -> None:
        codename = state.request.codename
        release_url = f"{self.settings.release_base_url}{codename}"

        page = self._run(Stage.DOWNLOAD, Command.of("curl", "-sSL", release_url))
        iso_name = find_iso_name(page.stdout)
        if iso_name is None:
            raise StageError(Stage.DOWNLOAD, "no ISO file found on the download page")

        image = self.paths.download_file(iso_name)
        if image.exists():
            self._reporter.log(f"Using existing {image.name}")
        else:
            self._reporter.log(f"Downloading {iso_name}")
        self.downloader.fetch_if_missing(f"{release_url}/{iso_name}", image)
        state.image = image

    def _upload(self, state: _BuildState) -> None:
        image = Path(state.request.source_iso)
        if not image.is_file():
            raise StageError(Stage.UPLOAD, f"local ISO not found: {image}")
        state.image = image

    def _verify(self, state: _BuildState) -> None:
        release_url = f"{self.settings.release_base_url}{state.request.codename}"
        sums = self.paths.sha256sums_file(state.request.codename)
        signature = self.paths.sha256sums_gpg_file(state.request.codename)
        keyring = self.paths.keyring_file(UBUNTU_GPG_KEY_ID)

        if sums.exists() and signature.exists():
            self._reporter.log("Using existing SHA256SUMS & SHA256SUMS.gpg files")
        else:
            self.downloader.fetch(f"{release_url}/SHA256SUMS", sums)
            self.downloader.fetch(f"{release_url}/SHA256SUMS.gpg", signature)

        if not keyring.exists():
            self._reporter.log("Downloading Ubuntu signing key...")
            self._run(
                Stage.VERIFY,
                Command.of(
                    "gpg", "--no-default-keyring",
                    "--keyring", keyring,
                    "--keyserver", self.settings.keyserver,
                    "--recv-keys", UBUNTU_GPG_KEY_ID,
                ),
                attempts=self.settings.retry_attempts,
            )

        try:
            self._run(Stage.VERIFY, Command.of("gpg", "--keyring", keyring, "--verify", signature, sums))
        finally:
            # gpg leaves a backup of the keyring behind
            keyring.with_name(keyring.name + "~").unlink(missing_ok=True)

        digest = _sha256_of(state.image)
        if digest not in sums.read_text(encoding="utf-8", errors="replace"):
            raise IntegrityError(
                f"verification of ISO digest failed: {digest} not listed in {sums.name}"
            )

    def _extract(self, state: _BuildState) -> None:
        recipe = state.recipe
        self.paths.reset_build_tree()
        self._run(Stage.EXTRACT, recipe.extract_command(state.image, self.paths.build_dir))

        boot_iso_dir = self.paths.boot_iso_dir
        if recipe.keep_boot_images:
            if self.paths.boot_dir.exists():
                shutil.rmtree(self.paths.boot_dir)
            if boot_iso_dir.exists():
                shutil.move(str(boot_iso_dir), str(self.paths.boot_dir))
        elif boot_iso_dir.exists():
            shutil.rmtree(boot_iso_dir)

        _chmod_tree(self.paths.build_dir, DEFAULT_DIR_MODE)

    def _inject(self, state: _BuildState) -> None:
        user_data = state.request.user_data
        if isinstance(user_data, str):
            user_data = user_data.encode("utf-8")
        self.paths.user_data_file.write_bytes(user_data)
        boot_config.touch(self.paths.meta_data_file)

        for relative in state.recipe.boot_configs:
            args = (
                boot_config.ISOLINUX_AUTOINSTALL_ARGS
                if relative == TXT_CONFIG_PATH
                else boot_config.GRUB_AUTOINSTALL_ARGS
            )
            if boot_config.patch_kernel_args(self.paths.build_file(relative), args):
                state.modified_configs.append(relative)

    def _packages(self, state: _BuildState) -> None:
        names = boot_config.normalize_package_names(state.request.package_list)
        packages_dir = self.paths.packages_dir

        for name in names:
            deps = self._resolve_dependencies(name)
            if not deps:
                self._warn(f"No dependencies found for {name}")
                continue
            self._reporter.log(f"Downloading {len(deps)} packages for {name}")
            for dep in deps:
                result = self.runner.run(Command.of("apt-get", "download", dep, cwd=packages_dir))
                if not result.ok:
                    self._warn(f"Failed to download dependency {dep}: {result.error}")

        index = self._run(Stage.PACKAGES, Command.of("dpkg-scanpackages", "./", cwd=packages_dir))
        index_file = packages_dir / PACKAGES_INDEX
        index_file.write_text(index.stdout, encoding="utf-8")
        with open(index_file, "rb") as src, gzip.open(packages_dir / PACKAGES_INDEX_GZ, "wb", compresslevel=9) as dst:
            shutil.copyfileobj(src, dst)

        boot_config.write_install_script(self.paths.script_file(), names)

    def _resolve_dependencies(self, name: str) -> list[str]:
        """apt-cache closure of a package, or aptitude's providers when that is empty."""
        result = self.runner.run(Command.of("apt-cache", "depends", *APT_CACHE_DEPENDS_FLAGS, name))
        if result.ok and result.stdout.strip():
            return boot_config.filter_dependencies(result.stdout)

        logger.info(f"dependency_fallback package={name} resolver=aptitude")
        self._reporter.log(f"apt-cache found nothing for {name}, trying aptitude")
        fallback = self.runner.run(Command.of("aptitude", "show", name))
        if not fallback.ok:
            self._log_failed_output(fallback)
            raise StageError(
                Stage.PACKAGES,
                f"failed to resolve dependencies for {name}: {fallback.error}",
            )
        return boot_config.filter_dependencies(boot_config.parse_provided_by(fallback.stdout))

    def _kernel(self, state: _BuildState) -> None:
        for relative in state.recipe.boot_configs:
            path = self.paths.build_file(relative)
            if boot_config.patch_kernel_args(path, boot_config.AUTOINSTALL_KEYWORD):
                if relative not in state.modified_configs:
                    state.modified_configs.append(relative)

    def _hwe(self, state: _BuildState) -> None:
        if not state.request.use_hwe_kernel:
            return

        grub = self.paths.build_file(GRUB_CONFIG_PATH)
        if not grub.exists() or not boot_config.supports_hwe(grub.read_text(encoding="utf-8", errors="replace")):
            self._warn(HWE_UNSUPPORTED_MESSAGE)
            return

        self._reporter.log("Destination ISO will use HWE kernel")
        for relative in state.recipe.boot_configs:
            if boot_config.patch_hwe(self.paths.build_file(relative)):
                if relative not in state.modified_configs:
                    state.modified_configs.append(relative)

    def _md5(self, state: _BuildState) -> None:
        manifest = self.paths.md5sum_file
        if state.request.md5_checksum:
            written = boot_config.update_md5_manifest(
                manifest, self.paths.build_dir, state.recipe.md5_configs
            )
            self._reporter.log(f"Updated hashes for {', '.join(written) or 'no files'}")
        else:
            boot_config.clear_md5_manifest(manifest)
            self._reporter.log("Cleared hashes")

    def _repackage(self, state: _BuildState) -> None:
        destination = state.request.destination_iso
        if not destination.endswith(ISO_SUFFIX):
            raise StageError(Stage.REPACKAGE, "verification of iso image format failed")

        output = self.paths.download_file(Path(destination).name)
        label = iso_label(state.codename)
        self._run(
            Stage.REPACKAGE,
            state.recipe.repackage_command(label, output, self.paths.build_dir),
        )
        state.output = output
        self._reporter.log(f"Repackaged into {output}")


def _sha256_of(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _chmod_tree(root: Path, mode: int) -> None:
    os.chmod(root, mode)
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            target = os.path.join(dirpath, name)
            if not os.path.islink(target):
                os.chmod(target, mode)
