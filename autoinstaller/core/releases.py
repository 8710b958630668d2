"""
Supported Ubuntu releases and the external-tool recipes tied to them.

Focal (20.04) ISOs boot through isolinux and are extracted with xorriso;
jammy and later boot through grub2 with an appended EFI partition and are
extracted with 7z. Adding a release means adding a table entry, and adding
a boot layout means adding a ReleaseFamily recipe.
"""
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from autoinstaller.core.command import Command
from autoinstaller.core.workspace import (
    GRUB_CONFIG_PATH,
    LOOPBACK_CONFIG_PATH,
    TXT_CONFIG_PATH,
)

# Ubuntu signing key for SHA256SUMS.gpg
UBUNTU_GPG_KEY_ID = "843938DF228D22F7B3742BC0D94AA3F0EFE21092"

ISO_SUFFIX = ".iso"
ISO_NAME_PATTERN = re.compile(r"ubuntu-(\d{2}\.04)(\.\d+)?-live-server-amd64\.iso")
ISO_LABEL_TEMPLATE = "ubuntu-server-{codename}-autoinstall"

# Needed by the legacy recipe to make the image hybrid-bootable
ISOHDPFX_PATH = Path("/usr/lib/ISOLINUX/isohdpfx.bin")


class ReleaseFamily(str, Enum):
    """Boot layout family of a release."""
    LEGACY = "legacy"    # isolinux + grub, focal
    CURRENT = "current"  # grub2 only, jammy and later


@dataclass(frozen=True)
class Release:
    """A supported Ubuntu Server release."""
    codename: str
    version: str
    family: ReleaseFamily


RELEASES: dict[str, Release] = {
    "focal": Release("focal", "20.04", ReleaseFamily.LEGACY),
    "jammy": Release("jammy", "22.04", ReleaseFamily.CURRENT),
    "noble": Release("noble", "24.04", ReleaseFamily.CURRENT),
}

SUPPORTED_CODENAMES = tuple(RELEASES)

UNKNOWN_CODENAME = "unknown"


class ImageNameError(Exception):
    """An ISO file name does not follow the Ubuntu naming scheme."""
    pass


def codename_for_version(version: str) -> str:
    """Map a version such as 22.04.5 to its codename, or 'unknown'."""
    for release in RELEASES.values():
        if version.startswith(release.version):
            return release.codename
    return UNKNOWN_CODENAME


def family_for(codename: str) -> ReleaseFamily:
    """Release family of a codename; unknown codenames use the current layout."""
    release = RELEASES.get(codename)
    if release is None:
        return ReleaseFamily.CURRENT
    return release.family


def iso_label(codename: str) -> str:
    """Volume label of the repackaged ISO."""
    return ISO_LABEL_TEMPLATE.format(codename=codename)


@dataclass(frozen=True)
class ImageMeta:
    """Fields parsed from an ISO name like ubuntu-22.04.5-live-server-amd64.iso."""
    distro: str
    version: str
    build: str
    variant: str
    arch: str
    ext: str
    codename: str

    @classmethod
    def from_filename(cls, filename: str) -> "ImageMeta":
        path = Path(filename)
        parts = path.stem.split("-")
        if len(parts) < 5:
            raise ImageNameError(f"unexpected ISO filename format: {path.name}")
        return cls(
            distro=parts[0],
            version=parts[1],
            build=parts[2],
            variant=parts[3],
            arch=parts[4],
            ext=path.suffix,
            codename=codename_for_version(parts[1]),
        )


def find_iso_name(page: str) -> Optional[str]:
    """First live-server ISO file name mentioned in a release page."""
    match = ISO_NAME_PATTERN.search(page)
    return match.group(0) if match else None


# xorriso arguments for repackaging, per family. {label} and {output} are
# substituted per argument; the commands run with cwd = build dir.
_CURRENT_REPACK_ARGS = (
    "xorriso", "-as", "mkisofs", "-r",
    "-V", "{label}",
    "-o", "{output}",
    "--grub2-mbr", "../BOOT/1-Boot-NoEmul.img",
    "-partition_offset", "16",
    "--mbr-force-bootable",
    "-append_partition", "2", "28732ac11ff8d211ba4b00a0c93ec93b", "../BOOT/2-Boot-NoEmul.img",
    "-appended_part_as_gpt",
    "-iso_mbr_part_type", "a2a0d0ebe5b9334487c068b6b72699c7",
    "-c", "/boot.catalog",
    "-b", "/boot/grub/i386-pc/eltorito.img",
    "-no-emul-boot", "-boot-load-size", "4", "-boot-info-table", "--grub2-boot-info",
    "-eltorito-alt-boot",
    "-e", "--interval:appended_partition_2:::",
    "-no-emul-boot",
    ".",
)

_LEGACY_REPACK_ARGS = (
    "xorriso", "-as", "mkisofs", "-r",
    "-V", "{label}",
    "-o", "{output}",
    "-J",
    "-b", "isolinux/isolinux.bin",
    "-c", "isolinux/boot.cat",
    "-no-emul-boot",
    "-boot-load-size", "4",
    "-isohybrid-mbr", str(ISOHDPFX_PATH),
    "-boot-info-table",
    "-input-charset", "utf-8",
    "-eltorito-alt-boot",
    "-e", "boot/grub/efi.img",
    "-no-emul-boot",
    "-isohybrid-gpt-basdat",
    ".",
)


@dataclass(frozen=True)
class ToolRecipe:
    """External-tool invocations and boot files for one release family."""
    family: ReleaseFamily
    extractor: str
    repack_args: tuple[str, ...]
    boot_configs: tuple[str, ...]
    md5_configs: tuple[str, ...]
    keep_boot_images: bool
    required_files: tuple[Path, ...] = ()

    def extract_command(self, source_iso: Path, build_dir: Path) -> Command:
        if self.extractor == "xorriso":
            return Command.of("xorriso", "-osirrox", "on", "-indev", source_iso, "-extract", "/", build_dir)
        return Command.of("7z", "-y", "x", source_iso, f"-o{build_dir}")

    def repackage_command(self, label: str, output: Path, build_dir: Path) -> Command:
        argv = tuple(
            arg.format(label=label, output=output) if "{" in arg else arg
            for arg in self.repack_args
        )
        return Command(argv=argv, cwd=build_dir)


RECIPES: dict[ReleaseFamily, ToolRecipe] = {
    ReleaseFamily.LEGACY: ToolRecipe(
        family=ReleaseFamily.LEGACY,
        extractor="xorriso",
        repack_args=_LEGACY_REPACK_ARGS,
        boot_configs=(GRUB_CONFIG_PATH, TXT_CONFIG_PATH, LOOPBACK_CONFIG_PATH),
        md5_configs=(GRUB_CONFIG_PATH, LOOPBACK_CONFIG_PATH),
        keep_boot_images=False,
        required_files=(ISOHDPFX_PATH,),
    ),
    ReleaseFamily.CURRENT: ToolRecipe(
        family=ReleaseFamily.CURRENT,
        extractor="7z",
        repack_args=_CURRENT_REPACK_ARGS,
        boot_configs=(GRUB_CONFIG_PATH,),
        md5_configs=(GRUB_CONFIG_PATH,),
        keep_boot_images=True,
    ),
}


def recipe_for(codename: str) -> ToolRecipe:
    return RECIPES[family_for(codename)]
