"""
Text transforms applied to an extracted ISO tree.

Pure functions over strings (kernel command lines, md5 manifests, package
resolver output, the install script) plus thin file wrappers. The pipeline
decides which files to touch; nothing here knows about releases.
"""
import hashlib
import logging
import re
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

# grub needs the semicolon escaped, isolinux does not
GRUB_AUTOINSTALL_ARGS = "autoinstall ds=nocloud\\;s=/cdrom/"
ISOLINUX_AUTOINSTALL_ARGS = "autoinstall ds=nocloud;s=/cdrom/"
AUTOINSTALL_KEYWORD = "autoinstall"

KERNEL_LINE_PREFIXES = ("append", "linux")
KERNEL_ARGS_TERMINATOR = "---"
QUIET_ARG = "quiet"

KERNEL_FILE = "/casper/vmlinuz"
INITRD_FILE = "/casper/initrd"
HWE_KERNEL_FILE = "/casper/hwe-vmlinuz"
HWE_INITRD_FILE = "/casper/hwe-initrd"
HWE_MARKER = "hwe-vmlinuz"

CONFIG_FILE_MODE = 0o644
SCRIPT_FILE_MODE = 0o755

DEPENDENCY_LINE = re.compile(r"^[A-Za-z0-9]")
EXCLUDED_ARCH = "i386"
PROVIDED_BY_MARKER = "Provided by"

INSTALL_SCRIPT_HEADER = """#!/bin/bash
# The default installation package will be downloaded to /cdrom/mnt/packages/ directory
cp /etc/apt/sources.list /etc/apt/sources.list.bak
echo 'deb [trusted=yes] file:///mnt/packages/ ./' > /etc/apt/sources.list
apt-get update
"""


class BootConfigError(Exception):
    """A boot configuration or manifest file could not be read or written."""
    pass


# =============================================================================
# Kernel command lines
# =============================================================================

def _is_kernel_line(line: str) -> bool:
    stripped = line.lstrip(" \t")
    return (
        stripped.startswith(KERNEL_LINE_PREFIXES)
        and line.rstrip(" \t").endswith(KERNEL_ARGS_TERMINATOR)
    )


def insert_kernel_args(text: str, args: str) -> tuple[str, int]:
    """
    Insert `args` into every kernel line of a boot config.

    A kernel line starts with `append` or `linux` (after indentation), ends
    with `---` and does not mention autoinstall yet. The args go right after
    `quiet`, or before `---` when there is no `quiet`. Indentation is kept,
    inner whitespace is collapsed to single spaces.

    Returns the new text and the number of lines changed. Running it again
    on its own output changes nothing.
    """
    lines = text.split("\n")
    changed = 0

    for i, line in enumerate(lines):
        if not line or not _is_kernel_line(line):
            continue
        if AUTOINSTALL_KEYWORD in line:
            continue

        body = line.lstrip(" \t")
        indent = line[:len(line) - len(body)]
        parts = body.rstrip(" \t")[:-len(KERNEL_ARGS_TERMINATOR)].split()
        if not parts:
            continue

        new_parts = []
        for part in parts:
            new_parts.append(part)
            if part == QUIET_ARG:
                new_parts.append(args)
        if QUIET_ARG not in parts:
            new_parts.append(args)

        lines[i] = indent + " ".join(new_parts) + " " + KERNEL_ARGS_TERMINATOR
        changed += 1

    return "\n".join(lines), changed


def switch_to_hwe(text: str) -> str:
    """Point kernel and initrd paths at their HWE counterparts."""
    return text.replace(KERNEL_FILE, HWE_KERNEL_FILE).replace(INITRD_FILE, HWE_INITRD_FILE)


def supports_hwe(grub_config: str) -> bool:
    return HWE_MARKER in grub_config


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="surrogateescape")
    except OSError as e:
        raise BootConfigError(f"failed to read {path.name}: {e}") from e


def _write(path: Path, content: str, mode: int = CONFIG_FILE_MODE) -> None:
    try:
        path.write_text(content, encoding="utf-8", errors="surrogateescape")
        path.chmod(mode)
    except OSError as e:
        raise BootConfigError(f"failed to write {path.name}: {e}") from e


def patch_kernel_args(path: Path, args: str) -> bool:
    """
    Apply insert_kernel_args to a file in place.

    Missing files are skipped. Returns True when the file was rewritten.
    """
    if not path.exists():
        logger.debug(f"boot_config_skip path={path} reason=missing")
        return False

    content, changed = insert_kernel_args(_read(path), args)
    if not changed:
        return False
    _write(path, content)
    logger.info(f"boot_config_patched file={path.name} lines={changed}")
    return True


def patch_hwe(path: Path) -> bool:
    """Apply switch_to_hwe to a file in place. Missing files are skipped."""
    if not path.exists():
        return False
    original = _read(path)
    content = switch_to_hwe(original)
    if content == original:
        return False
    _write(path, content)
    return True


# =============================================================================
# md5sum.txt manifest
# =============================================================================

def md5_of(path: Path) -> str:
    digest = hashlib.md5()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                digest.update(chunk)
    except OSError as e:
        raise BootConfigError(f"failed to hash {path.name}: {e}") from e
    return digest.hexdigest()


def _manifest_key(path: str) -> str:
    return path[2:] if path.startswith("./") else path


def upsert_md5_entries(manifest: str, entries: dict[str, str]) -> str:
    """
    Replace or add `<digest>  <path>` lines in an md5sum manifest.

    `entries` maps paths relative to the ISO root to digests. A path matches
    an existing line with or without a leading "./"; matched lines keep
    their original spelling and position, new paths are appended as
    "./<path>". Every other line is left untouched.
    """
    pending = {_manifest_key(path): digest for path, digest in entries.items()}
    lines = manifest.split("\n") if manifest else []

    for i, line in enumerate(lines):
        fields = line.split(None, 1)
        if len(fields) != 2:
            continue
        listed_path = fields[1].strip()
        key = _manifest_key(listed_path)
        if key in pending:
            lines[i] = f"{pending.pop(key)}  {listed_path}"

    # Keep a trailing newline at the end of the manifest
    trailing = bool(lines) and lines[-1] == ""
    if trailing:
        lines.pop()
    for key, digest in pending.items():
        lines.append(f"{digest}  ./{key}")
    if trailing or not manifest:
        lines.append("")

    return "\n".join(lines)


def update_md5_manifest(manifest_path: Path, build_dir: Path, relative_paths: Iterable[str]) -> list[str]:
    """
    Recompute digests of the given files and upsert them into the manifest.

    Files that don't exist are left out. Returns the paths written.
    """
    entries = {}
    for relative in relative_paths:
        target = build_dir / relative
        if target.exists():
            entries[relative] = md5_of(target)

    manifest = _read(manifest_path) if manifest_path.exists() else ""
    _write(manifest_path, upsert_md5_entries(manifest, entries))
    return list(entries)


def clear_md5_manifest(manifest_path: Path) -> None:
    _write(manifest_path, "")


# =============================================================================
# Extra packages
# =============================================================================

def normalize_package_names(packages: Iterable[str]) -> list[str]:
    """Trim names, drop blanks and '#' comments."""
    names = []
    for entry in packages:
        name = entry.strip()
        if name and not name.startswith("#"):
            names.append(name)
    return names


def filter_dependencies(output: str) -> list[str]:
    """
    Package names from `apt-cache depends --recurse` output.

    Only lines starting with a letter or digit are package names; the
    indented `Depends:` lines and `<virtual>` entries are dropped, as is
    anything mentioning i386. Order is kept, duplicates removed.
    """
    deps = []
    seen = set()
    for line in output.split("\n"):
        if not DEPENDENCY_LINE.match(line):
            continue
        name = line.strip()
        if not name or EXCLUDED_ARCH in name or name in seen:
            continue
        seen.add(name)
        deps.append(name)
    return deps


def parse_provided_by(output: str) -> str:
    """
    Provider names from `aptitude show` output, one per line.

    Each `Provided by: <name> (<version>)` line yields its third
    whitespace-separated field.
    """
    providers = []
    for line in output.split("\n"):
        if PROVIDED_BY_MARKER not in line:
            continue
        fields = line.split()
        if len(fields) >= 3:
            providers.append(fields[2].rstrip(","))
    return "\n".join(providers)


def render_install_script(packages: Iterable[str]) -> str:
    lines = [INSTALL_SCRIPT_HEADER]
    for name in packages:
        lines.append(f"apt-get install -y {name}\n")
    return "".join(lines)


def write_install_script(path: Path, packages: Iterable[str]) -> None:
    _write(path, render_install_script(packages), mode=SCRIPT_FILE_MODE)


def touch(path: Path, content: Optional[str] = None) -> None:
    """Create or overwrite a file with `content` (empty by default)."""
    _write(path, content or "")
