"""
Tests for boot config, md5 manifest and package helpers.

Tests cover:
- Kernel argument insertion (quiet, end of line, indentation, idempotence)
- HWE kernel switch
- md5sum.txt upserts
- apt-cache / aptitude output parsing
- Install script rendering
"""
import hashlib
import os
import stat

from autoinstaller.core.boot_config import (
    GRUB_AUTOINSTALL_ARGS,
    INSTALL_SCRIPT_HEADER,
    ISOLINUX_AUTOINSTALL_ARGS,
    clear_md5_manifest,
    filter_dependencies,
    insert_kernel_args,
    normalize_package_names,
    parse_provided_by,
    patch_hwe,
    patch_kernel_args,
    render_install_script,
    supports_hwe,
    switch_to_hwe,
    touch,
    update_md5_manifest,
    upsert_md5_entries,
    write_install_script,
)


# =============================================================================
# Kernel Argument Tests
# =============================================================================

class TestInsertKernelArgs:
    """Tests for kernel command line edits."""

    def test_inserts_after_quiet(self):
        text = "\tlinux\t/casper/vmlinuz  quiet  ---"
        result, changed = insert_kernel_args(text, GRUB_AUTOINSTALL_ARGS)
        assert changed == 1
        assert result == "\tlinux /casper/vmlinuz quiet autoinstall ds=nocloud\\;s=/cdrom/ ---"

    def test_inserts_before_terminator_without_quiet(self):
        text = "  append initrd=/casper/initrd ---"
        result, changed = insert_kernel_args(text, ISOLINUX_AUTOINSTALL_ARGS)
        assert changed == 1
        assert result == "  append initrd=/casper/initrd autoinstall ds=nocloud;s=/cdrom/ ---"

    def test_keeps_indentation(self):
        text = "        linux /casper/vmlinuz quiet ---"
        result, _ = insert_kernel_args(text, "autoinstall")
        assert result.startswith("        linux ")

    def test_leaves_other_lines_alone(self):
        text = 'menuentry "Install" {\n\tset gfxpayload=keep\n\tlinux /casper/vmlinuz quiet ---\n\tinitrd /casper/initrd\n}\n'
        result, changed = insert_kernel_args(text, "autoinstall")
        assert changed == 1
        lines = result.split("\n")
        assert lines[0] == 'menuentry "Install" {'
        assert lines[1] == "\tset gfxpayload=keep"
        assert lines[3] == "\tinitrd /casper/initrd"
        assert result.endswith("}\n")

    def test_ignores_lines_without_terminator(self):
        text = "\tlinux /casper/vmlinuz quiet"
        result, changed = insert_kernel_args(text, "autoinstall")
        assert changed == 0
        assert result == text

    def test_idempotent(self):
        text = "\tlinux /casper/vmlinuz quiet ---\n\tlinux /casper/hwe-vmlinuz quiet ---\n"
        once, first = insert_kernel_args(text, GRUB_AUTOINSTALL_ARGS)
        twice, second = insert_kernel_args(once, GRUB_AUTOINSTALL_ARGS)
        assert first == 2
        assert second == 0
        assert once == twice

    def test_second_argument_set_not_added_twice(self):
        once, _ = insert_kernel_args("linux /casper/vmlinuz quiet ---", GRUB_AUTOINSTALL_ARGS)
        again, changed = insert_kernel_args(once, "autoinstall")
        assert changed == 0
        assert again.count("autoinstall") == 1

    def test_patch_file(self, tmp_path):
        cfg = tmp_path / "grub.cfg"
        cfg.write_text("\tlinux /casper/vmlinuz quiet ---\n")
        assert patch_kernel_args(cfg, GRUB_AUTOINSTALL_ARGS) is True
        assert "autoinstall ds=nocloud\\;s=/cdrom/" in cfg.read_text()
        assert stat.S_IMODE(os.stat(cfg).st_mode) == 0o644
        assert patch_kernel_args(cfg, GRUB_AUTOINSTALL_ARGS) is False

    def test_patch_missing_file(self, tmp_path):
        assert patch_kernel_args(tmp_path / "missing.cfg", "autoinstall") is False


class TestHwe:
    """Tests for the HWE kernel switch."""

    def test_switch_paths(self):
        text = "linux /casper/vmlinuz quiet ---\ninitrd /casper/initrd\n"
        result = switch_to_hwe(text)
        assert "linux /casper/hwe-vmlinuz quiet ---" in result
        assert "initrd /casper/hwe-initrd" in result

    def test_supports_hwe(self):
        assert supports_hwe("linux /casper/hwe-vmlinuz ---")
        assert not supports_hwe("linux /casper/vmlinuz ---")

    def test_patch_hwe_file(self, tmp_path):
        cfg = tmp_path / "grub.cfg"
        cfg.write_text("linux /casper/vmlinuz ---\n")
        assert patch_hwe(cfg) is True
        assert "/casper/hwe-vmlinuz" in cfg.read_text()

    def test_patch_hwe_missing_file(self, tmp_path):
        assert patch_hwe(tmp_path / "missing.cfg") is False


# =============================================================================
# md5sum.txt Tests
# =============================================================================

class TestMd5Manifest:
    """Tests for md5 manifest upserts."""

    MANIFEST = "aaaa  ./.disk/info\nbbbb  ./boot/grub/grub.cfg\ncccc  ./casper/vmlinuz\n"

    def test_replaces_in_place(self):
        result = upsert_md5_entries(self.MANIFEST, {"boot/grub/grub.cfg": "ffff"})
        lines = result.split("\n")
        assert lines[1] == "ffff  ./boot/grub/grub.cfg"
        assert lines[0] == "aaaa  ./.disk/info"
        assert lines[2] == "cccc  ./casper/vmlinuz"
        assert result.count("\n") == self.MANIFEST.count("\n")

    def test_matches_dot_slash_spelling(self):
        result = upsert_md5_entries(self.MANIFEST, {"./boot/grub/grub.cfg": "ffff"})
        assert "ffff  ./boot/grub/grub.cfg" in result
        assert "bbbb" not in result

    def test_keeps_original_spelling(self):
        manifest = "bbbb  boot/grub/grub.cfg\n"
        result = upsert_md5_entries(manifest, {"boot/grub/grub.cfg": "ffff"})
        assert result == "ffff  boot/grub/grub.cfg\n"

    def test_appends_new_entry(self):
        result = upsert_md5_entries(self.MANIFEST, {"boot/grub/loopback.cfg": "dddd"})
        assert result.endswith("dddd  ./boot/grub/loopback.cfg\n")
        assert result.startswith(self.MANIFEST)

    def test_empty_manifest(self):
        result = upsert_md5_entries("", {"boot/grub/grub.cfg": "ffff"})
        assert result == "ffff  ./boot/grub/grub.cfg\n"

    def test_update_file(self, tmp_path):
        build = tmp_path / "build"
        (build / "boot" / "grub").mkdir(parents=True)
        (build / "boot" / "grub" / "grub.cfg").write_text("patched")
        manifest = build / "md5sum.txt"
        manifest.write_text(self.MANIFEST)

        written = update_md5_manifest(
            manifest, build, ["boot/grub/grub.cfg", "boot/grub/loopback.cfg"],
        )

        digest = hashlib.md5(b"patched").hexdigest()
        assert written == ["boot/grub/grub.cfg"]
        assert f"{digest}  ./boot/grub/grub.cfg" in manifest.read_text()
        assert "loopback" not in manifest.read_text()

    def test_clear(self, tmp_path):
        manifest = tmp_path / "md5sum.txt"
        manifest.write_text(self.MANIFEST)
        clear_md5_manifest(manifest)
        assert manifest.read_text() == ""


# =============================================================================
# Package Tests
# =============================================================================

class TestPackages:
    """Tests for package list and resolver output parsing."""

    def test_normalize_package_names(self):
        assert normalize_package_names(["  curl ", "", "# comment", "vim"]) == ["curl", "vim"]

    def test_filter_dependencies(self):
        output = (
            "curl\n"
            "  Depends: libc6\n"
            "  Depends: <libcurl4>\n"
            "libc6\n"
            "libc6:i386\n"
            "<virtual-pkg>\n"
            "libcurl4\n"
            "libc6\n"
        )
        assert filter_dependencies(output) == ["curl", "libc6", "libcurl4"]

    def test_filter_dependencies_empty(self):
        assert filter_dependencies("") == []

    def test_parse_provided_by(self):
        output = (
            "Package: vim\n"
            "State: not a real package (virtual)\n"
            "Provided by: vim-gtk3 (2:8.2.3995)\n"
            "Provided by: vim-nox (2:8.2.3995)\n"
        )
        assert parse_provided_by(output) == "vim-gtk3\nvim-nox"

    def test_parse_provided_by_none(self):
        assert parse_provided_by("Package: curl\nState: installed\n") == ""

    def test_render_install_script(self):
        script = render_install_script(["curl", "vim"])
        assert script.startswith(INSTALL_SCRIPT_HEADER)
        assert script.endswith("apt-get install -y curl\napt-get install -y vim\n")
        assert "file:///mnt/packages/ ./" in script

    def test_write_install_script_is_executable(self, tmp_path):
        path = tmp_path / "install-pkgs.sh"
        write_install_script(path, ["curl"])
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o755

    def test_touch(self, tmp_path):
        path = tmp_path / "meta-data"
        touch(path)
        assert path.read_text() == ""
