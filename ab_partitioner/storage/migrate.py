"""Content migration from the original image into slot A.

Steps:
    1. Root tree: rsync in archive mode (hard links, ACLs, xattrs, ownership),
       staying on one filesystem and skipping /boot.
    2. Boot tree: flat `cp -a` of the original boot partition.
    3. Critical boot files: byte comparison, one direct re-copy on mismatch.
       The re-copy is not verified again.
    4. Symlinks under the original root's /boot: the firmware overlays link
       becomes a real directory, other firmware links are skipped, any other
       link is replaced by a copy of its target when that target was copied.
    5. Kernel modules are re-owned by root.
"""

from __future__ import annotations

import filecmp
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from ab_partitioner.logging import LoggerFactory

from .commands import command_error_message, run_command
from .exceptions import CopyOperationError


log = LoggerFactory.for_migrate()

OVERLAYS_NAME = "overlays"
OVERLAYS_TARGET = "firmware/overlays"
FIRMWARE_MARKER = "firmware"
MODULES_DIR = Path("lib") / "modules"


@dataclass(frozen=True)
class SymlinkResolution:
    """What happened to one symlink found under the original /boot."""

    name: str
    target: str
    action: str  # "overlays", "skipped-firmware", "copied", "missing-target"


def measure_content_bytes(path: Path) -> int:
    """Apparent size in bytes of everything under path (du -s -b)."""
    try:
        result = run_command(["du", "-s", "-b", str(path)], log_output=False)
    except subprocess.CalledProcessError as error:
        raise CopyOperationError(
            f"Could not measure {path}: {command_error_message(error)}", source=str(path)
        ) from error
    return int(result.stdout.split()[0])


def copy_root_tree(original_root: Path, new_root: Path) -> None:
    """Archive-copy the original root filesystem, excluding /boot."""
    log.info("Copying root filesystem ...")
    command = [
        "rsync",
        "-aHAXx",
        "--exclude",
        "/boot",
        f"{original_root}/",
        f"{new_root}/",
    ]
    try:
        run_command(command, log_output=False)
    except subprocess.CalledProcessError as error:
        raise CopyOperationError(
            f"rsync failed: {command_error_message(error)}",
            source=str(original_root),
            destination=str(new_root),
        ) from error


def copy_boot_tree(original_boot: Path, new_boot: Path) -> None:
    """Copy the original boot partition's contents, preserving attributes."""
    log.info("Copying boot files ...")
    new_boot.mkdir(parents=True, exist_ok=True)
    try:
        run_command(["cp", "-a", f"{original_boot}/.", f"{new_boot}/"], log_output=False)
    except subprocess.CalledProcessError as error:
        raise CopyOperationError(
            f"cp failed: {command_error_message(error)}",
            source=str(original_boot),
            destination=str(new_boot),
        ) from error


def verify_critical_files(
    original_boot: Path, new_boot: Path, filenames: list[str]
) -> list[str]:
    """Compare critical boot files and re-copy any that differ, once.

    Returns:
        Names of the files that were re-copied
    """
    log.info("Verifying critical boot files ...")
    recopied: list[str] = []
    for filename in filenames:
        source = original_boot / filename
        destination = new_boot / filename
        if not source.is_file():
            log.debug(f"{filename} not present in original boot partition; skipping")
            continue
        if destination.is_file() and filecmp.cmp(source, destination, shallow=False):
            continue
        log.warning(f"{filename} may not have copied correctly. Trying direct copy ...")
        shutil.copy2(source, destination)
        recopied.append(filename)
    return recopied


def _copy_directory_contents(source: Path, destination: Path) -> None:
    destination.mkdir(parents=True, exist_ok=True)
    for entry in source.iterdir():
        target = destination / entry.name
        if entry.is_dir() and not entry.is_symlink():
            shutil.copytree(entry, target, symlinks=True, dirs_exist_ok=True)
        else:
            shutil.copy2(entry, target, follow_symlinks=False)


def _find_symlinks(directory: Path) -> list[Path]:
    links: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(directory):
        for name in sorted(dirnames + filenames):
            path = Path(dirpath) / name
            if path.is_symlink():
                links.append(path)
    return links


def resolve_boot_symlinks(
    original_root: Path, original_boot: Path, new_boot: Path
) -> list[SymlinkResolution]:
    """Replace symlinks under the original /boot with real content in new_boot."""
    log.info("Checking for boot directory symlinks ...")
    boot_dir = original_root / "boot"
    if not boot_dir.is_dir():
        return []

    resolutions: list[SymlinkResolution] = []
    for link in _find_symlinks(boot_dir):
        target = os.readlink(link)
        if not target:
            continue
        name = link.name

        if name == OVERLAYS_NAME and target == OVERLAYS_TARGET:
            overlays = new_boot / OVERLAYS_NAME
            if not overlays.is_dir():
                overlays.mkdir(parents=True, exist_ok=True)
                source_overlays = original_boot / OVERLAYS_NAME
                if source_overlays.is_dir():
                    _copy_directory_contents(source_overlays, overlays)
                    log.info("Created overlays directory with content from original boot")
            resolutions.append(SymlinkResolution(name, target, "overlays"))
            continue

        if FIRMWARE_MARKER in target:
            log.warning(f"Skipping firmware-related symlink: {name} -> {target}")
            resolutions.append(SymlinkResolution(name, target, "skipped-firmware"))
            continue

        # Absolute targets are looked up inside new_boot, never on the host.
        source_file = new_boot / target.lstrip("/")
        dest_file = new_boot / name
        if source_file.is_file():
            if dest_file.is_symlink():
                dest_file.unlink()
            shutil.copy2(source_file, dest_file)
            log.info(f"Copied file instead of symlink: {name} <- {target}")
            resolutions.append(SymlinkResolution(name, target, "copied"))
        else:
            log.warning(f"Not copying: {name} -> {target} (target not found)")
            resolutions.append(SymlinkResolution(name, target, "missing-target"))
    return resolutions


def ensure_overlays(original_boot: Path, new_boot: Path) -> bool:
    """Make sure new_boot has an overlays directory if the original had one.

    Returns:
        True if the directory had to be created
    """
    source_overlays = original_boot / OVERLAYS_NAME
    overlays = new_boot / OVERLAYS_NAME
    if overlays.is_dir() or not source_overlays.is_dir():
        return False
    _copy_directory_contents(source_overlays, overlays)
    log.info("Ensured overlays directory exists with proper content")
    return True


def fix_module_ownership(new_root: Path) -> None:
    """Re-own the kernel modules tree by root."""
    modules = new_root / MODULES_DIR
    if not modules.exists():
        log.debug(f"No {MODULES_DIR} in new root; skipping ownership fix-up")
        return
    try:
        run_command(["chown", "-R", "root:root", str(modules)], log_output=False)
    except subprocess.CalledProcessError as error:
        raise CopyOperationError(
            f"chown failed on {modules}: {command_error_message(error)}",
            destination=str(modules),
        ) from error


def migrate_content(
    original_boot: Path,
    original_root: Path,
    new_root: Path,
    new_boot: Path,
    critical_files: list[str],
) -> list[SymlinkResolution]:
    """Copy root and boot content from the original image into slot A."""
    copy_root_tree(original_root, new_root)
    copy_boot_tree(original_boot, new_boot)
    verify_critical_files(original_boot, new_boot, critical_files)
    resolutions = resolve_boot_symlinks(original_root, original_boot, new_boot)
    ensure_overlays(original_boot, new_boot)
    fix_module_ownership(new_root)
    return resolutions
