"""Final integrity checks and the optional digest sidecar."""

from __future__ import annotations

import subprocess
from pathlib import Path

from ab_partitioner.domain.models import BootSlotConfig
from ab_partitioner.logging import LoggerFactory

from .commands import command_error_message, run_command
from .exceptions import FinalVerificationError, VerificationError


log = LoggerFactory.for_system()


def find_verification_problems(
    new_boot: Path,
    required_files: list[str],
    slots: tuple[BootSlotConfig, ...] | list[BootSlotConfig],
) -> list[str]:
    """Describe everything wrong with the migrated boot partition."""
    problems: list[str] = []
    for filename in required_files:
        if not (new_boot / filename).is_file():
            problems.append(f"{filename} is missing from the boot partition")

    for slot in slots:
        cmdline = new_boot / slot.cmdline_filename
        if not cmdline.is_file():
            problems.append(f"{slot.cmdline_filename} is missing (slot {slot.slot})")
            continue
        tokens = cmdline.read_text(encoding="utf-8").split()
        if slot.root_parameter not in tokens:
            problems.append(
                f"{slot.cmdline_filename} does not contain {slot.root_parameter}"
            )
    return problems


def verify_output(
    new_boot: Path,
    required_files: list[str],
    slots: tuple[BootSlotConfig, ...] | list[BootSlotConfig],
) -> None:
    """Check required boot files and root selectors before teardown.

    Raises:
        FinalVerificationError: If any check fails
    """
    log.info("Performing final verification ...")
    problems = find_verification_problems(new_boot, required_files, slots)
    if problems:
        for problem in problems:
            log.error(problem)
        raise FinalVerificationError(problems)
    log.info("Final verification passed")


def compute_sha256(path: Path) -> str:
    """Compute the SHA256 checksum of a file with sha256sum."""
    log.debug(f"Computing sha256 for {path}")
    try:
        result = run_command(["sha256sum", str(path)], log_output=False)
    except subprocess.CalledProcessError as error:
        raise VerificationError(
            f"sha256sum failed for {path}: {command_error_message(error)}"
        ) from error
    checksum = result.stdout.split()[0] if result.stdout.strip() else ""
    if not checksum:
        raise VerificationError(f"sha256sum produced no output for {path}")
    log.debug(f"sha256 for {path}: {checksum}")
    return checksum


def digest_path_for(output_image: Path) -> Path:
    return output_image.with_name(output_image.name + ".sha256")


def write_digest_sidecar(output_image: Path) -> Path:
    """Write '<hex>  <name>' next to the output image, as sha256sum -c expects."""
    log.info("Creating SHA256 checksum ...")
    checksum = compute_sha256(output_image)
    sidecar = digest_path_for(output_image)
    sidecar.write_text(f"{checksum}  {output_image.name}\n", encoding="utf-8")
    log.info(f"Checksum written to {sidecar}")
    return sidecar
