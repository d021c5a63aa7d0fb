"""First-boot home partition expansion artifacts.

Installs into the new root filesystem:
    - usr/local/sbin/expand-home-partition: grows the extended container and
      the home partition to the end of the device, then resize2fs, but only
      when the device has materially more room than was provisioned
    - etc/systemd/system/expand-home-partition.service: oneshot unit gated on
      the sentinel's absence
    - a multi-user.target.wants link enabling the unit

The script writes the sentinel once it has resized or found nothing to do,
so every later boot is a no-op. A failed attempt is retried next boot.
"""

from __future__ import annotations

from pathlib import Path

from ab_partitioner.config.settings import DEFAULT_EXPANSION_GROWTH_DIVISOR
from ab_partitioner.domain.models import PartitionPlan, PartitionRole
from ab_partitioner.logging import LoggerFactory


log = LoggerFactory.for_boot()

SCRIPT_PATH = "/usr/local/sbin/expand-home-partition"
SENTINEL_PATH = "/etc/home-partition-expanded"
SERVICE_NAME = "expand-home-partition.service"
SYSTEMD_DIR = "/etc/systemd/system"
WANTS_DIR = f"{SYSTEMD_DIR}/multi-user.target.wants"

SCRIPT_TEMPLATE = """#!/bin/bash

# First boot script to expand the home partition into unused device capacity.
# Runs once: @SENTINEL@ marks completion.

SENTINEL="@SENTINEL@"
HOME_PARTITION=@HOME_PARTITION@
EXTENDED_PARTITION=@EXTENDED_PARTITION@
GROWTH_DIVISOR=@GROWTH_DIVISOR@
# Size of the image as written; the trailing buffer inside it is not spare room.
PROVISIONED_SIZE=@PROVISIONED_SIZE@

if [ -f "$SENTINEL" ]; then
    echo "Home partition already expanded. Exiting."
    exit 0
fi

echo "Checking if home partition expansion is needed..."

HOME_SOURCE=$(findmnt -n -o SOURCE /home)
if [ -z "$HOME_SOURCE" ]; then
    echo "Error: Could not detect device. Exiting."
    exit 1
fi
DEVICE=$(echo "$HOME_SOURCE" | sed -E 's/p?[0-9]+$//')

CURRENT_SIZE=$(blockdev --getsize64 "$HOME_SOURCE")
DEVICE_SIZE=$(blockdev --getsize64 "$DEVICE")
if [ -z "$CURRENT_SIZE" ] || [ -z "$DEVICE_SIZE" ]; then
    echo "Error: Could not read partition geometry. Exiting."
    exit 1
fi
AVAILABLE=$((CURRENT_SIZE + DEVICE_SIZE - PROVISIONED_SIZE))
EXPANSION_THRESHOLD=$((CURRENT_SIZE + (CURRENT_SIZE / GROWTH_DIVISOR)))

if [ "$AVAILABLE" -le "$EXPANSION_THRESHOLD" ]; then
    echo "Device doesn't have significant extra space. No expansion needed."
    touch "$SENTINEL"
    exit 0
fi

echo "Expanding home partition to fill available space ..."
parted -s "$DEVICE" resizepart "$EXTENDED_PARTITION" 100% || exit 1
parted -s "$DEVICE" resizepart "$HOME_PARTITION" 100% || exit 1
partprobe "$DEVICE" || true
resize2fs "$HOME_SOURCE" || exit 1
touch "$SENTINEL"
echo "Home partition expanded ..."
exit 0
"""

SERVICE_TEMPLATE = """[Unit]
Description=Expand home partition to fill remaining disk
After=local-fs.target
ConditionPathExists=!@SENTINEL@

[Service]
Type=oneshot
ExecStart=@SCRIPT@
RemainAfterExit=yes

[Install]
WantedBy=multi-user.target
"""


def render_expansion_script(
    plan: PartitionPlan,
    sentinel: str = SENTINEL_PATH,
    growth_divisor: int = DEFAULT_EXPANSION_GROWTH_DIVISOR,
) -> str:
    if growth_divisor <= 0:
        raise ValueError("growth_divisor must be positive")
    home = plan.by_role(PartitionRole.HOME)
    extended = plan.by_role(PartitionRole.EXTENDED)
    return (
        SCRIPT_TEMPLATE.replace("@SENTINEL@", sentinel)
        .replace("@HOME_PARTITION@", str(home.number))
        .replace("@EXTENDED_PARTITION@", str(extended.number))
        .replace("@GROWTH_DIVISOR@", str(growth_divisor))
        .replace("@PROVISIONED_SIZE@", str(plan.device_bytes))
    )


def render_service_unit(script: str = SCRIPT_PATH, sentinel: str = SENTINEL_PATH) -> str:
    return SERVICE_TEMPLATE.replace("@SENTINEL@", sentinel).replace("@SCRIPT@", script)


def _inside(new_root: Path, absolute: str) -> Path:
    return new_root / absolute.lstrip("/")


def install_expansion_service(
    new_root: Path,
    plan: PartitionPlan,
    growth_divisor: int = DEFAULT_EXPANSION_GROWTH_DIVISOR,
) -> Path:
    """Write the expansion script and enable its oneshot unit in new_root.

    Returns:
        Path of the installed script
    """
    log.info("Creating home partition expansion script ...")
    script = _inside(new_root, SCRIPT_PATH)
    script.parent.mkdir(parents=True, exist_ok=True)
    script.write_text(
        render_expansion_script(plan, growth_divisor=growth_divisor), encoding="utf-8"
    )
    script.chmod(0o755)

    unit_path = f"{SYSTEMD_DIR}/{SERVICE_NAME}"
    unit = _inside(new_root, unit_path)
    unit.parent.mkdir(parents=True, exist_ok=True)
    unit.write_text(render_service_unit(), encoding="utf-8")

    link = _inside(new_root, f"{WANTS_DIR}/{SERVICE_NAME}")
    link.parent.mkdir(parents=True, exist_ok=True)
    if link.is_symlink() or link.exists():
        link.unlink()
    # Absolute target: resolved inside the image on the device, not here.
    link.symlink_to(unit_path)
    log.debug(f"Enabled {SERVICE_NAME} via {link}")
    return script
