"""End-to-end conversion of a single-boot image into an A/B image.

Stages run strictly in order, each wrapped in operation_context():
    measure   -> attach the original image, mount it, measure boot/root content
    geometry  -> build the immutable PartitionPlan
    allocate  -> copy the original image and grow it to the planned size
    partition -> write the new table and map every role to a device node
    format    -> create filesystems and labels
    migrate   -> mount the new layout and copy content into slot A
    bootconfig-> command lines, slot descriptors, fstab
    expansion -> first-boot home expansion service
    verify    -> required boot files and root selectors
All loop devices, mounts and the work directory are released (in reverse
order) before the optional digest is computed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ab_partitioner.config import settings
from ab_partitioner.domain.models import (
    ALIGNMENT_BYTES,
    MIB,
    BootSlotConfig,
    DeviceMapping,
    LayoutProfile,
    LayoutVariant,
    PartitionPlan,
    PartitionRole,
    get_profile,
)
from ab_partitioner.logging import LoggerFactory, operation_context

from .bootconfig import configure_boot
from .commands import run_command
from .expansion import install_expansion_service
from .format import format_plan
from .geometry import align_up, build_plan, compute_budget
from .image import create_image, ensure_free_space, image_size_bytes
from .migrate import SymlinkResolution, measure_content_bytes, migrate_content
from .partition import apply_plan, wait_for_partition_nodes
from .resources import ResourceManager
from .validation import REQUIRED_TOOLS
from .verification import verify_output, write_digest_sidecar


log = LoggerFactory.for_system()

ORIGINAL_BOOT_NUMBER = 1
ORIGINAL_ROOT_NUMBER = 2


@dataclass(frozen=True)
class ConversionOptions:
    """Everything one conversion run needs, resolved from settings and CLI."""

    input_image: Path
    output_image: Path
    profile: LayoutProfile
    write_digest: bool
    kernel_image: str = settings.DEFAULT_KERNEL_IMAGE
    critical_boot_files: tuple[str, ...] = ()
    required_boot_files: tuple[str, ...] = ()
    secondary_cmdline: str = "cmdline_b.txt"
    node_wait_attempts: int = settings.DEFAULT_NODE_WAIT_ATTEMPTS
    node_wait_interval: float = settings.DEFAULT_NODE_WAIT_INTERVAL
    expansion_growth_divisor: int = settings.DEFAULT_EXPANSION_GROWTH_DIVISOR

    @classmethod
    def from_settings(
        cls,
        input_image: Path,
        output_image: Path,
        variant: LayoutVariant | str | None = None,
        write_digest: bool | None = None,
    ) -> ConversionOptions:
        """Build options from the settings store; explicit arguments win.

        Raises:
            ValueError: If the variant name is unknown
        """
        profile = get_profile(variant or settings.get_setting("variant", settings.DEFAULT_VARIANT))
        if write_digest is None:
            configured = settings.get_setting("write_digest")
            write_digest = profile.write_digest if configured is None else bool(configured)
        return cls(
            input_image=Path(input_image),
            output_image=Path(output_image),
            profile=profile,
            write_digest=write_digest,
            kernel_image=str(settings.get_setting("kernel_image", settings.DEFAULT_KERNEL_IMAGE)),
            critical_boot_files=tuple(settings.get_list("critical_boot_files")),
            required_boot_files=tuple(settings.get_list("required_boot_files")),
            secondary_cmdline=str(settings.get_setting("secondary_cmdline", "cmdline_b.txt")),
            node_wait_attempts=settings.get_int(
                "node_wait_attempts", settings.DEFAULT_NODE_WAIT_ATTEMPTS
            ),
            node_wait_interval=settings.get_float(
                "node_wait_interval", settings.DEFAULT_NODE_WAIT_INTERVAL
            ),
            expansion_growth_divisor=settings.get_int(
                "expansion_growth_divisor", settings.DEFAULT_EXPANSION_GROWTH_DIVISOR
            ),
        )

    @property
    def required_tools(self) -> tuple[str, ...]:
        if self.write_digest:
            return REQUIRED_TOOLS + ("sha256sum",)
        return REQUIRED_TOOLS


@dataclass
class ConversionResult:
    output_image: Path
    plan: PartitionPlan
    slots: tuple[BootSlotConfig, BootSlotConfig]
    digest_path: Path | None = None
    symlinks: list[SymlinkResolution] = field(default_factory=list)


def destination_size_bytes(plan_required_bytes: int, original_bytes: int) -> int:
    """Destination image size: the planned total, never smaller than the original."""
    return max(plan_required_bytes, align_up(original_bytes, ALIGNMENT_BYTES))


def _mount_role(
    resources: ResourceManager,
    plan: PartitionPlan,
    mapping: DeviceMapping,
    role: PartitionRole,
    mountpoint: Path,
) -> Path:
    spec = plan.by_role(role)
    return resources.mount(mapping.node_for(role), mountpoint, spec.filesystem.mount_type)


def convert_image(options: ConversionOptions) -> ConversionResult:
    """Run the whole conversion. Pre-flight validation is the caller's job.

    Raises:
        StorageError: Any stage failure; every acquired resource is released
            before the exception propagates
    """
    profile = options.profile
    log.info(
        f"Converting {options.input_image} -> {options.output_image} "
        f"({profile.variant.value} layout)"
    )

    with ResourceManager() as resources:
        workdir = resources.make_tempdir()
        original_boot = workdir / "orig_boot"
        original_root = workdir / "orig_root"
        new_root = workdir / "new_root"

        with operation_context("measure", image=str(options.input_image)):
            source = resources.attach(options.input_image)
            source_nodes = wait_for_partition_nodes(
                source,
                [ORIGINAL_BOOT_NUMBER, ORIGINAL_ROOT_NUMBER],
                options.node_wait_attempts,
                options.node_wait_interval,
            )
            log.info("Mounting original partitions ...")
            resources.mount(source_nodes[ORIGINAL_BOOT_NUMBER], original_boot)
            resources.mount(source_nodes[ORIGINAL_ROOT_NUMBER], original_root)
            boot_bytes = measure_content_bytes(original_boot)
            root_bytes = measure_content_bytes(original_root)

        with operation_context("geometry", variant=profile.variant.value):
            original_bytes = image_size_bytes(options.input_image)
            budget = compute_budget(profile, boot_bytes, root_bytes)
            device_bytes = destination_size_bytes(budget.required_bytes, original_bytes)
            plan = build_plan(profile, boot_bytes, root_bytes, device_bytes)
            log.info("Partition plan:")
            for spec in plan:
                log.info(f"  {spec.describe()}")

        with operation_context("allocate", output=str(options.output_image)):
            ensure_free_space(options.output_image, original_bytes)
            create_image(options.input_image, options.output_image, device_bytes)
            destination = resources.attach(options.output_image)

        with operation_context("partition", device=destination):
            mapping = apply_plan(
                plan, destination, options.node_wait_attempts, options.node_wait_interval
            )

        with operation_context("format", device=destination):
            format_plan(plan, mapping)

        with operation_context("migrate"):
            log.info("Mounting new partitions ...")
            _mount_role(resources, plan, mapping, PartitionRole.ROOT_PRIMARY, new_root)
            new_boot = _mount_role(
                resources, plan, mapping, PartitionRole.BOOT_PRIMARY, new_root / "boot"
            )
            if profile.has_tryboot:
                _mount_role(
                    resources, plan, mapping, PartitionRole.TRYBOOT, new_root / "tryboot"
                )
            _mount_role(resources, plan, mapping, PartitionRole.HOME, new_root / "home")
            symlinks = migrate_content(
                original_boot,
                original_root,
                new_root,
                new_boot,
                list(options.critical_boot_files),
            )

        with operation_context("bootconfig"):
            slots = configure_boot(
                plan, mapping, new_root, options.kernel_image, options.secondary_cmdline
            )

        with operation_context("expansion"):
            install_expansion_service(new_root, plan, options.expansion_growth_divisor)

        with operation_context("verify"):
            verify_output(new_boot, list(options.required_boot_files), slots)

        log.info("Syncing file systems ...")
        run_command(["sync"], check=False, log_command=False)

    result = ConversionResult(
        output_image=options.output_image, plan=plan, slots=slots, symlinks=symlinks
    )
    if options.write_digest:
        with operation_context("digest", output=str(options.output_image)):
            result.digest_path = write_digest_sidecar(options.output_image)

    log_summary(result)
    return result


def log_summary(result: ConversionResult) -> None:
    """Log the produced layout once the image is complete."""
    plan = result.plan
    log.success(f"A/B partition image created successfully: {result.output_image}")
    log.info(f"Image size: {plan.device_bytes // MIB} MiB")
    log.info("Partition layout:")
    for spec in plan:
        label = spec.label or "(container)"
        log.info(f"  {spec.number}: {label:<8} {spec.size_mib:.0f} MiB")
    for slot in result.slots:
        log.info(f"Slot {slot.slot}: {slot.root_parameter} ({slot.cmdline_filename})")
    if result.digest_path is not None:
        log.info(f"Checksum: {result.digest_path}")
