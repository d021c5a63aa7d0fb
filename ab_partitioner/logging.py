from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = os.environ.get("AB_PARTITIONER_LOG_DIR")


def _should_log_command_output(record) -> bool:
    """Hide raw command stdout/stderr unless running at TRACE level."""
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "command-output" in tags:
        return record["level"].no <= logger.level("TRACE").no

    return True


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup console logging plus optional on-disk logs for a conversion run.

    Logging Tiers:
    - CRITICAL/ERROR: Failed stages, aborted conversions
    - SUCCESS/INFO: Stage start/completion, planned layout, warnings
    - DEBUG: Every external command and its return code
    - TRACE: Raw command stdout/stderr

    Log Files (only when a log directory is configured):
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Directory for log files (defaults to $AB_PARTITIONER_LOG_DIR)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_should_log_command_output if not trace else None,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <12}</cyan> | "
            "{message}"
        ),
    )

    if log_dir is None and DEFAULT_LOG_DIR:
        log_dir = Path(DEFAULT_LOG_DIR)
    if log_dir is None:
        return logger

    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <12} | "
            "{extra[job_id]: <20} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <12} | "
                "{extra[job_id]: <20} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking a conversion run
        tags: Tags for filtering (e.g., ["geometry", "plan"])
        source: Source component (e.g., "partition", "migrate")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking a pipeline stage with automatic timing.

    Logs stage start, completion, and failure with duration tracking.

    Args:
        operation: Stage name (e.g., "partition", "migrate")
        **details: Stage-specific details to log

    Yields:
        Logger bound with job_id and stage context

    Example:
        with operation_context("format", device="/dev/loop1") as log:
            log.debug("Formatting boot partition")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.bind(duration_seconds=round(duration, 2)).success(
                "{} completed in {:.2f}s", operation.capitalize(), duration
            )
        except BaseException as e:
            duration = time.time() - start_time
            # Message text is passed as an argument so braces in error
            # output are never treated as format fields.
            log.bind(
                error_type=type(e).__name__, duration_seconds=round(duration, 2)
            ).error("{} failed: {}", operation.capitalize(), e)
            raise


class LoggerFactory:
    """
    Factory for creating component-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with the source and
    tags of one pipeline component.
    """

    @staticmethod
    def for_geometry() -> Logger:
        """Logger for partition geometry planning."""
        return logger.bind(source="geometry", tags=["geometry", "plan"])

    @staticmethod
    def for_image() -> Logger:
        """Logger for image allocation and loop devices."""
        return logger.bind(source="image", tags=["image", "loop"])

    @staticmethod
    def for_partition() -> Logger:
        """Logger for partition table writes."""
        return logger.bind(source="partition", tags=["partition", "storage"])

    @staticmethod
    def for_format() -> Logger:
        """Logger for filesystem creation."""
        return logger.bind(source="format", tags=["format", "storage"])

    @staticmethod
    def for_migrate() -> Logger:
        """Logger for content migration."""
        return logger.bind(source="migrate", tags=["migrate", "copy"])

    @staticmethod
    def for_boot() -> Logger:
        """Logger for boot configuration and first-boot artifacts."""
        return logger.bind(source="bootconfig", tags=["boot"])

    @staticmethod
    def for_resources() -> Logger:
        """Logger for mount/loop bookkeeping and cleanup."""
        return logger.bind(source="resources", tags=["cleanup"])

    @staticmethod
    def for_commands() -> Logger:
        """Logger for external command execution."""
        return logger.bind(source="command", tags=["command"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for startup, pre-flight checks and the run summary."""
        return logger.bind(source="system", tags=["system"])
