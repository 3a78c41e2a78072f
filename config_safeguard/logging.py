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

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "CONFIG_SAFEGUARD_LOG_DIR",
        "/var/log/config-safeguard",
    )
)

# TRACE already exists in loguru at level 5, below DEBUG.


def _should_log_command_output(record) -> bool:
    """Filter raw command stdout/stderr dumps - only show in TRACE mode."""
    message = record["message"].lower()
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "command" in tags:
        if message.startswith("command stdout") or message.startswith(
            "command stderr"
        ):
            return record["level"].no <= logger.level("TRACE").no

    return True


def _should_log_checksum(record) -> bool:
    """Filter per-file checksum chatter unless tracing."""
    message = record["message"].lower()

    if "checksum ok" in message:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all log suppression rules."""
    return _should_log_command_output(record) and _should_log_checksum(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    console: bool = True,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Failed restores, integrity mismatches, aborted operations
    - WARNING: Skipped files, partial captures, best-effort reload failures
    - SUCCESS/INFO: Snapshots, rollbacks, recovery verdicts
    - DEBUG: Detailed diagnostics, command execution
    - TRACE: Ultra-verbose (raw command output, per-file checksums)

    Log Files:
    - operations.log: INFO+ events
    - error.log: WARNING+ events, the general error log
    - debug.log: DEBUG+ events when --debug is enabled
    - structured.jsonl: Structured JSON logs for analysis

    The recovery ledger (recovery.log) lives in the same directory but is
    written by config_safeguard.storage.ledger, not by these sinks.

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to /var/log/config-safeguard)
        console: Attach the stderr sink
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "SAFEGUARD"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - User-facing, filtered
    if console:
        logger.add(
            sys.stderr,
            level=console_level,
            enqueue=True,
            backtrace=False,
            diagnose=False,
            filter=_combined_filter,
            colorize=True,
            format=(
                "<green>{time:HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{extra[source]: <12}</cyan> | "
                "<blue>{extra[job_id]: <20}</blue> | "
                "{message}"
            ),
        )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="30 days",
        enqueue=True,
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

    # SINK 3: Error Log - warnings and failures only
    logger.add(
        log_dir / "error.log",
        level="WARNING",
        rotation="5 MB",
        enqueue=True,
        backtrace=True,
        diagnose=False,
        format=(
            "[{time:YYYY-MM-DD HH:mm:ss}] {level}: "
            "{extra[source]} | {message}"
        ),
    )

    # SINK 4: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
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

    # SINK 5: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
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
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["snapshot", "storage"])
        source: Source component (e.g., "snapshot", "recovery")

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
    Context manager for tracking long-running operations with automatic timing.

    Automatically logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "snapshot", "rollback", "recovery")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("snapshot", description="pre-tlp") as log:
            log.debug("Copying /etc/tlp.conf")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(
        job_id=job_id,
        operation=operation,
        **details,
    ):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_snapshot(snapshot_id: str | None = None) -> Logger:
        """Logger for snapshot capture, validation and restore."""
        return logger.bind(
            job_id=snapshot_id or "-", source="snapshot", tags=["snapshot", "storage"]
        )

    @staticmethod
    def for_rollback(rollback_id: str | None = None) -> Logger:
        """Logger for rollback point capture and restore."""
        return logger.bind(
            job_id=rollback_id or "-", source="rollback", tags=["rollback", "storage"]
        )

    @staticmethod
    def for_restore() -> Logger:
        """Logger for file-level restore and reload triggers."""
        return logger.bind(source="restore", tags=["restore", "storage"])

    @staticmethod
    def for_recovery(job_id: str | None = None) -> Logger:
        """Logger for automated recovery procedures."""
        if job_id is None:
            job_id = f"recovery-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="recovery", tags=["recovery"])

    @staticmethod
    def for_commands() -> Logger:
        """Logger for external command execution."""
        return logger.bind(source="command", tags=["command", "system"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, settings, signals)."""
        return logger.bind(source="system", tags=["system"])


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides type-safe methods for logging common events with
    consistent structure and fields.
    """

    @staticmethod
    def log_file_captured(
        log: Logger, source: str, checksum: str, size_bytes: int, **extra
    ) -> None:
        """Log a file copied into a snapshot."""
        log.debug(
            f"Backed up {source}",
            event_type="file_captured",
            source_path=source,
            checksum=checksum,
            size_bytes=size_bytes,
            **extra,
        )

    @staticmethod
    def log_file_restored(
        log: Logger, target: str, safety_copy: str | None, **extra
    ) -> None:
        """Log a file written back to the live system."""
        log.info(
            f"Restored {target}",
            event_type="file_restored",
            target_path=target,
            safety_copy=safety_copy,
            **extra,
        )

    @staticmethod
    def log_recovery_step(
        log: Logger, mechanism: str, step: str, succeeded: bool, **extra
    ) -> None:
        """Log the result of a single recovery step."""
        log.log(
            "INFO" if succeeded else "WARNING",
            f"{mechanism}: {step} {'ok' if succeeded else 'failed'}",
            event_type="recovery_step",
            mechanism=mechanism,
            step=step,
            succeeded=succeeded,
            **extra,
        )

    @staticmethod
    def log_operation_summary(
        log: Logger, operation: str, succeeded: int, failed: int, skipped: int, **extra
    ) -> None:
        """Log the closing summary of a multi-item operation."""
        log.info(
            f"{operation} summary: {succeeded} succeeded, "
            f"{failed} failed, {skipped} skipped",
            event_type="operation_summary",
            operation=operation,
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            **extra,
        )
