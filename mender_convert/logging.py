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
        "MENDER_CONVERT_LOG_DIR",
        Path.cwd() / "work" / "logs",
    )
)

BUILD_LOG_NAME = "build.log"


def _should_log_progress(record) -> bool:
    """Keep byte-copy progress out of the console unless tracing."""
    tags = record["extra"].get("tags", [])

    if "progress" in tags:
        return record["level"].no <= logger.level("DEBUG").no or (
            record["level"].no >= logger.level("WARNING").no
        )

    return True


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Path:
    """
    Setup logging sinks for a conversion run.

    Log Files:
    - build.log: DEBUG+ events, always written; failure messages point here
    - trace.log: TRACE+ events when --trace is enabled
    - structured.jsonl: Structured JSON logs for analysis (INFO+)

    Args:
        debug: Show DEBUG records on the console
        trace: Show TRACE records on the console and write trace.log
        log_dir: Custom log directory (defaults to ./work/logs)

    Returns:
        Path to the build log
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
        filter=_should_log_progress,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    build_log = log_dir / BUILD_LOG_NAME

    # SINK 2: Build log - every command and its output
    logger.add(
        build_log,
        level="DEBUG",
        backtrace=True,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <20} | "
            "{message}"
        ),
    )

    # SINK 3: Trace log
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <20} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        serialize=True,
        format="{message}",
    )

    return build_log


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
        tags: Tags for filtering (e.g., ["storage", "loop"])
        source: Source component (e.g., "storage", "pipeline")
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
def operation_context(operation: str, job_id: str | None = None, **details):
    """
    Context manager for tracking a pipeline step with automatic timing.

    Logs step start, completion, and failure with duration.

    Example:
        with operation_context("shrink", image="/tmp/raw.img") as log:
            log.debug("Querying minimum filesystem size")
    """
    job_id = job_id or f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation):
        start_time = time.time()
        log = logger.bind(source="pipeline", job_id=job_id, tags=[operation])

        # Messages are pre-formatted; structured fields go through bind() so
        # braces in paths or error text never reach str.format().
        log.bind(**details).info(f"{operation} started")

        try:
            yield log
            duration = time.time() - start_time
            log.bind(duration_seconds=round(duration, 2)).success(
                f"{operation} completed"
            )
        except BaseException as e:
            duration = time.time() - start_time
            log.bind(
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            ).error(f"{operation} failed: {e}")
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.
    """

    @staticmethod
    def for_storage() -> Logger:
        """Logger for loop devices, partition tables and filesystems."""
        return logger.bind(source="storage", tags=["storage"])

    @staticmethod
    def for_pipeline(job_id: str | None = None) -> Logger:
        """Logger for the pipeline controller."""
        if job_id is None:
            job_id = f"convert-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="pipeline", tags=["pipeline"])

    @staticmethod
    def for_artifact() -> Logger:
        """Logger for artifact extraction and packaging."""
        return logger.bind(source="artifact", tags=["artifact"])

    @staticmethod
    def for_install() -> Logger:
        """Logger for agent and bootloader installation."""
        return logger.bind(source="install", tags=["install"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for startup, configuration and shutdown."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for byte-copy progress, which would otherwise log every chunk.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def info(self, key: str, message: str, **kwargs) -> None:
        """Log at INFO level, throttled by key."""
        self._throttled_log("INFO", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log.bind(**kwargs), level.lower())
            log_method(message)
            self.last_log_time[key] = now


class EventLogger:
    """
    Structured event logger using standardized schemas.
    """

    @staticmethod
    def log_step_started(log: Logger, name: str, ordinal: int, total: int, **extra) -> None:
        """Log a pipeline step start."""
        log.bind(
            event_type="step_started",
            step=name,
            ordinal=ordinal,
            total=total,
            **extra,
        ).info(f"[{ordinal}/{total}] {name}")

    @staticmethod
    def log_device_attached(log: Logger, image: str, device: str, **extra) -> None:
        """Log a loop device attachment."""
        log.bind(
            event_type="device_attached",
            image=image,
            device=device,
            **extra,
        ).debug(f"Attached {image} as {device}")

    @staticmethod
    def log_device_released(log: Logger, image: str, devices: list[str], **extra) -> None:
        """Log a device mapping release."""
        log.bind(
            event_type="device_released",
            image=image,
            devices=devices,
            **extra,
        ).debug(f"Released {len(devices)} device(s) for {image}")
