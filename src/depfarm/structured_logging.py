"""
Structured logging configuration for depfarm.

Emits machine-readable install events (stages, downloads, links) alongside
the human-readable module loggers.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_RESERVED_RECORD_KEYS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "getMessage",
    "exc_info",
    "exc_text",
    "stack_info",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class EventLogger:
    """Structured logger for install events."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(f"depfarm.events.{name}")
        self._setup_logger()
        self.run_context: Dict[str, Any] = {}

    def _setup_logger(self) -> None:
        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(StructuredFormatter())
            self.logger.addHandler(handler)
            self.logger.propagate = False
            self.logger.setLevel(logging.WARNING)

    def set_run_context(
        self, run_id: Optional[str] = None, stage: Optional[int] = None
    ) -> None:
        """Set run context for logging."""
        if run_id:
            self.run_context["run_id"] = run_id
        if stage is not None:
            self.run_context["stage"] = stage

    def clear_run_context(self) -> None:
        """Clear run context."""
        self.run_context.clear()

    def _log(self, level: str, event_type: str, **kwargs) -> None:
        log_data = {"event_type": event_type, **self.run_context, **kwargs}
        getattr(self.logger, level)("", extra=log_data)

    def info(self, event_type: str, **kwargs) -> None:
        """Log info level event."""
        self._log("info", event_type, **kwargs)

    def warning(self, event_type: str, **kwargs) -> None:
        """Log warning level event."""
        self._log("warning", event_type, **kwargs)

    def error(self, event_type: str, **kwargs) -> None:
        """Log error level event."""
        self._log("error", event_type, **kwargs)

    def debug(self, event_type: str, **kwargs) -> None:
        """Log debug level event."""
        self._log("debug", event_type, **kwargs)


_install_logger = EventLogger("install")
_downloader_logger = EventLogger("downloader")
_registry_logger = EventLogger("registry")
_modules_logger = EventLogger("modules")

_ALL_LOGGERS = [_install_logger, _downloader_logger, _registry_logger, _modules_logger]


def get_install_logger() -> EventLogger:
    """Get install orchestration logger."""
    return _install_logger


def get_downloader_logger() -> EventLogger:
    """Get downloader logger."""
    return _downloader_logger


def get_registry_logger() -> EventLogger:
    """Get registry operations logger."""
    return _registry_logger


def get_modules_logger() -> EventLogger:
    """Get node_modules generation logger."""
    return _modules_logger


def log_stage_start(stage: int, packages: int, versions: int) -> None:
    """Log the start of a download stage."""
    logger = get_downloader_logger()
    logger.set_run_context(stage=stage)
    logger.info("stage_started", packages=packages, versions=versions)


def log_stage_complete(
    stage: int, downloaded: int, cached: int, failed: int, total: int
) -> None:
    """Log the result of a download stage."""
    logger = get_downloader_logger()
    log_data = {
        "stage": stage,
        "packages_downloaded": downloaded,
        "packages_already_in_cache": cached,
        "packages_failed": failed,
        "packages_total": total,
    }
    if failed:
        logger.warning("stage_completed_with_failures", **log_data)
    else:
        logger.info("stage_completed", **log_data)


def log_package_downloaded(version_tag: str, storage_path: str) -> None:
    """Log a package that was stored in the storage area."""
    get_downloader_logger().info(
        "package_downloaded", version_tag=version_tag, storage_path=storage_path
    )


def log_registry_lookup(
    package_name: str, found: bool, response_time_ms: Optional[float] = None
) -> None:
    """Log registry metadata lookup result."""
    logger = get_registry_logger()
    log_data: Dict[str, Any] = {"package_name": package_name, "package_exists": found}
    if response_time_ms is not None:
        log_data["response_time_ms"] = response_time_ms

    if not found:
        logger.warning("package_not_found_in_registry", **log_data)
    else:
        logger.debug("registry_lookup_completed", **log_data)


def log_links_created(links: int, binaries: int) -> None:
    """Log node_modules generation result."""
    get_modules_logger().info("links_created", links=links, binary_links=binaries)


def set_run_context(run_id: Optional[str] = None) -> None:
    """Set global run context for all loggers."""
    for logger in _ALL_LOGGERS:
        logger.set_run_context(run_id=run_id)


def clear_run_context() -> None:
    """Clear global run context."""
    for logger in _ALL_LOGGERS:
        logger.clear_run_context()


def configure_logging(
    log_level: str = "WARNING",
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    event_level: Optional[str] = None,
) -> None:
    """Configure the depfarm module loggers and the event loggers."""
    level = getattr(logging, log_level.upper(), logging.WARNING)

    package_logger = logging.getLogger("depfarm")
    package_logger.setLevel(level)
    if not package_logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(log_format))
        package_logger.addHandler(handler)

    events = getattr(logging, (event_level or log_level).upper(), logging.WARNING)
    for logger in _ALL_LOGGERS:
        logger.logger.setLevel(events)
