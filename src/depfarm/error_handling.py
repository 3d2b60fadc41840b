"""
Error handling for depfarm.

Provides the exception hierarchy and a central handler that reports
per-package failures without aborting a whole install run. Structural
failures are raised instead and end the run.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse


class DepfarmError(Exception):
    """Base class for all errors raised by depfarm."""


class StorageCollisionError(DepfarmError):
    """A node was registered under an aggregate cache key that is already taken."""

    def __init__(self, package_name: str, version_tag: str):
        self.package_name = package_name
        self.version_tag = version_tag
        super().__init__(
            f"Package version '{package_name}@{version_tag}' is already in cache. "
            "Possible range-match to root package."
        )


class MissingPinError(DepfarmError):
    """A version was pinned that does not exist in the dependency tree."""

    def __init__(self, package_name: str, version: str):
        self.package_name = package_name
        self.version = version
        super().__init__(
            f"Unable to pin version '{version}' of '{package_name}' as that version "
            "wasn't found in the tree."
        )


class ManifestError(DepfarmError):
    """A package manifest could not be read or is invalid."""


class ResolutionError(DepfarmError):
    """A version tag could not be resolved to a manifest."""


class ConfigurationError(DepfarmError):
    """The configuration is invalid."""


class ErrorCategory(Enum):
    """What kind of operation failed."""

    PARSING = "PARSING"
    NETWORK = "NETWORK"
    RESOLUTION = "RESOLUTION"
    STORAGE = "STORAGE"
    FILESYSTEM = "FILESYSTEM"
    CONFIGURATION = "CONFIGURATION"
    SCRIPT = "SCRIPT"


# Registry credentials that may end up in URLs or error messages.
SENSITIVE_PATTERNS = [
    (re.compile(r"(https?://[^@\s/]+:)[^@\s]+@", re.IGNORECASE), r"\1[REDACTED]@"),
    (re.compile(r"(Authorization:\s*\w+\s+)\S+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(_authToken=)\S+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r'(token["\s]*[:=]["\s]*)[\w\-+=/.]{8,}', re.IGNORECASE), r"\1[REDACTED]"),
]
SENSITIVE_KEYS = ("token", "password", "secret", "credential", "auth")


def redact(text: str) -> str:
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def redact_details(details: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of `details` with credential-looking keys and values masked."""
    redacted: Dict[str, Any] = {}
    for key, value in details.items():
        if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
            redacted[key] = "[REDACTED]"
        elif isinstance(value, dict):
            redacted[key] = redact_details(value)
        elif isinstance(value, str):
            redacted[key] = redact(value)
        else:
            redacted[key] = value
    return redacted


@dataclass
class ErrorReport:
    """A failure reported to the error handler."""

    level: int
    category: ErrorCategory
    message: str
    origin: str
    details: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[BaseException] = None
    suggestions: List[str] = field(default_factory=list)

    def format(self) -> str:
        parts = [redact(self.message), f"[{self.category.value} in {self.origin}]"]
        if self.exception is not None:
            parts.append(f"{type(self.exception).__name__}: {redact(str(self.exception))}")
        if self.details:
            parts.append(str(redact_details(self.details)))
        text = " ".join(parts)
        for suggestion in self.suggestions:
            text += f"\n  → {suggestion}"
        return text


class ErrorHandler:
    """
    Centralized error reporting.

    Reports are logged with credentials redacted and counted per category,
    so a run can summarise how much went wrong.
    """

    def __init__(self, logger_name: str = "depfarm.errors"):
        self.logger = logging.getLogger(logger_name)
        self.counts: Counter = Counter()

    def report(
        self,
        level: int,
        category: ErrorCategory,
        message: str,
        module: str,
        function: str,
        exception: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None,
    ) -> ErrorReport:
        report = ErrorReport(
            level=level,
            category=category,
            message=message,
            origin=f"{module}.{function}",
            details=details or {},
            exception=exception,
            suggestions=suggestions or [],
        )
        self.counts[category] += 1
        self.logger.log(level, report.format())
        if exception is not None and self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug("Traceback for %s", report.origin, exc_info=exception)
        return report

    def warning(
        self, category: ErrorCategory, message: str, module: str, function: str, **kwargs
    ) -> ErrorReport:
        return self.report(logging.WARNING, category, message, module, function, **kwargs)

    def error(
        self, category: ErrorCategory, message: str, module: str, function: str, **kwargs
    ) -> ErrorReport:
        return self.report(logging.ERROR, category, message, module, function, **kwargs)

    def reset(self) -> None:
        self.counts.clear()


_global_error_handler: Optional[ErrorHandler] = None


def get_error_handler() -> ErrorHandler:
    """Get the global error handler instance."""
    global _global_error_handler
    if _global_error_handler is None:
        _global_error_handler = ErrorHandler()
    return _global_error_handler


def log_resolution_error(
    message: str,
    module: str,
    function: str,
    version_tag: Optional[str] = None,
    exception: Optional[BaseException] = None,
) -> None:
    """
    Report a version tag that could not be resolved or stored.

    Args:
        message: Error message
        module: Module name
        function: Function name
        version_tag: The `name@range` tag that failed
        exception: Optional exception
    """
    get_error_handler().error(
        ErrorCategory.RESOLUTION,
        message,
        module,
        function,
        details={"version_tag": version_tag} if version_tag else None,
        exception=exception,
        suggestions=[
            "Check that the package is published in the configured registry",
            "Re-run the install to retry failed packages",
        ],
    )


def log_network_error(
    message: str,
    module: str,
    function: str,
    url: Optional[str] = None,
    status_code: Optional[int] = None,
    exception: Optional[BaseException] = None,
) -> None:
    """Report a failed registry or tarball request, without URL credentials."""
    details: Dict[str, Any] = {}
    if url is not None:
        parsed = urlparse(url)
        host = parsed.hostname or ""
        if parsed.port:
            host += f":{parsed.port}"
        details["url"] = f"{parsed.scheme}://{host}{parsed.path}"
    if status_code is not None:
        details["status_code"] = status_code

    get_error_handler().warning(
        ErrorCategory.NETWORK,
        message,
        module,
        function,
        details=details,
        exception=exception,
        suggestions=["Check the registry URL and whether it requires a token"],
    )


def log_filesystem_error(
    message: str,
    module: str,
    function: str,
    path: Optional[str] = None,
    exception: Optional[BaseException] = None,
) -> None:
    """Report a filesystem operation that failed after retries."""
    get_error_handler().error(
        ErrorCategory.FILESYSTEM,
        message,
        module,
        function,
        details={"path": path} if path else None,
        exception=exception,
        suggestions=[
            "Close programs that may hold files in the storage area open",
            "Check permissions of the storage area",
        ],
    )
