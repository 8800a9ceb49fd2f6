"""Custom exception hierarchy for oneshot.

All oneshot-specific exceptions inherit from OneshotError, enabling
callers to catch every failure of a job with a single except clause.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from oneshot.record import CleanupReport


class OneshotError(Exception):
    """Base exception for all oneshot errors."""


class ValidationError(OneshotError):
    """Raised for bad user input before anything was provisioned."""


class ConfigurationError(OneshotError):
    """Raised for invalid configuration or missing required settings."""


class PollTimeoutError(OneshotError):
    """Raised when a polled resource does not reach the expected state in time."""


class ProvisionError(OneshotError):
    """Raised when a cloud resource-creation step fails.

    Carries the report of the compensating cleanup that ran before the
    error surfaced, so partial teardown failures are never lost.
    """

    def __init__(self, message: str, cleanup: CleanupReport | None = None) -> None:
        self.cleanup = cleanup
        if cleanup is not None and cleanup.failed:
            message = f"{message} (cleanup: {cleanup.summary()})"
        super().__init__(message)


class ConnectError(OneshotError):
    """Raised when the remote shell session cannot be established."""


class TeardownError(OneshotError):
    """Raised when one or more cleanup steps fail."""

    def __init__(self, report: CleanupReport) -> None:
        self.report = report
        super().__init__(f"Teardown incomplete: {report.summary()}")


class JobFailedError(OneshotError):
    """Raised when a job fails after provisioning began.

    Aggregates the triggering error with everything the cleanup cascade
    attempted afterwards.
    """

    def __init__(self, cause: BaseException, cleanup: CleanupReport) -> None:
        self.cause = cause
        self.cleanup = cleanup
        message = f"Job failed: {cause}"
        if cleanup.failed:
            message += f"; cleanup incomplete: {cleanup.summary()}"
        super().__init__(message)
