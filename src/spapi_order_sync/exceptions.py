"""
Exception taxonomy for the SP-API order sync.

Every error raised by the access layer derives from SPAPIError so callers
can isolate failures at whatever grain they need (partition, order, stage).
"""

from typing import Any


class SPAPIError(Exception):
    """Base exception for SP-API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code:
            return f"{base} (HTTP {self.status_code})"
        return base


class AuthError(SPAPIError):
    """Raised when the LWA token refresh fails. Fatal for the whole run."""
    pass


class ApiError(SPAPIError):
    """Raised on a non-retryable HTTP failure."""

    def __init__(self, status_code: int, body: str, endpoint: str | None = None):
        message = f"API error on {endpoint}" if endpoint else "API error"
        super().__init__(message, status_code=status_code, response_body=body)
        self.endpoint = endpoint

    @property
    def status(self) -> int:
        return self.status_code or 0

    @property
    def body(self) -> str:
        return self.response_body or ""


class RateLimitExceeded(SPAPIError):
    """Raised when retries for a throttled or flaky request are exhausted."""

    def __init__(self, message: str, attempts: int, status_code: int | None = None):
        super().__init__(message, status_code=status_code)
        self.attempts = attempts


class InvalidResponseError(SPAPIError):
    """Raised when a response body fails validation at the parse boundary."""
    pass


class ReportError(SPAPIError):
    """Base class for report pipeline failures."""
    pass


class ReportFailed(ReportError):
    """Report job reached FATAL or CANCELLED."""

    def __init__(self, report_id: str, status: str):
        super().__init__(f"Report {report_id} finished with status {status}")
        self.report_id = report_id
        self.status = status


class ReportTimeout(ReportError):
    """Report job did not reach a terminal status within the attempt ceiling."""

    def __init__(self, report_id: str, attempts: int, last_status: str):
        super().__init__(
            f"Report {report_id} still {last_status} after {attempts} polls"
        )
        self.report_id = report_id
        self.attempts = attempts
        self.last_status = last_status


class InvalidReportData(ReportError):
    """Report document is missing its location or has no usable rows."""
    pass


class PartitionFetchError(SPAPIError):
    """
    Failure fetching a single partition (marketplace).

    Recorded by MultiPartitionFetcher and never raised past it.
    """

    def __init__(self, partition_id: str, cause: BaseException):
        super().__init__(
            f"Partition {partition_id} failed: {cause}",
            status_code=getattr(cause, "status_code", None),
        )
        self.partition_id = partition_id
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        return {
            "partition_id": self.partition_id,
            "error": type(self.cause).__name__,
            "message": str(self.cause),
        }


class SyncCancelled(SPAPIError):
    """Raised when the run is cancelled or its deadline passes."""
    pass


class SyncAborted(SPAPIError):
    """Raised when a failure makes the whole sync meaningless."""
    pass


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""
    pass
