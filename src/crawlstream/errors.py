"""
Fault taxonomy for crawlstream.

Every fault knows the OperationResult and retry guidance it maps to, so the
engine can turn any of them into a terminal CrawlOutcome without branching
on the concrete exception type.
"""

from __future__ import annotations

from typing import Optional

from crawlstream.protocols import CrawlOutcome, OperationResult, RetryDetails, RetryType


class CrawlFault(Exception):
    """Base exception for failures that end up as a stream status."""

    result: OperationResult = OperationResult.SOURCE_FAULT
    retry_type: RetryType = RetryType.NO_RETRY
    default_message: str = "Crawl failed"

    def __init__(self, message: Optional[str] = None, *, max_attempts: Optional[int] = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.max_attempts = max_attempts

    def to_outcome(self) -> CrawlOutcome:
        return CrawlOutcome(
            result=self.result,
            message=self.message,
            retry=RetryDetails(type=self.retry_type, max_attempts=self.max_attempts),
        )


class AuthenticationError(CrawlFault):
    """Raised when credentials are rejected before any page is fetched."""

    result = OperationResult.AUTH_FAULT
    default_message = "Authentication failed"


class TokenExpiredError(CrawlFault):
    """Raised when the source rejects credentials mid-crawl (HTTP 401 class)."""

    result = OperationResult.TOKEN_EXPIRED
    default_message = "Authentication failed"


class SourceError(Exception):
    """A single failed page fetch. Retryable."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class SourceFault(CrawlFault):
    """Raised when page fetch retries are exhausted."""

    result = OperationResult.SOURCE_FAULT
    retry_type = RetryType.STANDARD
    default_message = "Fetching items from datasource failed"


class NormalizationError(CrawlFault):
    """Raised when one record cannot be converted to a CrawlItem."""

    result = OperationResult.VALIDATION_FAULT
    default_message = "Record failed validation"

    def __init__(self, message: Optional[str] = None, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class ConfigurationError(CrawlFault):
    """
    Raised when the custom configuration supplied with a crawl is malformed.

    Ends a crawl as a source fault with no retry.
    """

    result = OperationResult.SOURCE_FAULT
    default_message = "Invalid custom configuration"


class CheckpointError(ValueError):
    """Raised when a checkpoint string cannot be decoded."""

    pass
