"""
Exception hierarchy for the Couchbase store.

Every error raised by the store derives from CouchbaseStoreError and wraps
the underlying Couchbase SDK exception (if any) with additional context.
"""

import logging
from typing import Any

logger = logging.getLogger(__name__)


class CouchbaseStoreError(Exception):
    """
    Base exception for Couchbase store errors.

    Wraps underlying Couchbase SDK exceptions with additional context
    and ensures proper logging.
    """

    def __init__(self, message: str, original_error: Exception | None = None):
        """
        Initialize store error.

        Args:
            message: Human-readable error message
            original_error: Original exception that caused this error
        """
        super().__init__(message)
        self.original_error = original_error
        self.message = message

        if original_error:
            logger.error(
                f"{self.__class__.__name__}: {message}",
                exc_info=original_error,
                extra={
                    "error_type": type(original_error).__name__,
                    "error_message": str(original_error)
                }
            )
        else:
            logger.error(f"{self.__class__.__name__}: {message}")

    def __str__(self) -> str:
        """Return formatted error message."""
        if self.original_error:
            return f"{self.message} (caused by {type(self.original_error).__name__}: {self.original_error})"
        return self.message

    def __repr__(self) -> str:
        """Return detailed error representation."""
        return f"{self.__class__.__name__}(message={self.message!r}, original_error={self.original_error!r})"


class ConnectionUnavailableError(CouchbaseStoreError):
    """
    Raised when no live cluster handle exists.

    Either bootstrap failed, has not completed yet (background bootstrap),
    or the store was shut down. Usually requires checking:
    - Network connectivity
    - Couchbase cluster status
    - Node set and credentials
    """

    def __init__(
        self,
        message: str = "No live connection to the Couchbase cluster",
        original_error: Exception | None = None
    ):
        super().__init__(message, original_error)


class QueryExecutionError(CouchbaseStoreError):
    """
    Raised when a query was executed but did not succeed.

    Carries the statement and bucket for diagnostics.
    """

    def __init__(
        self,
        message: str,
        original_error: Exception | None = None,
        statement: str | None = None,
        bucket: str | None = None,
        status: Any = None
    ):
        self.statement = statement
        self.bucket = bucket
        self.status = status

        details = []
        if bucket:
            details.append(f"bucket={bucket}")
        if status is not None:
            details.append(f"status={getattr(status, 'value', status)}")
        if details:
            message = f"{message} ({', '.join(details)})"
        if statement:
            message = f"{message} [Statement: {statement[:200]}]"

        super().__init__(message, original_error)


class DocumentNotFoundError(CouchbaseStoreError):
    """Raised when get/remove targets a key that does not exist."""

    def __init__(
        self,
        key: str,
        bucket: str | None = None,
        original_error: Exception | None = None
    ):
        self.key = key
        self.bucket = bucket
        message = f"Document '{key}' not found"
        if bucket:
            message = f"{message} in bucket '{bucket}'"
        super().__init__(message, original_error)


class SerializationError(CouchbaseStoreError):
    """
    Raised when a document payload cannot be encoded or decoded.

    Documents must be JSON object trees (str, int, float, bool, None,
    lists and nested objects).
    """

    def __init__(self, message: str, original_error: Exception | None = None):
        super().__init__(message, original_error)


class StoreConfigurationError(CouchbaseStoreError):
    """Raised when the store is misconfigured or required components are missing."""

    def __init__(self, message: str, original_error: Exception | None = None):
        super().__init__(message, original_error)


class StoreValidationError(CouchbaseStoreError):
    """Raised when an operation argument is invalid, e.g. an empty document key."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: Any = None,
        original_error: Exception | None = None
    ):
        self.field = field
        self.value = value
        if field:
            message = f"Validation error for '{field}': {message}"
        super().__init__(message, original_error)
