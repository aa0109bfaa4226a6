"""Error taxonomy for catalog synchronisation.

Every failure the sync core reasons about is one of the classes below.
The ``retryable`` class attribute drives ``RetryManager.categorize()``;
``aborts_session`` marks errors that stop the whole session instead of a
single item.

Hierarchy::

    CatalogSyncError
    +-- NetworkError            retryable
    +-- ThrottledError          retryable, carries ``retry_after`` seconds
    +-- QuotaExceededError      retryable, aborts session once exhausted
    +-- ValidationError         fatal for the item
    +-- ResourceNotFoundError   item skipped with a warning
    +-- AuthorizationError      aborts session
    +-- ReadOnlyModeError       aborts session
    +-- StateCorruptionError    persisted state discarded and rebuilt
    +-- RetryExhaustedError     retryable error past the attempt limit
    +-- SessionAbortedError     raised to stop a session
    +-- DeadlineReachedError    backoff would pass the time budget
"""

from __future__ import annotations


class CatalogSyncError(Exception):
    """Base class for all catalog sync errors.

    Attributes:
        status_code: HTTP status that produced the error, if any.
    """

    retryable: bool = False
    aborts_session: bool = False

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NetworkError(CatalogSyncError):
    """Transient transport failure (connection reset, timeout, 5xx)."""

    retryable = True


class ThrottledError(CatalogSyncError):
    """The remote API asked the caller to slow down."""

    retryable = True

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        status_code: int | None = 429,
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class QuotaExceededError(CatalogSyncError):
    """A plan or daily quota was hit (e.g. variant creation limit)."""

    retryable = True


class ValidationError(CatalogSyncError):
    """The remote rejected the payload for one record."""


class ResourceNotFoundError(CatalogSyncError):
    """The targeted remote resource no longer exists."""


class AuthorizationError(CatalogSyncError):
    """Credentials rejected or missing scope."""

    aborts_session = True


class ReadOnlyModeError(CatalogSyncError):
    """Writes are disabled by configuration or collaborator flag."""

    aborts_session = True


class StateCorruptionError(CatalogSyncError):
    """Persisted session state could not be decoded."""


class RetryExhaustedError(CatalogSyncError):
    """A retryable failure persisted past the configured attempt limit.

    Attributes:
        cause: The last underlying error.
        attempts: Number of attempts made.
    """

    def __init__(self, cause: CatalogSyncError, attempts: int):
        super().__init__(
            f"Giving up after {attempts} attempts: {cause.message}",
            cause.status_code,
        )
        self.cause = cause
        self.attempts = attempts
        self.aborts_session = isinstance(cause, QuotaExceededError)


class SessionAbortedError(CatalogSyncError):
    """Stop the running session; the queue is checkpointed untouched."""

    aborts_session = True


class DeadlineReachedError(CatalogSyncError):
    """A retry backoff would run past the invocation's time budget.

    The batch stops, unresolved items are deferred with their attempt
    counts, and the session is checkpointed for the next invocation.

    Attributes:
        cause: The retryable error that triggered the backoff.
    """

    def __init__(self, cause: CatalogSyncError, delay_ms: int):
        super().__init__(
            f"Backoff of {delay_ms}ms would pass the time budget: "
            f"{cause.message}",
            cause.status_code,
        )
        self.cause = cause
        self.delay_ms = delay_ms
