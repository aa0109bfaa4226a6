"""Retry policy: error categorisation, exponential backoff, persisted attempts.

Backoff for attempt ``n`` (0-based) is ``min(base * 2**n, cap)``; a
throttling hint (``Retry-After``) raises the wait to at least the hinted
value.  Attempt counts are stored per item in the session store after every
failure, so a restarted invocation resumes counting instead of resetting.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable, Sequence, TypeVar

from ..config_schema import SyncSettings
from ..errors import (
    CatalogSyncError,
    DeadlineReachedError,
    RetryExhaustedError,
    SessionAbortedError,
    ThrottledError,
)
from .models import SyncItem
from .store import SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCategory(str, Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


class RetryManager:
    """Decide whether and when to retry a failed remote call.

    Args:
        settings: Sync tuning (max retries, backoff base/cap, session budget).
        store: Session store for persisted retry state; ``None`` keeps state
            in memory only (dry runs, tests).
        session_id: Session whose retry state is tracked.
        sleep: Sleep function in seconds.
        clock: Epoch-seconds clock compared against ``execute`` deadlines.
    """

    def __init__(
        self,
        settings: SyncSettings,
        store: SessionStore | None = None,
        session_id: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_retries = settings.max_retries
        self.base_ms = settings.backoff_base_ms
        self.cap_ms = settings.backoff_max_ms
        self.session_budget = settings.session_retry_budget
        self._store = store
        self._session_id = session_id
        self._sleep = sleep
        self._clock = clock
        self._state: dict[str, Any] = {"retries_used": 0, "items": {}}
        if store is not None and session_id is not None:
            self._state = store.load_retry_state(session_id)

    @property
    def retries_used(self) -> int:
        return int(self._state["retries_used"])

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    @staticmethod
    def categorize(error: BaseException) -> ErrorCategory:
        """Retryable: throttling, transient network and quota errors."""
        if isinstance(error, CatalogSyncError) and error.retryable:
            return ErrorCategory.RETRYABLE
        return ErrorCategory.FATAL

    def should_retry(self, error: BaseException, attempt_count: int) -> bool:
        """True when *error* is retryable and attempts remain."""
        return (
            self.categorize(error) == ErrorCategory.RETRYABLE
            and attempt_count < self.max_retries
        )

    def backoff_ms(
        self, attempt_count: int, error: BaseException | None = None
    ) -> int:
        """Delay before retry number ``attempt_count + 1``."""
        delay = min(self.base_ms * (2**attempt_count), self.cap_ms)
        if isinstance(error, ThrottledError) and error.retry_after:
            delay = max(delay, int(error.retry_after * 1000))
        return delay

    # ------------------------------------------------------------------
    # Persisted attempts
    # ------------------------------------------------------------------

    def attempts_for(self, item: SyncItem) -> int:
        """Attempts already spent on *item*, including earlier invocations."""
        persisted = self._state["items"].get(item.key_str, {})
        return max(item.attempts, int(persisted.get("attempts", 0)))

    def record_failure(
        self, items: Sequence[SyncItem], attempts: int, error: BaseException
    ) -> None:
        for item in items:
            item.attempts = attempts
            item.last_error = str(error)
            self._state["items"][item.key_str] = {
                "attempts": attempts,
                "last_error": str(error),
            }
        self._persist()

    def clear(self, items: Sequence[SyncItem]) -> None:
        """Forget attempts for items that reached a terminal outcome."""
        changed = False
        for item in items:
            if self._state["items"].pop(item.key_str, None) is not None:
                changed = True
        if changed:
            self._persist()

    def _persist(self) -> None:
        if self._store is not None and self._session_id is not None:
            self._store.save_retry_state(self._session_id, self._state)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(
        self,
        func: Callable[[], T],
        items: Sequence[SyncItem] = (),
        label: str = "remote call",
        deadline: float | None = None,
    ) -> T:
        """Call *func*, retrying retryable failures with backoff.

        Args:
            func: Zero-argument callable performing one remote call.
            items: Items whose attempt counts this call advances.
            label: Description used in log messages.
            deadline: Epoch seconds no backoff may sleep past.

        Raises:
            RetryExhaustedError: A retryable error persisted past
                ``max_retries``.
            SessionAbortedError: The session-wide retry budget ran out.
            DeadlineReachedError: The next backoff would end after
                *deadline*; the failed attempt is already recorded.
            CatalogSyncError: Any fatal error, unchanged.
        """
        attempts = max((self.attempts_for(i) for i in items), default=0)
        while True:
            try:
                result = func()
            except CatalogSyncError as exc:
                if self.categorize(exc) == ErrorCategory.FATAL:
                    raise
                if not self.should_retry(exc, attempts):
                    self.record_failure(items, attempts + 1, exc)
                    raise RetryExhaustedError(exc, attempts + 1) from exc
                if self.retries_used >= self.session_budget:
                    self.record_failure(items, attempts + 1, exc)
                    raise SessionAbortedError(
                        f"Session retry budget of {self.session_budget} "
                        f"exhausted: {exc.message}"
                    ) from exc

                delay = self.backoff_ms(attempts, exc)
                if (
                    deadline is not None
                    and self._clock() + delay / 1000.0 > deadline
                ):
                    self.record_failure(items, attempts + 1, exc)
                    logger.info(
                        "%s failed (%s); %dms backoff passes the deadline",
                        label,
                        exc.message,
                        delay,
                    )
                    raise DeadlineReachedError(exc, delay) from exc
                attempts += 1
                self._state["retries_used"] = self.retries_used + 1
                self.record_failure(items, attempts, exc)
                logger.warning(
                    "%s failed (%s); retry %d/%d in %dms",
                    label,
                    exc.message,
                    attempts,
                    self.max_retries,
                    delay,
                )
                self._sleep(delay / 1000.0)
                continue
            return result
