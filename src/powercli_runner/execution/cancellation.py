from __future__ import annotations

import threading
import time
from enum import Enum


class CancelReason(str, Enum):
    """Why a cancel scope fired.

    Example:
        ```python
        reason = CancelReason.TIMEOUT
        ```
    """

    CALLER = "cancelled"
    TIMEOUT = "timed_out"


class CancellationToken:
    """Caller-owned cancellation signal shared across threads.

    Example:
        ```python
        token = CancellationToken()
        token.cancel()
        ```
    """

    def __init__(self) -> None:
        """Create an unset token.

        Example:
            ```python
            token = CancellationToken()
            ```
        """
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        """Return True once `cancel` has been called.

        Example:
            ```python
            if token.cancelled:
                ...
            ```
        """
        return self._event.is_set()

    def cancel(self) -> None:
        """Signal cancellation to every scope watching this token.

        Example:
            ```python
            token.cancel()
            ```
        """
        self._event.set()

    def wait(self, timeout: float) -> bool:
        """Block up to `timeout` seconds; return True when cancelled.

        Example:
            ```python
            fired = token.wait(0.1)
            ```
        """
        return self._event.wait(max(0.0, timeout))


class CancelScope:
    """Merge a caller token and a timeout into one effective signal.

    The first source observed to fire is latched, so a caller cancel that
    arrives after the deadline still reports a timeout.

    Example:
        ```python
        scope = CancelScope(timeout_seconds=30, token=token)
        if scope.reason() is CancelReason.TIMEOUT:
            ...
        ```
    """

    def __init__(self, timeout_seconds: float, token: CancellationToken | None = None) -> None:
        """Start the deadline clock now.

        Example:
            ```python
            scope = CancelScope(timeout_seconds=5)
            ```
        """
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.timeout_seconds = float(timeout_seconds)
        self._token = token
        self._deadline = time.monotonic() + self.timeout_seconds
        self._latched: CancelReason | None = None
        self._lock = threading.Lock()

    def remaining(self) -> float:
        """Return seconds left before the deadline (never negative).

        Example:
            ```python
            left = scope.remaining()
            ```
        """
        return max(0.0, self._deadline - time.monotonic())

    def reason(self) -> CancelReason | None:
        """Return the latched reason, or None while the scope is live.

        Example:
            ```python
            reason = scope.reason()
            ```
        """
        with self._lock:
            if self._latched is not None:
                return self._latched
            if self._token is not None and self._token.cancelled:
                self._latched = CancelReason.CALLER
            elif time.monotonic() >= self._deadline:
                self._latched = CancelReason.TIMEOUT
            return self._latched

    @property
    def fired(self) -> bool:
        """Return True once either source has fired.

        Example:
            ```python
            while not scope.fired:
                ...
            ```
        """
        return self.reason() is not None

    def sleep(self, seconds: float) -> CancelReason | None:
        """Sleep up to `seconds`, waking early on caller cancel or deadline.

        Example:
            ```python
            if scope.sleep(0.05) is not None:
                return
            ```
        """
        budget = min(max(0.0, seconds), self.remaining())
        if self._token is not None:
            self._token.wait(budget)
        elif budget > 0:
            time.sleep(budget)
        return self.reason()

    def describe(self, what: str = "PowerShell execution") -> str:
        """Return the user-facing message for the fired reason.

        Example:
            ```python
            message = scope.describe()
            ```
        """
        if self.reason() is CancelReason.CALLER:
            return f"{what} was cancelled"
        return f"{what} timed out after {self.timeout_seconds:g} seconds"
