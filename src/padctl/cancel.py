"""Cooperative cancellation for lifecycle operations."""
from __future__ import annotations

import threading


class CancelToken:
    """A flag that lifecycle operations and provider drivers poll.

    Cancelling never undoes work already confirmed by a provider; it only
    stops the operation from assuming success for a call still in flight.
    """

    def __init__(self) -> None:
        """Create an un-cancelled token."""
        self._event = threading.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` has been called."""
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Return the reason given to :meth:`cancel`, if any."""
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        """Request cancellation."""
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    def wait(self, timeout: float) -> bool:
        """Block up to *timeout* seconds; return ``True`` if cancelled meanwhile."""
        return self._event.wait(timeout)


__all__ = ["CancelToken"]
