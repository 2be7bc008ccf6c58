"""
Caller-triggered cancellation for feed runs.
"""

import asyncio


class OperationCancelled(Exception):
    """Raised when a run is aborted through its cancellation token."""


class CancellationToken:
    """
    Cooperative cancellation flag.

    Checked before every pooled request attempt and on every line of
    a streamed response.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Whether cancellation was requested."""
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """
        Raises:
            OperationCancelled: If cancellation was requested.
        """
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled by caller")
