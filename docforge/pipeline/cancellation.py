"""Cooperative, run-scoped cancellation."""

import threading
from typing import Optional

from ..exceptions import PipelineCancelledError


class CancellationToken:
    """Set once by the caller, polled by the executor at stage and unit boundaries.

    In-flight backend calls are never interrupted; the executor only stops
    scheduling new work after it observes the token.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds; returns True early if cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self, stage: Optional[str] = None) -> None:
        if self._event.is_set():
            raise PipelineCancelledError(stage)
