"""Outbound progress channel for one pipeline run.

The executor publishes; any number of readers may consume. Publishing never
blocks: the buffer is bounded and, when full, the oldest buffered event is
dropped. Percentages are clamped so the observed sequence never decreases,
and the channel accepts exactly one terminal event (``complete`` or
``error``) after which it is closed.
"""

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)

PROGRESS = "progress"
COMPLETE = "complete"
ERROR = "error"


@dataclass(frozen=True)
class ProgressEvent:
    kind: str
    stage: str
    message: str
    percent: int
    current_unit: Optional[int] = None
    total_units: Optional[int] = None
    sequence: int = 0
    data: Optional[dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in (COMPLETE, ERROR)

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class ProgressChannel:
    """Bounded drop-oldest event buffer."""

    def __init__(self, maxsize: int = 256):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._buffer: deque[ProgressEvent] = deque(maxlen=maxsize)
        self._cond = threading.Condition()
        self._sequence = 0
        self._percent = 0
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def _publish(self, kind: str, stage: str, message: str, percent: float, **extra) -> Optional[ProgressEvent]:
        with self._cond:
            if self._closed:
                logger.debug("Progress event after close ignored: %s %s", stage, message)
                return None
            self._percent = max(self._percent, min(100, int(percent)))
            self._sequence += 1
            event = ProgressEvent(
                kind=kind,
                stage=stage,
                message=message,
                percent=self._percent,
                sequence=self._sequence,
                **extra,
            )
            if len(self._buffer) == self._buffer.maxlen:
                self.dropped += 1
            self._buffer.append(event)
            if event.is_terminal:
                self._closed = True
            self._cond.notify_all()
            return event

    def publish(
        self,
        stage: str,
        message: str,
        percent: float,
        current_unit: Optional[int] = None,
        total_units: Optional[int] = None,
    ) -> Optional[ProgressEvent]:
        return self._publish(
            PROGRESS, stage, message, percent,
            current_unit=current_unit, total_units=total_units,
        )

    def complete(self, message: str, data: Optional[dict[str, Any]] = None) -> Optional[ProgressEvent]:
        return self._publish(COMPLETE, "complete", message, 100, data=data)

    def error(self, stage: str, message: str, data: Optional[dict[str, Any]] = None) -> Optional[ProgressEvent]:
        return self._publish(ERROR, stage, message, self._percent, data=data)

    def drain(self) -> list[ProgressEvent]:
        """Take every buffered event without waiting."""
        with self._cond:
            events = list(self._buffer)
            self._buffer.clear()
            return events

    def events(self, timeout: Optional[float] = None) -> Iterator[ProgressEvent]:
        """Yield events as they arrive until the terminal event has been yielded.

        With *timeout*, stops early if no event arrives within that many
        seconds.
        """
        while True:
            with self._cond:
                if not self._buffer and not self._closed:
                    self._cond.wait_for(lambda: self._buffer or self._closed, timeout=timeout)
                if not self._buffer:
                    return
                event = self._buffer.popleft()
            yield event
            if event.is_terminal:
                return
