from __future__ import annotations

import logging
import queue
from dataclasses import dataclass, field

from .models import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    run_id: str
    phase: str
    percent: int
    message: str
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())


class ProgressEmitter:
    """Best-effort progress channel backed by a bounded queue.

    ``emit`` never blocks and never raises: when the queue is full the event is
    dropped and counted in ``dropped``. Observers drain with ``drain`` or ``get``.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: queue.Queue[ProgressEvent] = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def emit(self, run_id: str, phase: str, percent: int, message: str) -> None:
        event = ProgressEvent(run_id=run_id, phase=phase, percent=max(0, min(100, percent)), message=message)
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.debug("Progress queue full, dropped %s event for %s", phase, run_id)

    def get(self, timeout: float | None = None) -> ProgressEvent | None:
        try:
            return self._queue.get(timeout=timeout) if timeout is not None else self._queue.get_nowait()
        except queue.Empty:
            return None

    def drain(self) -> list[ProgressEvent]:
        events: list[ProgressEvent] = []
        while True:
            event = self.get()
            if event is None:
                return events
            events.append(event)
