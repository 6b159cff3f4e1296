import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass
class ProgressEvent:
    stage: str
    message: str
    context: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return asdict(self)


class ProgressSink(Protocol):
    def emit(self, event: ProgressEvent) -> None: ...


class ProgressRecorder:
    """Keeps every event in order; used by the HTTP layer to return progress with the result."""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []

    def emit(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def stages(self) -> list[str]:
        return [event.stage for event in self.events]


class QueueProgressSink:
    def __init__(self, queue: asyncio.Queue | None = None) -> None:
        self.queue: asyncio.Queue = queue or asyncio.Queue()

    def emit(self, event: ProgressEvent) -> None:
        self.queue.put_nowait(event)


def emit_progress(sink: ProgressSink | None, stage: str, message: str, **context) -> None:
    if sink is None:
        return
    try:
        sink.emit(ProgressEvent(stage=stage, message=message, context=context))
    except Exception:
        logger.exception("Progress sink failed", extra={"stage": stage})
