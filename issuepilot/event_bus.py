import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from loguru import logger
from pydantic import BaseModel, Field


class PilotEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    source: str
    payload: Dict[str, Any]


Subscriber = Callable[[PilotEvent], None]


class EventBus:
    """Synchronous in-process pub/sub for lifecycle events (cycles, admissions, VMs, phases)."""

    def __init__(self, history: int = 100):
        self._subscribers: List[Tuple[Subscriber, Optional[Set[str]]]] = []
        self._recent: Deque[PilotEvent] = deque(maxlen=history)

    def subscribe(self, callback: Subscriber, event_types: Optional[Iterable[str]] = None) -> None:
        """Register a callback for every event, or only for the given event types."""
        self._subscribers.append((callback, set(event_types) if event_types else None))

    def emit(self, event_type: str, source: str, payload: Dict[str, Any]) -> PilotEvent:
        """Construct and broadcast a PilotEvent to all matching subscribers."""
        event = PilotEvent(event_type=event_type, source=source, payload=payload)
        self._recent.append(event)

        for callback, wanted in self._subscribers:
            if wanted is not None and event_type not in wanted:
                continue
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"[BUS] Subscriber {callback!r} failed on {event_type}: {e}")
        return event

    def recent(self, limit: int = 20) -> List[PilotEvent]:
        """Most recent events, oldest first."""
        return list(self._recent)[-limit:]
