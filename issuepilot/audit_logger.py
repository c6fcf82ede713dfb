import os
from typing import Iterable, Optional

from issuepilot.event_bus import EventBus, PilotEvent


class AuditLogger:
    """
    Append-only JSONL trail of lifecycle events: admissions, clarification
    requests, VM leases and teardowns, phase results.
    """

    def __init__(self, file_path: str, event_bus: EventBus, event_types: Optional[Iterable[str]] = None):
        self.file_path = os.path.expanduser(file_path)
        os.makedirs(os.path.dirname(os.path.abspath(self.file_path)), exist_ok=True)
        event_bus.subscribe(self.log_event, event_types)

    def log_event(self, event: PilotEvent) -> None:
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.write(event.model_dump_json() + "\n")
