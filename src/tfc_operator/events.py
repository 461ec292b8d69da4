"""Event recording for user-visible workspace conditions.

Events answer "what did the operator do to this workspace, and why did it
stop?" without reading the full log stream:
- Every event is emitted as a structured log record
- A bounded in-memory history serves the CLI and tests
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .models import WorkspaceResource

logger = logging.getLogger(__name__)

DEFAULT_EVENT_REASON = "WorkspaceEvent"
MAX_EVENT_HISTORY = 1000


class EventType(str, Enum):
    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass
class Event:
    """A single recorded event."""

    resource: str
    event_type: EventType
    reason: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["event_type"] = self.event_type.value
        result["timestamp"] = self.timestamp.isoformat()
        return result


class EventRecorder:
    """Records events against workspace resources."""

    def __init__(self, max_events: int = MAX_EVENT_HISTORY) -> None:
        self._events: deque[Event] = deque(maxlen=max_events)

    def record(
        self,
        resource: WorkspaceResource,
        event_type: EventType,
        message: str,
        reason: str = DEFAULT_EVENT_REASON,
    ) -> Event:
        event = Event(
            resource=resource.key,
            event_type=event_type,
            reason=reason,
            message=message,
        )
        self._events.append(event)

        logger.log(
            logging.WARNING if event_type == EventType.WARNING else logging.INFO,
            message,
            extra={
                "event": event.to_dict(),
                "resource": event.resource,
                "reason": reason,
            },
        )
        return event

    def normal(self, resource: WorkspaceResource, message: str) -> Event:
        return self.record(resource, EventType.NORMAL, message)

    def warning(self, resource: WorkspaceResource, message: str) -> Event:
        return self.record(resource, EventType.WARNING, message)

    def events_for(self, key: str) -> list[Event]:
        """Recorded events for a resource key, oldest first."""
        return [e for e in self._events if e.resource == key]

    @property
    def events(self) -> list[Event]:
        return list(self._events)
