"""Domain event constants and publisher.

Defines event type constants and a simple publish() callable used by the
duplication coordinator and the attachment worker.
"""

from __future__ import annotations

from collections import deque
from typing import Any, Deque, Dict, List
import logging
import threading

logger = logging.getLogger(__name__)

DUPLICATION_SUCCEEDED = "duplication.succeeded"
DUPLICATION_DEAD_LETTERED = "duplication.dead_lettered"
DUPLICATION_CANCELLED = "duplication.cancelled"
ATTACHMENT_COPY_SUCCEEDED = "attachment.copy_succeeded"
ATTACHMENT_COPY_FAILED = "attachment.copy_failed"

# In-memory buffer for domain events (test-only visibility); oldest entries drop first
EVENT_BUFFER_SIZE = 1000
EVENT_BUFFER: Deque[Dict[str, Any]] = deque(maxlen=EVENT_BUFFER_SIZE)
_BUFFER_LOCK = threading.Lock()


def publish(event_type: str, payload: Dict[str, Any]) -> None:
    """Publish a domain event.

    In this minimal implementation, we log the event for observability.
    """
    logger.info("event_publish type=%s payload=%s", event_type, payload)
    with _BUFFER_LOCK:
        EVENT_BUFFER.append({"type": event_type, "payload": dict(payload)})


def get_buffered_events(clear: bool = True) -> List[Dict[str, Any]]:
    """Return buffered domain events; optionally clear the buffer."""
    with _BUFFER_LOCK:
        events = list(EVENT_BUFFER)
        if clear:
            EVENT_BUFFER.clear()
    return events


__all__ = [
    "DUPLICATION_SUCCEEDED",
    "DUPLICATION_DEAD_LETTERED",
    "DUPLICATION_CANCELLED",
    "ATTACHMENT_COPY_SUCCEEDED",
    "ATTACHMENT_COPY_FAILED",
    "publish",
    "get_buffered_events",
    "EVENT_BUFFER",
    "EVENT_BUFFER_SIZE",
]
