"""Broker-agnostic job queue interface and in-process implementations.

Messages are plain identifiers published to a topic; consumers re-read all
state from the database, which keeps delivery at-least-once safe and lets any
real broker stand in for these implementations.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Deque, Dict, List, Protocol, Set, Tuple

logger = logging.getLogger(__name__)

DUPLICATION_TOPIC = "duplication"
ATTACHMENT_COPY_TOPIC = "attachment_copy"

Handler = Callable[[str], None]


class JobQueue(Protocol):
    def subscribe(self, topic: str, handler: Handler) -> None:
        ...

    def publish(self, topic: str, message_id: str, delay_seconds: float = 0.0) -> None:
        ...


class _Subscriptions:
    def __init__(self) -> None:
        self._handlers: Dict[str, Handler] = {}

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._handlers[topic] = handler

    def _handler(self, topic: str) -> Handler:
        try:
            return self._handlers[topic]
        except KeyError:
            raise LookupError(f"no subscriber for topic {topic}") from None


class InlineJobQueue(_Subscriptions):
    """Delivers synchronously in the publishing thread; delays are ignored.

    Messages published while a delivery is in progress are queued and drained
    by the outermost ``publish`` call, so retries never recurse.
    """

    def __init__(self) -> None:
        super().__init__()
        self.published: List[Tuple[str, str, float]] = []
        self._pending: Deque[Tuple[str, str]] = deque()
        self._draining = False

    def publish(self, topic: str, message_id: str, delay_seconds: float = 0.0) -> None:
        self.published.append((topic, message_id, float(delay_seconds)))
        self._pending.append((topic, message_id))
        if self._draining:
            return
        self._draining = True
        try:
            while self._pending:
                t, mid = self._pending.popleft()
                self._handler(t)(mid)
        finally:
            self._draining = False
            self._pending.clear()


class InProcessJobQueue(_Subscriptions):
    """Thread-pool backed queue; delayed messages are scheduled with timers."""

    def __init__(self, worker_count: int = 4) -> None:
        super().__init__()
        self._pool = ThreadPoolExecutor(max_workers=max(1, int(worker_count)), thread_name_prefix="hierarchy-jobs")
        self._timers: Set[threading.Timer] = set()
        self._lock = threading.Lock()
        self._closed = False

    def publish(self, topic: str, message_id: str, delay_seconds: float = 0.0) -> None:
        if self._closed:
            raise RuntimeError("queue is shut down")
        if delay_seconds and delay_seconds > 0:
            timer = threading.Timer(delay_seconds, self._on_timer, args=(topic, message_id))
            timer.daemon = True
            with self._lock:
                self._timers.add(timer)
            timer.start()
            logger.info("job_queue.publish.delayed topic=%s message_id=%s delay=%.2f", topic, message_id, delay_seconds)
            return
        self._submit(topic, message_id)

    def _on_timer(self, topic: str, message_id: str) -> None:
        with self._lock:
            self._timers = {t for t in self._timers if t.is_alive() and t is not threading.current_thread()}
        if not self._closed:
            self._submit(topic, message_id)

    def _submit(self, topic: str, message_id: str) -> None:
        self._pool.submit(self._deliver, topic, message_id)

    def _deliver(self, topic: str, message_id: str) -> None:
        try:
            self._handler(topic)(message_id)
        except Exception:
            # Worker boundary: the message state lives in the database, so the
            # failure is logged here and recovered by requeue sweeps.
            logger.error("job_queue.deliver.failed topic=%s message_id=%s", topic, message_id, exc_info=True)

    def shutdown(self, wait: bool = True) -> None:
        self._closed = True
        with self._lock:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        self._pool.shutdown(wait=wait)


__all__ = [
    "DUPLICATION_TOPIC",
    "ATTACHMENT_COPY_TOPIC",
    "JobQueue",
    "InlineJobQueue",
    "InProcessJobQueue",
]
