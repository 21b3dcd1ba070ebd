"""
ApprovalFlow - Notification sinks and the asynchronous dispatcher.

The engine hands events to ``NotificationDispatcher.dispatch`` after it has
released its locks. Delivery happens on a worker thread; each sink is retried
with the dispatcher's ``RetryPolicy`` and events a sink keeps rejecting are
kept in ``dead_letters``, which holds the most recent ``max_dead_letters``.
"""

import logging
import queue
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Iterable, Optional

import httpx

from .database import Database, NotificationModel
from .exceptions import UnavailableError
from .models import EventType, Notification, Priority, RetryPolicy, TransitionEvent, utcnow
from .retry import call_with_retry

logger = logging.getLogger("approvalflow.notifications")


class NotificationSink(ABC):
    """Destination for transition events."""

    name = "sink"

    @abstractmethod
    def publish(self, event: TransitionEvent) -> None:
        """Deliver one event. Raise to signal a failed attempt."""


class LoggingNotificationSink(NotificationSink):
    name = "logging"

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def publish(self, event):
        logger.log(
            self.level,
            "Item %s %s: %s -> %s (assignees=%s)",
            event.item_id,
            event.event_type.value,
            event.old_status.value if event.old_status else None,
            event.new_status.value,
            ",".join(event.assignees) or "-",
        )


class InMemoryNotificationSink(NotificationSink):
    """Collects events in a list. Useful for tests and embedding."""

    name = "memory"

    def __init__(self):
        self._lock = threading.Lock()
        self._events: list[TransitionEvent] = []

    def publish(self, event):
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[TransitionEvent]:
        with self._lock:
            return list(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class WebhookNotificationSink(NotificationSink):
    """POSTs each event as JSON to a webhook URL."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        headers: Optional[dict] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.url = url
        self._client = httpx.Client(headers=headers or {}, timeout=timeout, transport=transport)

    def publish(self, event):
        response = self._client.post(self.url, json=event.to_dict())
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


def render_notification(event: TransitionEvent) -> tuple[str, str, Priority]:
    """Title, message and priority of the inbox entry for ``event``."""
    name = event.title or event.item_id
    status = event.new_status.value

    if event.event_type == EventType.SUBMISSION:
        module = event.module_type.value if event.module_type else "item"
        return (
            "New Approval Item Submitted",
            f"A new {module} has been submitted for approval: {name}",
            Priority.MEDIUM,
        )
    if event.event_type == EventType.ASSIGNMENT:
        return (
            "New Approval Assignment",
            f"You have been assigned to review: {name}",
            event.priority,
        )
    if event.event_type == EventType.REMINDER:
        return (
            "Approval Reminder",
            f"Reminder: You have an approval task due for {name}",
            Priority.HIGH,
        )
    if event.event_type == EventType.COMPLETION:
        return (
            "Approval Process Completed",
            f"The approval process for {name} has been completed with status: {status}",
            Priority.MEDIUM,
        )
    return (
        "Approval Status Update",
        f"The status of {name} has been updated to {status}",
        Priority.MEDIUM,
    )


def _notification_type(event_type: EventType) -> str:
    if event_type in (EventType.REMINDER, EventType.ASSIGNMENT):
        return event_type.value
    return "update"


def _recipients(event: TransitionEvent) -> list[str]:
    if event.event_type in (EventType.ASSIGNMENT, EventType.REMINDER):
        return list(event.assignees)
    return event.recipients


def _to_notification(row: NotificationModel) -> Notification:
    return Notification(
        id=row.id,
        user_id=row.user_id,
        item_id=row.item_id,
        title=row.title,
        message=row.message,
        type=row.type,
        priority=Priority(row.priority or "medium"),
        is_read=bool(row.is_read),
        created_at=row.created_at,
    )


class InboxNotificationSink(NotificationSink):
    """
    Per-user notification inbox stored in the database.

    Redelivery of the same event is a no-op, so at-least-once delivery
    never produces duplicate entries.
    """

    name = "inbox"

    def __init__(self, db: Database):
        self.db = db

    def publish(self, event):
        title, message, priority = render_notification(event)
        with self.db.transaction() as session:
            for user_id in _recipients(event):
                if self.db.has_notification(session, event.id, user_id):
                    continue
                self.db.create_notification(
                    session,
                    user_id=user_id,
                    item_id=event.item_id,
                    event_id=event.id,
                    title=title,
                    message=message,
                    type=_notification_type(event.event_type),
                    priority=priority.value,
                    created_at=utcnow(),
                )

    def list(self, user_id: str, unread_only: bool = False, limit: int = 50) -> list[Notification]:
        with self.db.transaction() as session:
            rows = self.db.list_notifications(
                session, user_id, unread_only=unread_only, limit=limit
            )
            return [_to_notification(r) for r in rows]

    def unread_count(self, user_id: str) -> int:
        with self.db.transaction() as session:
            return self.db.count_unread_notifications(session, user_id)

    def mark_read(self, user_id: str, notification_ids: Optional[Iterable[str]] = None) -> int:
        with self.db.transaction() as session:
            return self.db.mark_notifications_read(session, user_id, notification_ids)


@dataclass
class DeadLetter:
    event: TransitionEvent
    sink: str
    error: str


_STOP = object()

DEFAULT_MAX_DEAD_LETTERS = 1000


class NotificationDispatcher:
    """
    Fire-and-forget fan-out of events to sinks.

    ``dispatch`` never blocks on a sink. Until ``start`` is called events
    wait in the queue; ``drain`` delivers them inline in that case.
    """

    def __init__(
        self,
        sinks: Iterable[NotificationSink] = (),
        retry_policy: Optional[RetryPolicy] = None,
        sleep=None,
        max_dead_letters: int = DEFAULT_MAX_DEAD_LETTERS,
    ):
        self.sinks = list(sinks)
        self.retry_policy = retry_policy or RetryPolicy()
        self.dead_letters: "deque[DeadLetter]" = deque(maxlen=max_dead_letters)
        self._queue: "queue.Queue" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._sleep = sleep

    def add_sink(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(
            target=self._run, name="approvalflow-notifications", daemon=True
        )
        self._worker.start()
        logger.info("Notification dispatcher started with %d sinks", len(self.sinks))

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        if self._worker is None:
            return
        self._queue.put(_STOP)
        self._worker.join(timeout)
        self._worker = None
        logger.info("Notification dispatcher stopped")

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def dispatch(self, event: TransitionEvent) -> None:
        self._queue.put(event)

    def take_dead_letters(self) -> list[DeadLetter]:
        """Remove and return the dead letters collected so far."""
        taken = []
        while True:
            try:
                taken.append(self.dead_letters.popleft())
            except IndexError:
                return taken

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait until every queued event has been delivered (or dead-lettered)."""
        if not self.running:
            while True:
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    return True
                try:
                    if item is not _STOP:
                        self._deliver(item)
                finally:
                    self._queue.task_done()

        done = threading.Event()

        def wait():
            self._queue.join()
            done.set()

        threading.Thread(target=wait, daemon=True).start()
        return done.wait(timeout)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, event: TransitionEvent) -> None:
        for sink in self.sinks:
            kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
            try:
                call_with_retry(
                    lambda: sink.publish(event),
                    policy=self.retry_policy,
                    retry_on=(Exception,),
                    description=f"notify {sink.name}",
                    **kwargs,
                )
            except UnavailableError as e:
                cause = e.__cause__ or e
                logger.error(
                    "Dead-lettered event %s for sink %s: %s", event.id, sink.name, cause
                )
                self.dead_letters.append(DeadLetter(event=event, sink=sink.name, error=str(cause)))
