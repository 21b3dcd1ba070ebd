"""
Tests for notification sinks and the dispatcher.
"""

import json

import httpx
import pytest

from approvalflow.models import (
    EventType,
    ItemStatus,
    ModuleType,
    Priority,
    RetryPolicy,
    RetryStrategy,
    TransitionEvent,
)
from approvalflow.notifications import (
    InboxNotificationSink,
    InMemoryNotificationSink,
    LoggingNotificationSink,
    NotificationDispatcher,
    NotificationSink,
    WebhookNotificationSink,
    render_notification,
)

NO_WAIT = RetryPolicy(strategy=RetryStrategy.NONE, max_retries=2)


def _event(event_type=EventType.ASSIGNMENT, event_id="e1", **kwargs):
    defaults = dict(
        id=event_id,
        item_id="i1",
        event_type=event_type,
        old_status=ItemStatus.PENDING,
        new_status=ItemStatus.ASSIGNED,
        assignees=["u1", "u2"],
        title="Annual risk review",
        module_type=ModuleType.RISK_ASSESSMENT,
        priority=Priority.HIGH,
        submitted_by="s1",
    )
    defaults.update(kwargs)
    return TransitionEvent(**defaults)


class FailingSink(NotificationSink):
    name = "failing"

    def __init__(self):
        self.attempts = 0

    def publish(self, event):
        self.attempts += 1
        raise ConnectionError("sink offline")


class TestRenderNotification:
    """Inbox message texts."""

    def test_assignment(self):
        title, message, priority = render_notification(_event())
        assert title == "New Approval Assignment"
        assert message == "You have been assigned to review: Annual risk review"
        assert priority == Priority.HIGH

    def test_submission(self):
        title, message, _ = render_notification(
            _event(EventType.SUBMISSION, old_status=None, new_status=ItemStatus.PENDING)
        )
        assert title == "New Approval Item Submitted"
        assert "risk_assessment" in message

    def test_reminder_is_high_priority(self):
        title, _, priority = render_notification(
            _event(EventType.REMINDER, priority=Priority.LOW)
        )
        assert title == "Approval Reminder"
        assert priority == Priority.HIGH

    def test_completion_and_update(self):
        title, message, _ = render_notification(
            _event(EventType.COMPLETION, new_status=ItemStatus.REJECTED)
        )
        assert title == "Approval Process Completed"
        assert message.endswith("with status: rejected")

        title, message, _ = render_notification(
            _event(EventType.UPDATE, new_status=ItemStatus.IN_PROGRESS)
        )
        assert title == "Approval Status Update"
        assert message.endswith("updated to in_progress")


class TestInboxSink:
    """Tests for InboxNotificationSink."""

    def test_assignment_goes_to_assignees_only(self, db):
        inbox = InboxNotificationSink(db)
        inbox.publish(_event())

        assert [n.type for n in inbox.list("u1")] == ["assignment"]
        assert inbox.unread_count("u2") == 1
        assert inbox.list("s1") == []

    def test_updates_include_submitter(self, db):
        inbox = InboxNotificationSink(db)
        inbox.publish(_event(EventType.COMPLETION, new_status=ItemStatus.COMPLETED))

        [notification] = inbox.list("s1")
        assert notification.type == "update"
        assert notification.title == "Approval Process Completed"

    def test_redelivery_is_idempotent(self, db):
        inbox = InboxNotificationSink(db)
        event = _event()
        inbox.publish(event)
        inbox.publish(event)

        assert len(inbox.list("u1")) == 1

    def test_mark_read(self, db):
        inbox = InboxNotificationSink(db)
        inbox.publish(_event(event_id="e1"))
        inbox.publish(_event(EventType.REMINDER, event_id="e2"))

        first = inbox.list("u1")[0]
        assert inbox.mark_read("u1", [first.id]) == 1
        assert inbox.unread_count("u1") == 1
        assert len(inbox.list("u1", unread_only=True)) == 1
        assert inbox.mark_read("u1") == 1
        assert inbox.unread_count("u1") == 0


class TestWebhookSink:
    """Tests for WebhookNotificationSink."""

    def test_posts_event_json(self):
        received = []

        def handler(request):
            received.append(json.loads(request.content))
            return httpx.Response(204)

        sink = WebhookNotificationSink(
            "https://hooks.example.com/approvals", transport=httpx.MockTransport(handler)
        )
        sink.publish(_event())

        assert received[0]["event_type"] == "assignment"
        assert received[0]["assignees"] == ["u1", "u2"]

    def test_error_status_raises(self):
        sink = WebhookNotificationSink(
            "https://hooks.example.com/approvals",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        with pytest.raises(httpx.HTTPStatusError):
            sink.publish(_event())


class TestDispatcher:
    """Tests for NotificationDispatcher."""

    def test_drain_delivers_inline_when_not_started(self):
        sink = InMemoryNotificationSink()
        dispatcher = NotificationDispatcher([sink], retry_policy=NO_WAIT)
        dispatcher.dispatch(_event())

        assert sink.events == []
        assert dispatcher.drain() is True
        assert [e.id for e in sink.events] == ["e1"]

    def test_worker_thread(self):
        sink = InMemoryNotificationSink()
        dispatcher = NotificationDispatcher([sink, LoggingNotificationSink()], retry_policy=NO_WAIT)
        dispatcher.start()
        try:
            assert dispatcher.running
            for n in range(5):
                dispatcher.dispatch(_event(event_id=f"e{n}"))
            assert dispatcher.drain(timeout=5.0)
        finally:
            dispatcher.stop()

        assert not dispatcher.running
        assert [e.id for e in sink.events] == ["e0", "e1", "e2", "e3", "e4"]

    def test_failing_sink_is_dead_lettered(self):
        failing = FailingSink()
        sink = InMemoryNotificationSink()
        dispatcher = NotificationDispatcher(
            [failing, sink],
            retry_policy=RetryPolicy(max_retries=3),
            sleep=lambda _: None,
        )
        dispatcher.dispatch(_event())
        dispatcher.drain()

        assert failing.attempts == 3
        assert [e.id for e in sink.events] == ["e1"]
        [letter] = dispatcher.dead_letters
        assert letter.sink == "failing"
        assert letter.event.id == "e1"
        assert "sink offline" in letter.error

    def test_dead_letters_are_bounded(self):
        dispatcher = NotificationDispatcher(
            [FailingSink()], retry_policy=NO_WAIT, sleep=lambda _: None, max_dead_letters=2
        )
        for n in range(3):
            dispatcher.dispatch(_event(event_id=f"e{n}"))
        dispatcher.drain()

        assert [d.event.id for d in dispatcher.dead_letters] == ["e1", "e2"]
        assert [d.event.id for d in dispatcher.take_dead_letters()] == ["e1", "e2"]
        assert len(dispatcher.dead_letters) == 0
        assert dispatcher.take_dead_letters() == []

    def test_add_sink(self):
        dispatcher = NotificationDispatcher(retry_policy=NO_WAIT)
        sink = InMemoryNotificationSink()
        dispatcher.add_sink(sink)
        dispatcher.dispatch(_event())
        dispatcher.drain()
        assert len(sink.events) == 1
