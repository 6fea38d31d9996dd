"""Unit tests for status notification rendering and delivery."""
import asyncio
import json
import logging
from datetime import datetime

import pytest

from common.config import reset_settings_cache
from common.models import BookingStatus
from common.notifications import (
    BookingStatusChange,
    EmailNotificationDispatcher,
    LogNotificationDispatcher,
    NotificationDispatcher,
    QueueNotificationDispatcher,
    deliver_status_change,
    get_notification_dispatcher,
    render_status_email,
)
from common.schemas import BookingRead


def make_change(new_status: BookingStatus = BookingStatus.CONFIRMED) -> BookingStatusChange:
    booking = BookingRead(
        id=7,
        service_id=1,
        user_id=3,
        contact_name="John Doe",
        contact_phone="+1-555-123-4567",
        service_location="123 Main St",
        scheduled_at=datetime(2026, 5, 2, 10, 0),
        status=new_status,
        unique_id="5d2c1a8e-0000-4000-8000-000000000007",
        created_at=datetime(2026, 5, 1, 9, 0),
        updated_at=datetime(2026, 5, 1, 9, 30),
        service={"id": 1, "name": "Deep Cleaning", "price": 100.0},
        user={"id": 3, "name": "Jane Customer", "email": "jane@example.com", "phone": "+1-555-0100"},
    )
    return BookingStatusChange(
        recipient_email="jane@example.com",
        booking=booking,
        previous_status=BookingStatus.PENDING,
        new_status=new_status,
    )


@pytest.fixture()
def fresh_dispatcher_cache():
    reset_settings_cache()
    get_notification_dispatcher.cache_clear()
    yield
    reset_settings_cache()
    get_notification_dispatcher.cache_clear()


class TestRendering:
    def test_confirmed_email(self):
        """Test the confirmation email subject and body."""
        subject, body = render_status_email(make_change())

        assert subject == "Your booking has been Confirmed"
        assert "Hi Jane Customer" in body
        assert "Deep Cleaning" in body
        assert "2026-05-02 10:00:00" in body
        assert "5d2c1a8e-0000-4000-8000-000000000007" in body
        assert "sorry for the inconvenience" not in body

    def test_cancelled_email_apologises(self):
        """Test that cancellation emails apologise."""
        subject, body = render_status_email(make_change(BookingStatus.CANCELLED))

        assert subject == "Your booking has been Cancelled"
        assert "sorry for the inconvenience" in body

    def test_completed_email_asks_for_feedback(self):
        """Test that completion emails ask for feedback."""
        _, body = render_status_email(make_change(BookingStatus.COMPLETED))

        assert "feedback" in body


class TestDelivery:
    def test_delivers_through_dispatcher(self):
        """Test that delivery hands the change to the dispatcher."""
        sent = []

        class Recorder(NotificationDispatcher):
            async def send(self, change):
                sent.append(change)

        change = make_change()
        asyncio.run(deliver_status_change(Recorder(), change))

        assert sent == [change]

    def test_failures_are_logged_not_raised(self, caplog):
        """Test that delivery failures are logged and swallowed."""
        class Broken(NotificationDispatcher):
            async def send(self, change):
                raise ConnectionError("smtp down")

        with caplog.at_level(logging.ERROR, logger="common.notifications"):
            asyncio.run(deliver_status_change(Broken(), make_change()))

        assert "Failed to deliver status notification" in caplog.text

    def test_log_dispatcher(self, caplog):
        """Test that the log dispatcher records the transition."""
        with caplog.at_level(logging.INFO, logger="common.notifications"):
            asyncio.run(LogNotificationDispatcher().send(make_change()))

        assert "pending -> confirmed" in caplog.text
        assert "jane@example.com" in caplog.text

    def test_queue_dispatcher_publishes_json(self):
        """Test the JSON message published to the queue."""
        dispatcher = QueueNotificationDispatcher("localhost", "booking_notifications")
        published = []
        dispatcher._publish = published.append

        asyncio.run(dispatcher.send(make_change()))

        message = json.loads(published[0])
        assert message["event"] == "booking_status_changed"
        assert message["recipient_email"] == "jane@example.com"
        assert message["previous_status"] == "pending"
        assert message["new_status"] == "confirmed"
        assert message["booking"]["service"]["name"] == "Deep Cleaning"


class TestBackendSelection:
    @pytest.mark.parametrize(
        "backend, expected",
        [
            ("log", LogNotificationDispatcher),
            ("email", EmailNotificationDispatcher),
            ("queue", QueueNotificationDispatcher),
        ],
    )
    def test_backend_from_settings(self, monkeypatch, fresh_dispatcher_cache, backend, expected):
        """Test that the dispatcher follows the configured backend."""
        monkeypatch.setenv("NOTIFICATION_BACKEND", backend)
        reset_settings_cache()

        assert isinstance(get_notification_dispatcher(), expected)
