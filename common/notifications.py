"""Booking status notifications.

The booking service only decides *when* a customer should hear about a status
change; rendering and delivery live here. Delivery runs after the HTTP response
(see ``deliver_status_change``) and never fails the request that triggered it.
"""
from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Tuple

import pika
from circuitbreaker import circuit
from fastapi_mail import ConnectionConfig, FastMail, MessageSchema, MessageType
from jinja2 import Environment, FileSystemLoader, select_autoescape
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from .config import Settings, get_settings
from .models import BookingStatus
from .schemas import BookingRead

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"


class BookingStatusChange(BaseModel):
    recipient_email: str
    booking: BookingRead
    previous_status: BookingStatus
    new_status: BookingStatus


class NotificationDispatcher:
    async def send(self, change: BookingStatusChange) -> None:
        raise NotImplementedError


class LogNotificationDispatcher(NotificationDispatcher):
    async def send(self, change: BookingStatusChange) -> None:
        logger.info(
            "Booking %s changed %s -> %s; would notify %s",
            change.booking.unique_id,
            change.previous_status.value,
            change.new_status.value,
            change.recipient_email,
        )


_templates = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html"]),
)


def render_status_email(change: BookingStatusChange) -> Tuple[str, str]:
    """Return the (subject, html body) for a status change email."""

    status_label = change.new_status.value.capitalize()
    body = _templates.get_template("booking_status.html").render(
        booking=change.booking,
        status=status_label,
        new_status=change.new_status.value,
    )
    return f"Your booking has been {status_label}", body


class EmailNotificationDispatcher(NotificationDispatcher):
    def __init__(self, settings: Settings) -> None:
        self.config = ConnectionConfig(
            MAIL_USERNAME=settings.mail_username,
            MAIL_PASSWORD=settings.mail_password,
            MAIL_FROM=settings.mail_from,
            MAIL_FROM_NAME=settings.mail_from_name,
            MAIL_PORT=settings.mail_port,
            MAIL_SERVER=settings.mail_server,
            MAIL_STARTTLS=settings.mail_starttls,
            MAIL_SSL_TLS=settings.mail_ssl_tls,
            USE_CREDENTIALS=bool(settings.mail_username),
            VALIDATE_CERTS=True,
        )

    async def send(self, change: BookingStatusChange) -> None:
        subject, body = render_status_email(change)
        message = MessageSchema(
            subject=subject,
            recipients=[change.recipient_email],
            body=body,
            subtype=MessageType.html,
        )
        await FastMail(self.config).send_message(message)
        logger.info("Status email for booking %s sent to %s", change.booking.unique_id, change.recipient_email)


class QueueNotificationDispatcher(NotificationDispatcher):
    """Hands status changes to a RabbitMQ queue for an out-of-process mailer."""

    def __init__(self, host: str, queue: str) -> None:
        self.host = host
        self.queue = queue

    @circuit(failure_threshold=5, recovery_timeout=60)
    def _publish(self, body: str) -> None:
        connection = pika.BlockingConnection(pika.ConnectionParameters(host=self.host))
        try:
            channel = connection.channel()
            channel.queue_declare(queue=self.queue, durable=True)
            channel.basic_publish(
                exchange="",
                routing_key=self.queue,
                body=body,
                properties=pika.BasicProperties(delivery_mode=2),
            )
        finally:
            connection.close()

    async def send(self, change: BookingStatusChange) -> None:
        message = {
            "event": "booking_status_changed",
            "recipient_email": change.recipient_email,
            "previous_status": change.previous_status.value,
            "new_status": change.new_status.value,
            "booking": change.booking.model_dump(mode="json"),
        }
        await run_in_threadpool(self._publish, json.dumps(message))
        logger.info("Queued status notification for booking %s", change.booking.unique_id)


async def deliver_status_change(dispatcher: NotificationDispatcher, change: BookingStatusChange) -> None:
    try:
        await dispatcher.send(change)
    except Exception:
        logger.exception(
            "Failed to deliver status notification for booking %s to %s",
            change.booking.unique_id,
            change.recipient_email,
        )


@lru_cache
def get_notification_dispatcher() -> NotificationDispatcher:
    settings = get_settings()
    if settings.notification_backend == "email":
        return EmailNotificationDispatcher(settings)
    if settings.notification_backend == "queue":
        return QueueNotificationDispatcher(settings.rabbitmq_host, settings.notification_queue)
    return LogNotificationDispatcher()
