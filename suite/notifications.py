"""E-mail delivery through an RQ queue.

HTTP handlers never talk to SMTP directly.  They call the
:class:`NotificationDispatcher` built by the application factory, which
renders the message and enqueues :func:`send_email` on the
``notifications`` queue.  The RQ worker runs the job and retries failed
deliveries up to three times using :class:`rq.Retry`.

When no Redis URL is configured the dispatcher has no queue; messages are
logged and dropped so invitations still work in development setups.
"""

from __future__ import annotations

import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Tuple

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue, Retry

logger = logging.getLogger(__name__)

QUEUE_NAME = "notifications"


class EmailNotifier:
    """Send e-mails using SMTP."""

    def __init__(self, server: str | None = None, port: int | None = None, sender: str | None = None) -> None:
        self.server = server or os.getenv("SMTP_SERVER", "localhost")
        self.port = int(port or os.getenv("SMTP_PORT", "25"))
        self.sender = sender or os.getenv("SMTP_SENDER", "noreply@example.com")

    def prepare_message(self, subject_template: str, body_template: str, **context: str) -> Tuple[str, str]:
        return subject_template.format(**context), body_template.format(**context)

    def send(self, recipient: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = recipient
        msg.set_content(body)
        try:
            with smtplib.SMTP(self.server, self.port) as smtp:
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            # re-raised so the worker retries the job
            logger.warning("Failed to send email to %s: %s", recipient, exc)
            raise


def send_email(recipient: str, subject: str, body: str) -> None:
    """Job function executed by the worker to deliver one e-mail."""
    EmailNotifier().send(recipient, subject, body)


_TEMPLATES = {
    "invitation": (
        "You have been invited to Business Smart Suite",
        "Hello {name},\n\n"
        "{inviter} has invited you to Business Smart Suite.\n"
        "Accept the invitation within {days} days:\n\n{link}\n",
    ),
    "welcome": (
        "Welcome to Business Smart Suite",
        "Hello {name},\n\n"
        "Your account {username} is ready.\n"
        "Set your password here:\n\n{link}\n",
    ),
}


class NotificationDispatcher:
    def __init__(self, queue: Queue | None = None, app_url: str = "http://localhost:5000") -> None:
        self.queue = queue
        self.app_url = app_url.rstrip("/")
        self._renderer = EmailNotifier()

    @classmethod
    def from_url(cls, redis_url: str | None, app_url: str) -> "NotificationDispatcher":
        queue = None
        if redis_url:
            queue = Queue(QUEUE_NAME, connection=Redis.from_url(redis_url))
        return cls(queue, app_url)

    def enqueue(self, recipient: str, subject: str, body: str) -> bool:
        """Queue an e-mail; returns False when it could not be queued."""
        if self.queue is None:
            logger.info("No notification queue configured; not sending '%s' to %s", subject, recipient)
            return False
        try:
            self.queue.enqueue(send_email, recipient, subject, body, retry=Retry(max=3))
        except RedisError as exc:
            logger.warning("Failed to queue email to %s: %s", recipient, exc)
            return False
        return True

    def _render(self, template_key: str, **context) -> Tuple[str, str]:
        subject_t, body_t = _TEMPLATES[template_key]
        return self._renderer.prepare_message(subject_t, body_t, **context)

    def send_invitation(self, email: str, name: str, token: str, inviter: str = "An administrator", days: int = 7) -> bool:
        link = f"{self.app_url}/accept-invite?token={token}"
        subject, body = self._render("invitation", name=name, inviter=inviter, days=str(days), link=link)
        return self.enqueue(email, subject, body)

    def send_welcome(self, email: str, name: str, username: str, token: str) -> bool:
        link = f"{self.app_url}/reset-password?token={token}"
        subject, body = self._render("welcome", name=name or username, username=username, link=link)
        return self.enqueue(email, subject, body)
