from __future__ import annotations

import smtplib
from collections.abc import Sequence
from email.message import EmailMessage as MimeMessage

from opentelemetry import trace

from oppflow.context import get_correlation_id
from oppflow.core.config import Settings
from oppflow.crm.schemas import EmailMessage
from oppflow.crm.triggers.errors import NotificationDeliveryError
from oppflow.crm.triggers.gateways import NotificationGateway


tracer = trace.get_tracer("oppflow.crm.triggers.notifications")

sent_messages: list[EmailMessage] = []


class StubNotificationGateway:
    """Records messages in ``sent_messages`` instead of delivering them."""

    def send(self, messages: Sequence[EmailMessage]) -> None:
        with tracer.start_as_current_span("notification.send") as span:
            span.set_attribute("backend", "stub")
            span.set_attribute("message_count", len(messages))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            sent_messages.extend(messages)


class SmtpNotificationGateway:
    def __init__(self, settings: Settings):
        self.host = settings.smtp_host.strip()
        self.port = settings.smtp_port
        self.security = settings.smtp_security.strip().lower()
        self.username = settings.smtp_username.strip()
        self.password = settings.smtp_password
        self.from_email = settings.notification_from_email
        self.timeout = settings.smtp_timeout_seconds

    def send(self, messages: Sequence[EmailMessage]) -> None:
        if not self.host:
            raise NotificationDeliveryError("Missing SMTP host")
        if self.security not in {"none", "starttls", "ssl"}:
            raise NotificationDeliveryError("Invalid SMTP security mode")

        with tracer.start_as_current_span("notification.send") as span:
            span.set_attribute("backend", "smtp")
            span.set_attribute("message_count", len(messages))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                outgoing = [(self._to_mime(message), message.to_addresses) for message in messages]
            except ValueError as exc:
                span.record_exception(exc)
                raise NotificationDeliveryError(f"Invalid notification message: {exc}") from exc

            sent_count = 0
            try:
                with self._connect() as server:
                    if self.security == "starttls":
                        server.starttls()
                    if self.username:
                        server.login(self.username, self.password)
                    # one session for the whole batch
                    for mime, to_addresses in outgoing:
                        server.send_message(mime, to_addrs=to_addresses)
                        sent_count += 1
            except (smtplib.SMTPException, OSError) as exc:
                span.record_exception(exc)
                span.set_attribute("sent_count", sent_count)
                raise NotificationDeliveryError(f"SMTP delivery failed: {exc}", sent_count=sent_count) from exc

    def _connect(self) -> smtplib.SMTP:
        if self.security == "ssl":
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        return smtplib.SMTP(self.host, self.port, timeout=self.timeout)

    def _to_mime(self, message: EmailMessage) -> MimeMessage:
        mime = MimeMessage()
        mime["From"] = self.from_email
        mime["To"] = ", ".join(message.to_addresses)
        mime["Subject"] = message.subject
        mime.set_content(message.body)
        return mime


def get_notification_gateway(settings: Settings) -> NotificationGateway:
    backend = settings.notification_backend.strip().lower()
    if backend == "stub":
        return StubNotificationGateway()
    if backend == "smtp":
        return SmtpNotificationGateway(settings)
    raise ValueError(f"Unknown notification backend: {settings.notification_backend}")
