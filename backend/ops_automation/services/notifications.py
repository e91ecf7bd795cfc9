"""Notification channels used by the notify, send-email and escalate actions."""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ops_automation.automation.errors import TransientIOError
from ops_automation.automation.models import DeliveryChannel
from ops_automation.models.entity import Notification

logger = logging.getLogger(__name__)


class NotificationResult:
    def __init__(self, success: bool, detail: str = "") -> None:
        self.success = success
        self.detail = detail

    def __repr__(self) -> str:
        return f"NotificationResult(success={self.success}, detail={self.detail!r})"


class NotificationChannel(Protocol):
    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        related_kind: str | None = None,
        related_id: str | None = None,
    ) -> NotificationResult:
        ...


class InAppChannel:
    """Writes notification rows read by the in-app notification bell."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        related_kind: str | None = None,
        related_id: str | None = None,
    ) -> NotificationResult:
        try:
            async with self.session_factory() as session:
                session.add(
                    Notification(
                        user_id=recipient,
                        title=subject,
                        body=body,
                        related_kind=related_kind,
                        related_id=related_id,
                    )
                )
                await session.commit()
        except (OperationalError, DBAPIError) as exc:
            logger.error(f"Failed to store notification for {recipient}: {exc}")
            return NotificationResult(False, f"notification store failure: {exc}")
        return NotificationResult(True, "Notification stored")


class EmailChannel:
    """SMTP email delivery.

    Without SMTP credentials the message is logged instead of sent, which
    keeps development setups working.
    """

    def __init__(
        self,
        host: str | None,
        port: int,
        username: str | None,
        password: str | None,
        from_address: str,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_address = from_address

    @property
    def configured(self) -> bool:
        return bool(self.host and self.username and self.password)

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        related_kind: str | None = None,
        related_id: str | None = None,
    ) -> NotificationResult:
        if not self.configured:
            logger.info(f"SMTP not configured; email to {recipient} would be sent: {subject}")
            return NotificationResult(True, "SMTP not configured; email logged")

        message = EmailMessage()
        message["From"] = self.from_address
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)

        def _send() -> NotificationResult:
            try:
                with smtplib.SMTP(self.host, self.port) as server:
                    server.starttls()
                    server.login(self.username, self.password)
                    server.send_message(message)
                return NotificationResult(True, "Email delivered via SMTP")
            except (smtplib.SMTPException, OSError) as exc:
                logger.exception(f"Failed to send SMTP email to {recipient}")
                return NotificationResult(False, f"SMTP failure: {exc}")

        return await asyncio.to_thread(_send)

    @classmethod
    def from_settings(cls, settings) -> "EmailChannel":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USERNAME,
            password=settings.SMTP_PASSWORD,
            from_address=settings.EMAIL_FROM_ADDRESS,
        )


class Notifier:
    """Routes a notification to the channels a delivery channel selects."""

    def __init__(self, in_app: NotificationChannel, email: NotificationChannel):
        self.in_app = in_app
        self.email = email

    async def notify(
        self,
        recipients: list[str],
        subject: str,
        body: str,
        channel: DeliveryChannel = DeliveryChannel.IN_APP,
        emails: list[str] | None = None,
        related_kind: str | None = None,
        related_id: str | None = None,
    ) -> list[NotificationResult]:
        """Deliver to every recipient on the selected channels.

        In-app notifications go to ``recipients`` (user ids). Email goes to
        ``emails`` when given, otherwise to the recipients that look like
        addresses.

        Raises:
            TransientIOError: If any delivery failed
        """
        results: list[NotificationResult] = []
        failures: list[str] = []

        if channel in (DeliveryChannel.IN_APP, DeliveryChannel.BOTH):
            for recipient in recipients:
                result = await self.in_app.send(recipient, subject, body, related_kind, related_id)
                results.append(result)
                if not result.success:
                    failures.append(f"{recipient}: {result.detail}")

        if channel in (DeliveryChannel.EMAIL, DeliveryChannel.BOTH):
            addresses = emails if emails else [r for r in recipients if "@" in r]
            if not addresses:
                logger.warning(f"No email address for notification '{subject}'")
            for address in addresses:
                result = await self.email.send(address, subject, body, related_kind, related_id)
                results.append(result)
                if not result.success:
                    failures.append(f"{address}: {result.detail}")

        if failures:
            raise TransientIOError(f"Notification delivery failed ({'; '.join(failures)})")
        return results
