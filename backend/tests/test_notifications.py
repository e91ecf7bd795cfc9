"""Tests for notification channels and routing."""

import pytest
from sqlalchemy import select

from ops_automation.automation.errors import TransientIOError
from ops_automation.automation.models import DeliveryChannel
from ops_automation.models.entity import Notification
from ops_automation.services.notifications import EmailChannel, InAppChannel


class TestInAppChannel:
    async def test_stores_notification(self, session_factory, test_session):
        channel = InAppChannel(session_factory)

        result = await channel.send("u1", "Overdue", "Task is late", "task", "t1")

        assert result.success
        rows = (await test_session.execute(select(Notification))).scalars().all()
        assert len(rows) == 1
        assert rows[0].user_id == "u1"
        assert rows[0].title == "Overdue"
        assert rows[0].related_id == "t1"
        assert rows[0].is_read is False


class TestEmailChannel:
    async def test_unconfigured_smtp_logs_instead_of_sending(self):
        channel = EmailChannel(None, 587, None, None, "automations@localhost")

        result = await channel.send("ops@example.com", "Subject", "Body")

        assert not channel.configured
        assert result.success

    def test_from_settings(self):
        from ops_automation.core.config import Settings

        s = Settings(_env_file=None, SMTP_HOST="smtp.example.com", SMTP_USERNAME="u", SMTP_PASSWORD="p")
        channel = EmailChannel.from_settings(s)
        assert channel.configured
        assert channel.host == "smtp.example.com"


class TestNotifier:
    async def test_in_app_only(self, notifier, in_app_channel, email_channel):
        await notifier.notify(["u1", "ops@example.com"], "S", "B")

        assert len(in_app_channel.sent) == 2
        assert email_channel.sent == []

    async def test_email_uses_address_like_recipients(self, notifier, in_app_channel, email_channel):
        await notifier.notify(
            ["u1", "ops@example.com"], "S", "B", channel=DeliveryChannel.EMAIL
        )

        assert in_app_channel.sent == []
        assert [m["recipient"] for m in email_channel.sent] == ["ops@example.com"]

    async def test_both_channels(self, notifier, in_app_channel, email_channel):
        await notifier.notify(
            ["u1"], "S", "B", channel=DeliveryChannel.BOTH, emails=["lead@example.com"]
        )

        assert [m["recipient"] for m in in_app_channel.sent] == ["u1"]
        assert [m["recipient"] for m in email_channel.sent] == ["lead@example.com"]

    async def test_failed_delivery_raises(self, notifier, email_channel):
        email_channel.fail = True
        with pytest.raises(TransientIOError, match="ops@example.com"):
            await notifier.notify([], "S", "B", channel=DeliveryChannel.EMAIL, emails=["ops@example.com"])
