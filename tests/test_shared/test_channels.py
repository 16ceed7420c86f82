"""
Tests for notification channels.

These tests verify that the mock email and SMS channels record what they
send and simulate provider failures both ways (returned and raised).
"""

import pytest

from shared.channels import (
    EmailChannel,
    NotificationChannels,
    SendError,
    SMSChannel,
)
from shared.models import Channel


class TestEmailChannel:
    """Tests for the mock email channel."""

    def test_send_email_success(self, email_channel: EmailChannel):
        """Test successful email send."""
        result = email_channel.send(
            to="test@example.com",
            subject="Test Subject",
            body="<p>Test body</p>",
            preview_text="Test body",
            priority=True,
        )

        assert result.success is True
        assert result.channel == Channel.EMAIL
        assert result.recipient == "test@example.com"
        assert result.subject == "Test Subject"
        assert result.important is True
        assert result.error is None

    def test_tracks_sent_messages(self, email_channel: EmailChannel):
        """Test that channel tracks sent messages."""
        email_channel.send("a@example.com", "Subject A", "Body A")
        email_channel.send("b@example.com", "Subject B", "Body B")

        assert email_channel.get_sent_count() == 2
        assert email_channel.find_message_to("b@example.com").subject == "Subject B"

    def test_clear_history(self, email_channel: EmailChannel):
        """Test clearing message history."""
        email_channel.send("test@example.com", "Test", "Body")
        email_channel.clear_history()

        assert email_channel.get_sent_count() == 0

    def test_failing_recipient_returns_failure(self):
        """Test a returned (not raised) failure."""
        channel = EmailChannel(fail_recipients=["bad@example.com"], fail_with="mailbox full")

        result = channel.send("bad@example.com", "Hi", "Body")

        assert result.success is False
        assert result.error == "mailbox full"
        assert channel.get_successful_sends() == []
        assert channel.send("good@example.com", "Hi", "Body").success is True

    def test_raise_errors(self):
        """Test that provider failures can surface as SendError."""
        channel = EmailChannel(fail_rate=1.0, fail_with="429 Too Many Requests", raise_errors=True)

        with pytest.raises(SendError, match="429"):
            channel.send("a@example.com", "Hi", "Body")
        assert channel.get_sent_count() == 1


class TestSMSChannel:
    """Tests for the mock SMS channel."""

    def test_send_sms_success(self, sms_channel: SMSChannel):
        result = sms_channel.send("+15555550100", "Hearing scheduled")

        assert result.success is True
        assert result.channel == Channel.SMS
        assert result.subject is None
        assert result.body == "Hearing scheduled"

    def test_long_message_truncated(self, sms_channel: SMSChannel):
        """Test that messages over 160 characters are cut to one segment."""
        result = sms_channel.send("+15555550100", "x" * 200)

        assert len(result.body) == SMSChannel.MAX_LENGTH
        assert result.body.endswith("...")


class TestNotificationChannels:
    """Tests for the channel facade."""

    def test_routes_by_channel(self, channels: NotificationChannels):
        channels.send(Channel.EMAIL, "a@example.com", "Subject", "<p>html</p>", "preview")
        channels.send(Channel.SMS, "+15555550100", "ignored", "plain text")

        assert channels.email.get_sent_count() == 1
        assert channels.sms.sent_messages[0].body == "plain text"
        assert channels.get_total_sent_count() == 2
        assert len(channels.get_all_sent_messages()) == 2

    def test_clear_all_history(self, channels: NotificationChannels):
        channels.send(Channel.EMAIL, "a@example.com", "Subject", "Body")
        channels.clear_all_history()

        assert channels.get_total_sent_count() == 0

    def test_unknown_channel(self, channels: NotificationChannels):
        with pytest.raises(ValueError):
            channels.send("pigeon", "x", "Subject", "Body")


class TestSendError:
    def test_str_includes_code(self):
        assert str(SendError("slow down", code="429")) == "429: slow down"
        assert str(SendError("boom")) == "boom"
