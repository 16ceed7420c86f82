"""
Mock notification channels for the alert dispatcher.

These channels simulate sending emails and SMS messages by logging the output.
In a real deployment they would wrap a transactional email provider and an
SMS gateway.

Design decisions:
- All sends are logged for visibility
- Channels track sent messages for test assertions
- Failures can be simulated two ways: returned as an unsuccessful result, or
  raised as SendError (the way provider SDKs surface HTTP errors)
- The failure text is configurable so rate-limit and quota handling can be
  exercised ("429 Too Many Requests", "daily_quota_exceeded", ...)
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from shared.models import Channel, utcnow

logger = logging.getLogger("notifications")


class SendError(Exception):
    """
    Raised by a channel when the provider rejects a send.

    ``code`` carries the provider's error code or HTTP status when known.
    """

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code

    def __str__(self) -> str:
        base = super().__str__()
        return f"{self.code}: {base}" if self.code else base


@dataclass
class NotificationResult:
    """
    Result of a notification send attempt.

    Captures success/failure and metadata for debugging and testing.
    """
    success: bool
    channel: Channel
    recipient: str
    subject: Optional[str]  # Email only
    body: str
    important: bool = False
    timestamp: datetime = field(default_factory=utcnow)
    error: Optional[str] = None

    def __str__(self) -> str:
        status = "✓" if self.success else "✗"
        if self.channel == Channel.EMAIL:
            return f"{status} EMAIL to {self.recipient}: {self.subject}"
        return f"{status} SMS to {self.recipient}: {self.body[:50]}..."


class _MockChannel:
    """Failure simulation and history shared by the mock channels."""

    channel: Channel

    def __init__(
        self,
        fail_rate: float = 0.0,
        fail_with: str = "Simulated delivery failure",
        raise_errors: bool = False,
        fail_recipients: Optional[Iterable[str]] = None,
    ):
        """
        Args:
            fail_rate: Probability of send failure (0.0 to 1.0), for testing.
            fail_with: Error text used for simulated failures.
            raise_errors: Raise SendError instead of returning a failed result.
            fail_recipients: Recipients whose sends always fail.
        """
        self.fail_rate = fail_rate
        self.fail_with = fail_with
        self.raise_errors = raise_errors
        self.fail_recipients = set(fail_recipients or [])
        self.sent_messages: list[NotificationResult] = []

    def _should_fail(self, to: str) -> bool:
        return to in self.fail_recipients or random.random() < self.fail_rate

    def _fail(
        self, to: str, subject: Optional[str], body: str, important: bool
    ) -> NotificationResult:
        result = NotificationResult(
            success=False,
            channel=self.channel,
            recipient=to,
            subject=subject,
            body=body,
            important=important,
            error=self.fail_with,
        )
        self.sent_messages.append(result)
        logger.error(f"[{self.channel.value.upper()} FAILED] To: {to} | Error: {self.fail_with}")
        if self.raise_errors:
            raise SendError(self.fail_with)
        return result

    def get_sent_count(self) -> int:
        """Get the number of messages sent (for testing)."""
        return len(self.sent_messages)

    def get_successful_sends(self) -> list[NotificationResult]:
        """Get all successful sends."""
        return [m for m in self.sent_messages if m.success]

    def clear_history(self):
        """Clear sent message history (useful between tests)."""
        self.sent_messages.clear()

    def find_message_to(self, recipient: str) -> Optional[NotificationResult]:
        """Find a message sent to a specific recipient."""
        for msg in self.sent_messages:
            if msg.recipient == recipient:
                return msg
        return None


class EmailChannel(_MockChannel):
    """
    Mock email channel.

    Priority messages go out with a high-importance header in a real
    provider; here the flag is only recorded.
    """

    channel = Channel.EMAIL

    def send(
        self,
        to: str,
        subject: str,
        body: str,
        preview_text: str = "",
        priority: bool = False,
    ) -> NotificationResult:
        """
        Send an email (mock implementation).

        Args:
            to: Recipient email address
            subject: Email subject line
            body: HTML body
            preview_text: Inbox preview line
            priority: Mark the message important

        Returns:
            NotificationResult indicating success/failure

        Raises:
            SendError: when failing and ``raise_errors`` is set
        """
        if self._should_fail(to):
            return self._fail(to, subject, body, priority)

        result = NotificationResult(
            success=True,
            channel=Channel.EMAIL,
            recipient=to,
            subject=subject,
            body=body,
            important=priority,
        )
        logger.info(f"[EMAIL] To: {to} | Subject: {subject}")
        logger.debug(f"[EMAIL PREVIEW] {preview_text}")
        self.sent_messages.append(result)
        return result


class SMSChannel(_MockChannel):
    """
    Mock SMS channel.

    SMS has no subject or preview; the plain-text body is cut to one segment.
    """

    channel = Channel.SMS

    # SMS typically have character limits
    MAX_LENGTH = 160

    def send(self, to: str, message: str, priority: bool = False) -> NotificationResult:
        if len(message) > self.MAX_LENGTH:
            logger.warning(
                f"[SMS] Message length ({len(message)}) exceeds {self.MAX_LENGTH} chars, truncating"
            )
            message = message[: self.MAX_LENGTH - 3] + "..."

        if self._should_fail(to):
            return self._fail(to, None, message, priority)

        result = NotificationResult(
            success=True,
            channel=Channel.SMS,
            recipient=to,
            subject=None,
            body=message,
            important=priority,
        )
        logger.info(f"[SMS] To: {to} | Message: {message}")
        self.sent_messages.append(result)
        return result


class NotificationChannels:
    """
    Facade for all notification channels.

    The dispatcher only ever calls ``send``; tests reach into ``email`` and
    ``sms`` to inspect history or configure failures.
    """

    def __init__(
        self,
        email: Optional[EmailChannel] = None,
        sms: Optional[SMSChannel] = None,
    ):
        self.email = email or EmailChannel()
        self.sms = sms or SMSChannel()

    def send(
        self,
        channel: Channel,
        target: str,
        subject: str,
        body: str,
        preview_text: str = "",
        priority: bool = False,
    ) -> NotificationResult:
        """
        Send via a named channel.

        For SMS the body should already be plain text; subject and preview
        are ignored.

        Raises:
            SendError: if the provider rejects the message
            ValueError: If channel is not recognized
        """
        if channel == Channel.EMAIL:
            return self.email.send(target, subject, body, preview_text, priority)
        elif channel == Channel.SMS:
            return self.sms.send(target, body, priority)
        else:
            raise ValueError(f"Unknown channel: {channel}")

    def get_all_sent_messages(self) -> list[NotificationResult]:
        """Get all sent messages across all channels."""
        return self.email.sent_messages + self.sms.sent_messages

    def get_total_sent_count(self) -> int:
        """Get total number of messages sent across all channels."""
        return self.email.get_sent_count() + self.sms.get_sent_count()

    def clear_all_history(self):
        """Clear history for all channels."""
        self.email.clear_history()
        self.sms.clear_history()
