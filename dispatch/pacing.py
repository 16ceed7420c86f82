"""
Rate-limited send pipeline.

All outbound sends in a dispatch run go through one PacedSender, which keeps
a fixed interval between consecutive sends to the provider. After a send that
failed with a rate-limit or quota error the next slot is pushed out further.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from dispatch.backoff import BackoffClass, classify, format_error, is_rate_limited
from dispatch.clock import Clock
from shared.channels import NotificationChannels, SendError
from shared.models import Channel
from shared.templates import RenderedMessage

logger = logging.getLogger("pacing")


@dataclass
class SendOutcome:
    """
    What happened to one send.

    ``exception`` is set when the provider raised rather than returning an
    unsuccessful result; callers treat that as fatal for the current event.
    """
    ok: bool
    error: Optional[str] = None
    classification: Optional[BackoffClass] = None
    exception: Optional[SendError] = None


class PacedSender:
    """Single sender worker fed at a fixed interval."""

    def __init__(
        self,
        channels: NotificationChannels,
        clock: Clock,
        interval_seconds: float = 0.55,
        rate_limited_interval_seconds: float = 2.0,
    ):
        self.channels = channels
        self.clock = clock
        self.interval = timedelta(seconds=interval_seconds)
        self.rate_limited_interval = timedelta(seconds=rate_limited_interval_seconds)
        self._next_slot: Optional[datetime] = None
        self.sends = 0

    def _wait_for_slot(self) -> None:
        if self._next_slot is None:
            return
        remaining = (self._next_slot - self.clock.now()).total_seconds()
        if remaining > 0:
            logger.debug(f"Pacing: waiting {remaining:.2f}s before next send")
            self.clock.sleep(remaining)

    def _schedule_next(self, rate_limited: bool) -> None:
        gap = self.rate_limited_interval if rate_limited else self.interval
        self._next_slot = self.clock.now() + gap

    def send(self, channel: Channel, target: str, message: RenderedMessage) -> SendOutcome:
        self._wait_for_slot()
        body = message.html if channel == Channel.EMAIL else message.text
        rate_limited = False
        try:
            result = self.channels.send(
                channel,
                target,
                message.subject,
                body,
                message.preview,
                message.important,
            )
        except SendError as e:
            classification = classify(e)
            rate_limited = is_rate_limited(e)
            return SendOutcome(
                ok=False,
                error=format_error(e),
                classification=classification,
                exception=e,
            )
        finally:
            self.sends += 1
            self._schedule_next(rate_limited)

        if result.success:
            return SendOutcome(ok=True)

        error = result.error or "send failed"
        classification = classify(error)
        if is_rate_limited(error):
            self._schedule_next(rate_limited=True)
        return SendOutcome(ok=False, error=error, classification=classification)
