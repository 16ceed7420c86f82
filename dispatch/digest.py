"""
Digest flush loop.

Runs once at the end of every dispatch run over the anchors that received
queued deliveries (plus, on request, every digest anchor with a backlog).
Each anchor whose digest window is open gets at most one aggregated message.

Design decisions:
- Preferences are re-read at flush time; the subscriber may have switched
  cadence or channel since the deliveries were queued
- Due-ness is judged in a single reference timezone
- A minimum gap between digests protects against double-firing when the
  trigger runs more often than the window is wide
- The anchor is stamped with a compare-and-set before sending, so two
  overlapping runs cannot both send it; a failed send puts the old stamp back
- A failed digest closes its deliveries as FAILED and leaves a dead-letter
  record an operator can requeue
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from dispatch.anchors import AnchorRegistry
from dispatch.backoff import cap_error
from dispatch.deliveries import DeliveryRecorder
from dispatch.pacing import PacedSender
from shared.config import Settings
from shared.models import Cadence, DeliveryStatus, SendMode, SubscriberPreferences
from shared.store import DispatchStore, StoreError
from shared.templates import render_digest

logger = logging.getLogger("digest")


def is_digest_due(
    preferences: SubscriberPreferences,
    now: datetime,
    timezone: str = "America/New_York",
    window_minutes: int = 5,
) -> bool:
    """
    True when ``now`` is within ``window_minutes`` of a digest occurrence.

    Local time is truncated to the minute. The nearest occurrence may fall on
    the previous or next local day, so windows straddling midnight work.
    Weekly digests only occur on the configured weekday.
    """
    if not preferences.is_digest:
        return False

    zone = ZoneInfo(timezone)
    local = now.astimezone(zone).replace(second=0, microsecond=0)
    window = timedelta(minutes=window_minutes)

    for offset in (-1, 0, 1):
        day = local.date() + timedelta(days=offset)
        if (
            preferences.cadence == Cadence.WEEKLY_DIGEST
            and day.weekday() != preferences.digest_day.number
        ):
            continue
        occurrence = datetime.combine(day, preferences.digest_time, tzinfo=zone)
        if abs(local - occurrence) <= window:
            return True
    return False


class DigestCounts(BaseModel):
    attempted: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0


class _Skip(Exception):
    """Anchor not flushed this run."""


class DigestFlusher:
    """Sends due digests for a set of anchors."""

    def __init__(
        self,
        store: DispatchStore,
        sender: PacedSender,
        settings: Settings,
    ):
        self.store = store
        self.sender = sender
        self.settings = settings
        self.anchors = AnchorRegistry(store)
        self.recorder = DeliveryRecorder(store)

    def run_digest_flush(self, now: datetime, anchor_ids: Iterable[int]) -> DigestCounts:
        counts = DigestCounts()
        for anchor_id in sorted(set(anchor_ids)):
            try:
                self._flush_anchor(anchor_id, now, counts)
            except _Skip as skip:
                counts.skipped += 1
                logger.debug(f"Anchor {anchor_id}: skipped ({skip})")
            except StoreError as e:
                counts.failed += 1
                logger.error(f"Anchor {anchor_id}: store error during digest flush: {e}")
        if counts.attempted:
            logger.info(
                f"Digest flush: {counts.sent} sent, {counts.failed} failed, "
                f"{counts.skipped} skipped"
            )
        return counts

    def _flush_anchor(self, anchor_id: int, now: datetime, counts: DigestCounts) -> None:
        settings = self.settings

        anchor = self.store.get_anchor(anchor_id)
        if anchor is None or anchor.send_mode != SendMode.DIGEST:
            raise _Skip("not a digest anchor")

        subscriber = self.store.get_subscriber(anchor.subscriber_id)
        if subscriber is None:
            raise _Skip("subscriber gone")
        prefs = subscriber.preferences
        if prefs.channel != anchor.channel or subscriber.target_for(anchor.channel) != anchor.target:
            raise _Skip("channel or target changed")
        if prefs.digest_cadence() != anchor.digest_cadence:
            raise _Skip("cadence changed")

        if not is_digest_due(
            prefs, now, settings.reference_timezone, settings.digest_window_minutes
        ):
            raise _Skip("not due")

        if anchor.last_triggered_at is not None:
            gap = timedelta(minutes=settings.digest_min_gap_minutes)
            if now - anchor.last_triggered_at < gap:
                raise _Skip("sent recently")

        queued = self.store.queued_deliveries(anchor_id, settings.max_digest_items)
        if not queued:
            # Stamp so an empty window is not re-evaluated on every run
            self.anchors.touch(anchor_id, now)
            raise _Skip("nothing queued")
        if not self.anchors.reserve(anchor, now):
            raise _Skip("claimed by an overlapping run")

        events = []
        for delivery in queued:
            event = self.store.get_event(delivery.event_id)
            if event is not None:
                events.append(event)

        counts.attempted += 1
        message = render_digest(events, settings.render_options())
        outcome = self.sender.send(anchor.channel, anchor.target, message)
        delivery_ids = [d.id for d in queued]

        if outcome.ok:
            self.recorder.close_deliveries_batch(delivery_ids, DeliveryStatus.SENT, now)
            counts.sent += 1
            logger.info(f"Digest sent to {anchor.target} ({len(delivery_ids)} items)")
            return

        counts.failed += 1
        self.anchors.release(anchor, now)
        self.recorder.close_deliveries_batch(
            delivery_ids, DeliveryStatus.FAILED, now, outcome.error
        )
        record = self.store.add_dead_letter(
            "digest",
            cap_error(outcome.error or "digest send failed"),
            now,
            anchor_id=anchor_id,
            delivery_ids=delivery_ids,
        )
        logger.warning(
            f"Digest to {anchor.target} failed ({outcome.error}); "
            f"dead letter {record.id} holds {len(delivery_ids)} deliveries"
        )
