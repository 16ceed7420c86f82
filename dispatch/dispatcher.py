"""
Dispatch loop.

One call to ``Dispatcher.run_dispatch`` is one trigger invocation: claim a
batch of due events, fan each out to every subscriber, send instant alerts,
queue digest ones, then flush the digests whose window is open.

Design decisions:
- Store, channels, clock and settings are passed in; there are no module
  singletons
- The atomic claim in the store is the only thing that makes concurrent runs
  safe; losing a claim is a normal outcome, not an error
- Delivery is best-effort per subscriber: a failure never rolls back sends
  already made for the same event
- Any exception escaping an event's fan-out marks that event FAILED with a
  classified backoff; the batch carries on with the next event
- Sends are serialized through one PacedSender per run
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

from dispatch.anchors import AnchorRegistry
from dispatch.backoff import cap_error, classify, exhausted, format_error, next_attempt
from dispatch.clock import Clock, SystemClock
from dispatch.deliveries import DeliveryRecorder
from dispatch.digest import DigestCounts, DigestFlusher
from dispatch.pacing import PacedSender
from dispatch.preferences import PREFERENCE_MAP_VERSION, PreferenceResolver, is_mapped
from shared.channels import NotificationChannels
from shared.config import Settings
from shared.models import (
    AnchorKey,
    DeliveryStatus,
    Event,
    SendMode,
    Subscriber,
)
from shared.store import DispatchStore, StoreError
from shared.templates import render_instant

logger = logging.getLogger("dispatcher")

RUN_KIND = "ALERT_SENDER"


# =============================================================================
# Report models
# =============================================================================

class PerEventResult(BaseModel):
    """Outcome of one claimed event."""
    event_id: int
    kind: str
    status: str = "DONE"
    attempted: int = 0
    created: int = 0
    sent_instant: int = 0
    queued_digest: int = 0
    skipped: int = 0
    failed: int = 0
    error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    dead_lettered: bool = False


class DispatchReport(BaseModel):
    """Structured summary returned to whoever triggered the run."""
    ok: bool = True
    run_id: Optional[int] = None
    events_fetched: int = 0
    events_claimed: int = 0
    events_skipped: int = 0
    subscribers_fetched: int = 0
    events: list[PerEventResult] = Field(default_factory=list)
    digests: DigestCounts = Field(default_factory=DigestCounts)
    unmapped_kinds: list[str] = Field(default_factory=list)
    preference_map_version: int = PREFERENCE_MAP_VERSION


class Dispatcher:
    """
    Claims due events and delivers them.

    Example:
        dispatcher = Dispatcher(store, NotificationChannels(), settings=settings)
        report = dispatcher.run_dispatch(limit=50)
    """

    def __init__(
        self,
        store: DispatchStore,
        channels: NotificationChannels,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        resolver: Optional[PreferenceResolver] = None,
    ):
        self.store = store
        self.channels = channels
        self.clock = clock or SystemClock()
        self.settings = settings or Settings()
        self.resolver = resolver or PreferenceResolver()
        self.anchors = AnchorRegistry(store)
        self.recorder = DeliveryRecorder(store)

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.settings.batch_limit
        return max(1, min(limit, self.settings.max_batch_limit))

    def run_dispatch(
        self,
        limit: Optional[int] = None,
        event_id: Optional[int] = None,
        sweep_digests: bool = False,
    ) -> DispatchReport:
        """
        Run one dispatch pass.

        Args:
            limit: Maximum events to fetch (clamped to the configured maximum)
            event_id: Process exactly this event, ignoring next_attempt_at
                      and allowing a DONE event to be reprocessed
            sweep_digests: Also flush every digest anchor with queued deliveries

        Raises:
            StoreUnavailableError: if the store fails before any event is claimed
        """
        limit = self.clamp_limit(limit)
        run = self.store.start_run(RUN_KIND, self.clock.now())
        logger.info(f"Dispatch run {run.id} started (limit={limit}, event_id={event_id})")

        try:
            report = self._run(limit, event_id, sweep_digests)
        except Exception as e:
            self._finish(run.id, success=False, error=cap_error(format_error(e)))
            raise

        report.run_id = run.id
        self._finish(run.id, success=True, processed_count=report.events_claimed)
        logger.info(
            f"Dispatch run {run.id} finished: {report.events_claimed}/{report.events_fetched} "
            f"events claimed, digests {report.digests.sent} sent / {report.digests.failed} failed"
        )
        return report

    def _finish(self, run_id: int, **kwargs) -> None:
        try:
            self.store.finish_run(run_id, self.clock.now(), **kwargs)
        except StoreError as e:
            logger.error(f"Could not close run {run_id}: {e}")

    # =========================================================================
    # Batch
    # =========================================================================

    def _run(
        self, limit: int, event_id: Optional[int], sweep_digests: bool
    ) -> DispatchReport:
        settings = self.settings
        now = self.clock.now()
        stale_before = now - timedelta(minutes=settings.stale_claim_minutes)
        report = DispatchReport()
        sender = PacedSender(
            self.channels,
            self.clock,
            settings.send_interval_seconds,
            settings.rate_limited_interval_seconds,
        )

        if event_id is not None:
            event = self.store.get_event(event_id)
            candidates = [event] if event is not None else []
        else:
            candidates = self.store.select_due_events(now, limit, stale_before)
        report.events_fetched = len(candidates)

        subscribers: list[Subscriber] = []
        if candidates:
            subscribers = self.store.list_subscribers(settings.max_subscribers)
            report.subscribers_fetched = len(subscribers)
        unmapped: set[str] = set()
        touched: set[int] = set()

        for candidate in candidates:
            if not is_mapped(candidate.kind):
                unmapped.add(candidate.kind.value)

            try:
                claimed = self.store.claim_event(
                    candidate.id,
                    self.clock.now(),
                    stale_before,
                    allow_done=event_id is not None,
                )
            except StoreError as e:
                if not report.events_claimed:
                    raise
                report.ok = False
                logger.error(f"Store failed while claiming event {candidate.id}, stopping batch: {e}")
                break
            if claimed is None:
                report.events_skipped += 1
                logger.debug(f"Event {candidate.id} claimed elsewhere, skipping")
                continue
            report.events_claimed += 1

            report.events.append(self._process_event(claimed, subscribers, sender, touched))

        if sweep_digests:
            try:
                touched.update(self.store.digest_anchor_ids_with_queued())
            except StoreError as e:
                if not report.events_claimed:
                    raise
                report.ok = False
                logger.error(f"Digest sweep skipped: {e}")

        report.digests = DigestFlusher(self.store, sender, settings).run_digest_flush(
            self.clock.now(), touched
        )
        report.unmapped_kinds = sorted(unmapped)
        return report

    # =========================================================================
    # Per event
    # =========================================================================

    def _process_event(
        self,
        event: Event,
        subscribers: list[Subscriber],
        sender: PacedSender,
        touched: set[int],
    ) -> PerEventResult:
        result = PerEventResult(event_id=event.id, kind=event.kind.value)
        try:
            for subscriber in subscribers:
                self._deliver(event, subscriber, sender, result, touched)
            self.store.complete_event(event.id, self.clock.now())
        except Exception as e:
            self._fail_event(event, e, result)
        return result

    def _fail_event(self, event: Event, err: Exception, result: PerEventResult) -> None:
        settings = self.settings
        now = self.clock.now()
        error = cap_error(format_error(err))
        classification = classify(err)
        dead = exhausted(event.attempts, settings.max_attempts)
        retry_at = None if dead else next_attempt(
            event.attempts,
            classification,
            now,
            settings.backoff_schedule_minutes,
            settings.rate_limited_delay_minutes,
            settings.quota_delay_minutes,
        )

        result.status = "FAILED"
        result.error = error
        result.next_attempt_at = retry_at
        result.dead_lettered = dead

        try:
            self.store.fail_event(
                event.id,
                error,
                retry_at,
                dead_lettered_at=now if dead else None,
            )
            if dead:
                self.store.add_dead_letter("event", error, now, event_id=event.id)
        except StoreError as store_err:
            # Left PROCESSING; reclaimed once the claim goes stale
            logger.error(f"Event {event.id}: could not record failure: {store_err}")
            return

        if dead:
            logger.error(
                f"Event {event.id} failed on attempt {event.attempts} and was dead-lettered: {error}"
            )
        else:
            logger.warning(
                f"Event {event.id} failed ({classification.value}) on attempt "
                f"{event.attempts}, retry at {retry_at.isoformat()}: {error}"
            )

    def _deliver(
        self,
        event: Event,
        subscriber: Subscriber,
        sender: PacedSender,
        result: PerEventResult,
        touched: set[int],
    ) -> None:
        decision = self.resolver.resolve(event, subscriber)
        if not decision.eligible:
            result.skipped += 1
            return
        result.attempted += 1

        now = self.clock.now()
        anchor = self.anchors.get_or_create(
            AnchorKey(
                subscriber_id=subscriber.id,
                kind=event.kind,
                channel=decision.channel,
                target=decision.target,
                send_mode=decision.send_mode,
                digest_cadence=decision.digest_cadence,
            ),
            now,
        )

        delivery = self.recorder.open_delivery(
            event.id, anchor.id, now, resume_queued=decision.send_mode == SendMode.INSTANT
        )
        if delivery is None:
            result.skipped += 1
            return
        result.created += 1

        if decision.send_mode == SendMode.DIGEST:
            result.queued_digest += 1
            touched.add(anchor.id)
            return

        message = render_instant(event, self.settings.render_options())
        outcome = sender.send(decision.channel, decision.target, message)

        if outcome.ok:
            sent_at = self.clock.now()
            self.recorder.close_delivery(delivery.id, DeliveryStatus.SENT, sent_at)
            self.anchors.touch(anchor.id, sent_at)
            result.sent_instant += 1
            return

        result.failed += 1
        self.recorder.close_delivery(
            delivery.id, DeliveryStatus.FAILED, self.clock.now(), outcome.error
        )
        if outcome.exception is not None:
            raise outcome.exception
