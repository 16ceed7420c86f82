"""Store protocol for the dispatch engine.

The dispatcher never talks to a database directly; everything goes through a
DispatchStore. Implementations must make every conditional update (event
claim, delivery reopen) a single atomic compare-and-set, and must enforce the
uniqueness of the anchor natural key and of (event, anchor) deliveries.
"""

from datetime import datetime
from typing import Iterable, Optional, Protocol

from shared.models import (
    Anchor,
    AnchorKey,
    DeadLetter,
    Delivery,
    DeliveryStatus,
    DispatchRun,
    Event,
    Subscriber,
)


class StoreError(Exception):
    """Base class for store failures."""


class StoreUnavailableError(StoreError):
    """Raised when the backing store cannot be reached."""


class DuplicateKeyError(StoreError):
    """Raised when an insert violates a uniqueness constraint."""


class NotFoundError(StoreError):
    """Raised when a referenced row does not exist."""


class DispatchStore(Protocol):
    """Interface the dispatch core expects from its backing store.

    Stores hand out copies: mutating a returned model never changes stored
    state. Timestamps are always passed in by the caller so the core's clock
    stays the single source of time.
    """

    # -- events ---------------------------------------------------------------

    def add_event(self, event: Event) -> Event:
        """Insert an event (used by ingestion, fixtures and tests)."""
        ...

    def get_event(self, event_id: int) -> Optional[Event]:
        ...

    def select_due_events(
        self, now: datetime, limit: int, stale_before: datetime
    ) -> list[Event]:
        """Events that may be claimed right now.

        PENDING or FAILED rows whose next_attempt_at is null or <= now, plus
        PROCESSING rows claimed before ``stale_before``. Dead-lettered rows
        are excluded. Ordered by status (declaration order) then id.
        """
        ...

    def claim_event(
        self,
        event_id: int,
        now: datetime,
        stale_before: datetime,
        allow_done: bool = False,
    ) -> Optional[Event]:
        """Atomically move a claimable event to PROCESSING.

        Claimable means PENDING or FAILED (or DONE when ``allow_done``), or
        PROCESSING with claimed_at before ``stale_before``. On success the
        attempts counter is incremented, last_error/next_attempt_at cleared,
        claimed_at set to ``now`` and the updated event returned. Returns None
        when another worker got there first.
        """
        ...

    def complete_event(self, event_id: int, now: datetime) -> None:
        ...

    def fail_event(
        self,
        event_id: int,
        error: str,
        next_attempt_at: Optional[datetime],
        dead_lettered_at: Optional[datetime] = None,
    ) -> None:
        ...

    def reset_event(self, event_id: int) -> None:
        """Return an event to PENDING and clear its dead-letter stamp."""
        ...

    # -- subscribers ----------------------------------------------------------

    def add_subscriber(self, subscriber: Subscriber) -> Subscriber:
        ...

    def get_subscriber(self, subscriber_id: str) -> Optional[Subscriber]:
        ...

    def list_subscribers(self, limit: int) -> list[Subscriber]:
        ...

    # -- anchors --------------------------------------------------------------

    def find_anchor(self, key: AnchorKey) -> Optional[Anchor]:
        ...

    def create_anchor(self, key: AnchorKey, now: datetime) -> Anchor:
        """Insert an anchor. Raises DuplicateKeyError if the key exists."""
        ...

    def get_anchor(self, anchor_id: int) -> Optional[Anchor]:
        ...

    def touch_anchor(self, anchor_id: int, at: datetime) -> None:
        """Stamp last_triggered_at."""
        ...

    def touch_anchor_if(
        self, anchor_id: int, expected: Optional[datetime], at: Optional[datetime]
    ) -> bool:
        """Set last_triggered_at to ``at`` only if it still equals ``expected``."""
        ...

    def digest_anchor_ids_with_queued(self) -> list[int]:
        """Ids of DIGEST anchors that currently hold QUEUED deliveries."""
        ...

    # -- deliveries -----------------------------------------------------------

    def create_delivery(self, event_id: int, anchor_id: int, now: datetime) -> Delivery:
        """Insert a QUEUED delivery. Raises DuplicateKeyError on (event, anchor)."""
        ...

    def find_delivery(self, event_id: int, anchor_id: int) -> Optional[Delivery]:
        ...

    def reopen_delivery(self, delivery_id: int) -> bool:
        """Atomically move a FAILED delivery back to QUEUED."""
        ...

    def close_deliveries(
        self,
        delivery_ids: Iterable[int],
        status: DeliveryStatus,
        at: datetime,
        error: Optional[str] = None,
    ) -> int:
        """Close QUEUED deliveries; returns how many rows changed."""
        ...

    def requeue_deliveries(self, delivery_ids: Iterable[int]) -> int:
        """Move FAILED deliveries back to QUEUED; returns rows changed."""
        ...

    def queued_deliveries(self, anchor_id: int, limit: int) -> list[Delivery]:
        """QUEUED deliveries for an anchor, newest first."""
        ...

    def list_deliveries(
        self, event_id: Optional[int] = None, anchor_id: Optional[int] = None
    ) -> list[Delivery]:
        ...

    # -- dead letters ---------------------------------------------------------

    def add_dead_letter(
        self,
        subject_type: str,
        error: str,
        now: datetime,
        anchor_id: Optional[int] = None,
        event_id: Optional[int] = None,
        delivery_ids: Optional[list[int]] = None,
    ) -> DeadLetter:
        ...

    def get_dead_letter(self, dead_letter_id: int) -> Optional[DeadLetter]:
        ...

    def list_dead_letters(self, include_resolved: bool = False) -> list[DeadLetter]:
        ...

    def resolve_dead_letter(self, dead_letter_id: int, at: datetime) -> None:
        ...

    # -- run log --------------------------------------------------------------

    def start_run(self, kind: str, now: datetime) -> DispatchRun:
        ...

    def finish_run(
        self,
        run_id: int,
        now: datetime,
        success: bool,
        processed_count: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        ...

    def latest_run(self, kind: Optional[str] = None) -> Optional[DispatchRun]:
        ...
