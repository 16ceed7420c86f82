"""
JSON-backed in-memory store for the alert dispatch engine.

This module provides a DispatchStore that seeds itself from JSON fixture files
and keeps all state in memory. It is what the demo CLI and most tests run
against; production deployments point ``database_url`` at a relational
database and use shared.sql_store instead.

Design decisions:
- Fixtures are loaded lazily on first access
- A single re-entrant lock guards every read and write, so each conditional
  update (claim, reopen) is an atomic compare-and-set
- Unique indexes on the anchor natural key and on (event, anchor) are kept
  as dicts and checked under the same lock
- Callers always receive copies of stored models
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from shared.models import (
    Anchor,
    AnchorKey,
    DeadLetter,
    Delivery,
    DeliveryStatus,
    DispatchRun,
    Event,
    EventStatus,
    SendMode,
    Subscriber,
)
from shared.store import DuplicateKeyError, NotFoundError

logger = logging.getLogger("data_store")


class DataStore:
    """
    In-memory DispatchStore seeded from ``subscribers.json`` and ``events.json``.

    Each table is a dict keyed by primary key; ids are handed out from
    per-table counters the way a database sequence would.
    """

    def __init__(self, data_dir: Optional[Path] = None, load_fixtures: bool = True):
        """
        Initialize the data store.

        Args:
            data_dir: Directory containing the JSON fixtures.
                     Defaults to ./data relative to project root.
            load_fixtures: When False the store starts empty.
        """
        if data_dir is None:
            data_dir = Path(__file__).parent.parent / "data"

        self.data_dir = Path(data_dir)
        self._load_fixtures = load_fixtures
        self._lock = threading.RLock()
        self._loaded = False

        self._events: dict[int, Event] = {}
        self._subscribers: dict[str, Subscriber] = {}
        self._anchors: dict[int, Anchor] = {}
        self._anchor_keys: dict[str, int] = {}
        self._deliveries: dict[int, Delivery] = {}
        self._delivery_keys: dict[tuple[int, int], int] = {}
        self._dead_letters: dict[int, DeadLetter] = {}
        self._runs: dict[int, DispatchRun] = {}
        self._sequences: dict[str, int] = {}

    # =========================================================================
    # Data Loading (lazy)
    # =========================================================================

    def _load_json(self, filename: str) -> list[dict]:
        """Load a JSON fixture file."""
        filepath = self.data_dir / filename
        if not filepath.exists():
            return []
        with open(filepath, "r") as f:
            return json.load(f)

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self._load_fixtures:
            return
        for raw in self._load_json("subscribers.json"):
            try:
                subscriber = Subscriber(**raw)
            except ValidationError as e:
                logger.warning(f"Skipping subscriber {raw.get('id')!r} with invalid preferences: {e}")
                continue
            self._subscribers[subscriber.id] = subscriber
        for raw in self._load_json("events.json"):
            event = Event(**raw)
            self._events[event.id] = event
            self._bump_sequence("events", event.id)
        logger.debug(
            f"Loaded {len(self._subscribers)} subscribers and "
            f"{len(self._events)} events from {self.data_dir}"
        )

    def _next_id(self, table: str) -> int:
        value = self._sequences.get(table, 0) + 1
        self._sequences[table] = value
        return value

    def _bump_sequence(self, table: str, value: int) -> None:
        if value > self._sequences.get(table, 0):
            self._sequences[table] = value

    def reload(self) -> None:
        """Drop all state and reload fixtures on next access."""
        with self._lock:
            for table in (
                self._events,
                self._subscribers,
                self._anchors,
                self._anchor_keys,
                self._deliveries,
                self._delivery_keys,
                self._dead_letters,
                self._runs,
                self._sequences,
            ):
                table.clear()
            self._loaded = False

    # =========================================================================
    # Event Operations
    # =========================================================================

    def add_event(self, event: Event) -> Event:
        with self._lock:
            self._ensure_loaded()
            if event.id in self._events:
                raise DuplicateKeyError(f"Event already exists: {event.id}")
            self._events[event.id] = event.model_copy()
            self._bump_sequence("events", event.id)
            return event.model_copy()

    def get_event(self, event_id: int) -> Optional[Event]:
        with self._lock:
            self._ensure_loaded()
            event = self._events.get(event_id)
            return event.model_copy() if event else None

    def get_events(self) -> list[Event]:
        """Get all events in id order."""
        with self._lock:
            self._ensure_loaded()
            return [self._events[k].model_copy() for k in sorted(self._events)]

    def _is_claimable(
        self, event: Event, stale_before: datetime, allow_done: bool = False
    ) -> bool:
        if event.dead_lettered_at is not None and not allow_done:
            return False
        if event.status in (EventStatus.PENDING, EventStatus.FAILED):
            return True
        if event.status == EventStatus.DONE:
            return allow_done
        return event.claimed_at is not None and event.claimed_at < stale_before

    def select_due_events(
        self, now: datetime, limit: int, stale_before: datetime
    ) -> list[Event]:
        with self._lock:
            self._ensure_loaded()
            due = [
                e for e in self._events.values()
                if self._is_claimable(e, stale_before)
                and (e.next_attempt_at is None or e.next_attempt_at <= now)
            ]
            due.sort(key=lambda e: (e.status.rank, e.id))
            return [e.model_copy() for e in due[:limit]]

    def claim_event(
        self,
        event_id: int,
        now: datetime,
        stale_before: datetime,
        allow_done: bool = False,
    ) -> Optional[Event]:
        with self._lock:
            self._ensure_loaded()
            event = self._events.get(event_id)
            if event is None or not self._is_claimable(event, stale_before, allow_done):
                return None
            claimed = event.model_copy(update={
                "status": EventStatus.PROCESSING,
                "attempts": event.attempts + 1,
                "last_error": None,
                "next_attempt_at": None,
                "dead_lettered_at": None,
                "claimed_at": now,
            })
            self._events[event_id] = claimed
            return claimed.model_copy()

    def _update_event(self, event_id: int, **changes) -> None:
        event = self._events.get(event_id)
        if event is None:
            raise NotFoundError(f"Event not found: {event_id}")
        self._events[event_id] = event.model_copy(update=changes)

    def complete_event(self, event_id: int, now: datetime) -> None:
        with self._lock:
            self._ensure_loaded()
            self._update_event(event_id, status=EventStatus.DONE, processed_at=now)

    def fail_event(
        self,
        event_id: int,
        error: str,
        next_attempt_at: Optional[datetime],
        dead_lettered_at: Optional[datetime] = None,
    ) -> None:
        with self._lock:
            self._ensure_loaded()
            self._update_event(
                event_id,
                status=EventStatus.FAILED,
                last_error=error,
                next_attempt_at=next_attempt_at,
                dead_lettered_at=dead_lettered_at,
            )

    def reset_event(self, event_id: int) -> None:
        with self._lock:
            self._ensure_loaded()
            self._update_event(
                event_id,
                status=EventStatus.PENDING,
                next_attempt_at=None,
                dead_lettered_at=None,
            )

    # =========================================================================
    # Subscriber Operations
    # =========================================================================

    def add_subscriber(self, subscriber: Subscriber) -> Subscriber:
        with self._lock:
            self._ensure_loaded()
            self._subscribers[subscriber.id] = subscriber.model_copy()
            return subscriber.model_copy()

    def get_subscriber(self, subscriber_id: str) -> Optional[Subscriber]:
        with self._lock:
            self._ensure_loaded()
            subscriber = self._subscribers.get(subscriber_id)
            return subscriber.model_copy() if subscriber else None

    def list_subscribers(self, limit: int) -> list[Subscriber]:
        with self._lock:
            self._ensure_loaded()
            return [s.model_copy() for s in list(self._subscribers.values())[:limit]]

    # =========================================================================
    # Anchor Operations
    # =========================================================================

    def find_anchor(self, key: AnchorKey) -> Optional[Anchor]:
        with self._lock:
            anchor_id = self._anchor_keys.get(key.as_string())
            if anchor_id is None:
                return None
            return self._anchors[anchor_id].model_copy()

    def create_anchor(self, key: AnchorKey, now: datetime) -> Anchor:
        with self._lock:
            flat = key.as_string()
            if flat in self._anchor_keys:
                raise DuplicateKeyError(f"Anchor already exists for {flat}")
            anchor = Anchor(id=self._next_id("anchors"), created_at=now, **key.model_dump())
            self._anchors[anchor.id] = anchor
            self._anchor_keys[flat] = anchor.id
            return anchor.model_copy()

    def get_anchor(self, anchor_id: int) -> Optional[Anchor]:
        with self._lock:
            anchor = self._anchors.get(anchor_id)
            return anchor.model_copy() if anchor else None

    def get_anchors(self) -> list[Anchor]:
        with self._lock:
            return [a.model_copy() for a in self._anchors.values()]

    def touch_anchor(self, anchor_id: int, at: datetime) -> None:
        with self._lock:
            anchor = self._anchors.get(anchor_id)
            if anchor is None:
                raise NotFoundError(f"Anchor not found: {anchor_id}")
            self._anchors[anchor_id] = anchor.model_copy(update={"last_triggered_at": at})

    def touch_anchor_if(
        self, anchor_id: int, expected: Optional[datetime], at: Optional[datetime]
    ) -> bool:
        with self._lock:
            anchor = self._anchors.get(anchor_id)
            if anchor is None:
                raise NotFoundError(f"Anchor not found: {anchor_id}")
            if anchor.last_triggered_at != expected:
                return False
            self._anchors[anchor_id] = anchor.model_copy(update={"last_triggered_at": at})
            return True

    def digest_anchor_ids_with_queued(self) -> list[int]:
        with self._lock:
            ids = {
                d.anchor_id for d in self._deliveries.values()
                if d.status == DeliveryStatus.QUEUED
                and self._anchors[d.anchor_id].send_mode == SendMode.DIGEST
            }
            return sorted(ids)

    # =========================================================================
    # Delivery Operations
    # =========================================================================

    def create_delivery(self, event_id: int, anchor_id: int, now: datetime) -> Delivery:
        with self._lock:
            if (event_id, anchor_id) in self._delivery_keys:
                raise DuplicateKeyError(
                    f"Delivery already exists for event={event_id} anchor={anchor_id}"
                )
            delivery = Delivery(
                id=self._next_id("deliveries"),
                event_id=event_id,
                anchor_id=anchor_id,
                created_at=now,
            )
            self._deliveries[delivery.id] = delivery
            self._delivery_keys[(event_id, anchor_id)] = delivery.id
            return delivery.model_copy()

    def find_delivery(self, event_id: int, anchor_id: int) -> Optional[Delivery]:
        with self._lock:
            delivery_id = self._delivery_keys.get((event_id, anchor_id))
            if delivery_id is None:
                return None
            return self._deliveries[delivery_id].model_copy()

    def get_delivery(self, delivery_id: int) -> Optional[Delivery]:
        with self._lock:
            delivery = self._deliveries.get(delivery_id)
            return delivery.model_copy() if delivery else None

    def reopen_delivery(self, delivery_id: int) -> bool:
        with self._lock:
            delivery = self._deliveries.get(delivery_id)
            if delivery is None or delivery.status != DeliveryStatus.FAILED:
                return False
            self._deliveries[delivery_id] = delivery.model_copy(
                update={"status": DeliveryStatus.QUEUED, "error": None}
            )
            return True

    def close_deliveries(
        self,
        delivery_ids: Iterable[int],
        status: DeliveryStatus,
        at: datetime,
        error: Optional[str] = None,
    ) -> int:
        changed = 0
        with self._lock:
            for delivery_id in delivery_ids:
                delivery = self._deliveries.get(delivery_id)
                if delivery is None or delivery.status != DeliveryStatus.QUEUED:
                    continue
                update = {"status": status, "error": error}
                if status == DeliveryStatus.SENT:
                    update["sent_at"] = at
                self._deliveries[delivery_id] = delivery.model_copy(update=update)
                changed += 1
        return changed

    def requeue_deliveries(self, delivery_ids: Iterable[int]) -> int:
        changed = 0
        with self._lock:
            for delivery_id in delivery_ids:
                if self.reopen_delivery(delivery_id):
                    changed += 1
        return changed

    def queued_deliveries(self, anchor_id: int, limit: int) -> list[Delivery]:
        with self._lock:
            queued = [
                d for d in self._deliveries.values()
                if d.anchor_id == anchor_id and d.status == DeliveryStatus.QUEUED
            ]
            queued.sort(key=lambda d: (d.created_at, d.id), reverse=True)
            return [d.model_copy() for d in queued[:limit]]

    def list_deliveries(
        self, event_id: Optional[int] = None, anchor_id: Optional[int] = None
    ) -> list[Delivery]:
        with self._lock:
            return [
                d.model_copy() for d in self._deliveries.values()
                if (event_id is None or d.event_id == event_id)
                and (anchor_id is None or d.anchor_id == anchor_id)
            ]

    # =========================================================================
    # Dead Letters
    # =========================================================================

    def add_dead_letter(
        self,
        subject_type: str,
        error: str,
        now: datetime,
        anchor_id: Optional[int] = None,
        event_id: Optional[int] = None,
        delivery_ids: Optional[list[int]] = None,
    ) -> DeadLetter:
        with self._lock:
            record = DeadLetter(
                id=self._next_id("dead_letters"),
                subject_type=subject_type,
                anchor_id=anchor_id,
                event_id=event_id,
                delivery_ids=list(delivery_ids or []),
                error=error,
                created_at=now,
            )
            self._dead_letters[record.id] = record
            return record.model_copy()

    def get_dead_letter(self, dead_letter_id: int) -> Optional[DeadLetter]:
        with self._lock:
            record = self._dead_letters.get(dead_letter_id)
            return record.model_copy() if record else None

    def list_dead_letters(self, include_resolved: bool = False) -> list[DeadLetter]:
        with self._lock:
            return [
                r.model_copy() for r in self._dead_letters.values()
                if include_resolved or r.resolved_at is None
            ]

    def resolve_dead_letter(self, dead_letter_id: int, at: datetime) -> None:
        with self._lock:
            record = self._dead_letters.get(dead_letter_id)
            if record is None:
                raise NotFoundError(f"Dead letter not found: {dead_letter_id}")
            self._dead_letters[dead_letter_id] = record.model_copy(update={"resolved_at": at})

    # =========================================================================
    # Run Log
    # =========================================================================

    def start_run(self, kind: str, now: datetime) -> DispatchRun:
        with self._lock:
            run = DispatchRun(id=self._next_id("runs"), kind=kind, started_at=now)
            self._runs[run.id] = run
            return run.model_copy()

    def finish_run(
        self,
        run_id: int,
        now: datetime,
        success: bool,
        processed_count: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise NotFoundError(f"Run not found: {run_id}")
            self._runs[run_id] = run.model_copy(update={
                "finished_at": now,
                "success": success,
                "processed_count": processed_count,
                "error": error,
            })

    def latest_run(self, kind: Optional[str] = None) -> Optional[DispatchRun]:
        with self._lock:
            runs = [r for r in self._runs.values() if kind is None or r.kind == kind]
            if not runs:
                return None
            return max(runs, key=lambda r: r.id).model_copy()
