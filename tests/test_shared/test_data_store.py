"""
Tests for the DataStore.

These tests verify that the data store loads the JSON fixtures and enforces
the claim rules and uniqueness the dispatcher relies on.
"""

import json
from datetime import timedelta

import pytest

from dispatch.dispatcher import Dispatcher
from shared.data_store import DataStore
from shared.models import (
    AnchorKey,
    Cadence,
    Channel,
    DeliveryStatus,
    EventKind,
    EventStatus,
    SendMode,
)
from shared.store import DuplicateKeyError, NotFoundError


def _key(subscriber_id: str = "s1") -> AnchorKey:
    return AnchorKey(
        subscriber_id=subscriber_id,
        kind=EventKind.BILL_STATUS_CHANGED,
        channel=Channel.EMAIL,
        target=f"{subscriber_id}@example.com",
        send_mode=SendMode.INSTANT,
    )


class TestDataStoreFixtures:
    """Tests for loading the JSON fixtures."""

    def test_loads_subscribers(self, fixture_store: DataStore):
        subscribers = fixture_store.list_subscribers(100)

        assert len(subscribers) == 5
        alice = fixture_store.get_subscriber("sub-001")
        assert alice.name == "Alice Johnson"
        assert alice.preferences.cadence == Cadence.INSTANT

    def test_loads_events(self, fixture_store: DataStore):
        events = fixture_store.get_events()

        assert [e.id for e in events] == [1, 2, 3, 4, 5, 6]
        assert all(e.status == EventStatus.PENDING for e in events)
        assert events[2].context["voteCounts"] == {"yes": 7, "no": 4}

    def test_limit_on_subscribers(self, fixture_store: DataStore):
        assert len(fixture_store.list_subscribers(2)) == 2

    def test_missing_files_mean_empty(self, tmp_path):
        """Test that a data dir without fixtures gives an empty store."""
        store = DataStore(data_dir=tmp_path)

        assert store.list_subscribers(10) == []
        assert store.get_events() == []

    def test_get_nonexistent(self, fixture_store: DataStore):
        assert fixture_store.get_subscriber("nope") is None
        assert fixture_store.get_event(999) is None

    def test_reload_discards_changes(self, fixture_store: DataStore, now):
        fixture_store.claim_event(1, now, now - timedelta(minutes=15))
        fixture_store.reload()

        assert fixture_store.get_event(1).status == EventStatus.PENDING

    def test_reload_keeps_lock(self, fixture_store: DataStore, now):
        """Test that reload resets state in place instead of swapping the lock."""
        lock = fixture_store._lock
        fixture_store.create_anchor(_key(), now)

        fixture_store.reload()

        assert fixture_store._lock is lock
        assert fixture_store.get_anchors() == []
        assert len(fixture_store.list_subscribers(100)) == 5

    def test_invalid_subscriber_rows_are_skipped(self, tmp_path, channels, clock, settings):
        """Test that one malformed subscriber does not stop delivery to the rest."""
        subscribers = [
            {
                "id": "good",
                "email": "good@example.com",
                "preferences": {"enabledAlertTypes": {"billStatusChange": True}},
            },
            {
                "id": "bad-time",
                "email": "bad-time@example.com",
                "preferences": {"alertFrequency": "daily_digest", "digestTime": "6am"},
            },
            {
                "id": "bad-cadence",
                "email": "bad-cadence@example.com",
                "preferences": {"alertFrequency": "monthly"},
            },
        ]
        (tmp_path / "subscribers.json").write_text(json.dumps(subscribers))
        (tmp_path / "events.json").write_text(json.dumps([{"id": 1, "kind": "BILL_STATUS_CHANGED"}]))
        store = DataStore(data_dir=tmp_path)

        report = Dispatcher(store, channels, clock=clock, settings=settings).run_dispatch()

        assert [s.id for s in store.list_subscribers(10)] == ["good"]
        assert report.subscribers_fetched == 1
        assert channels.email.find_message_to("good@example.com") is not None
        assert store.get_event(1).status == EventStatus.DONE


class TestDataStoreEvents:
    """Tests for selecting and claiming events."""

    def test_select_due_orders_by_status_then_id(self, store, make_event, now):
        stale_before = now - timedelta(minutes=15)
        make_event(id=1, status=EventStatus.FAILED, next_attempt_at=now - timedelta(minutes=1))
        make_event(id=2)
        make_event(id=3, status=EventStatus.PROCESSING, claimed_at=now - timedelta(minutes=30))
        make_event(id=4, status=EventStatus.DONE)
        make_event(id=5)

        due = store.select_due_events(now, 10, stale_before)

        assert [e.id for e in due] == [2, 5, 3, 1]

    def test_select_due_skips_future_retry_and_fresh_claims(self, store, make_event, now):
        stale_before = now - timedelta(minutes=15)
        make_event(id=1, status=EventStatus.FAILED, next_attempt_at=now + timedelta(minutes=1))
        make_event(id=2, status=EventStatus.PROCESSING, claimed_at=now - timedelta(minutes=5))
        make_event(id=3, status=EventStatus.FAILED, dead_lettered_at=now)

        assert store.select_due_events(now, 10, stale_before) == []

    def test_select_due_respects_limit(self, store, make_event, now):
        for _ in range(5):
            make_event()

        due = store.select_due_events(now, 3, now - timedelta(minutes=15))
        assert [e.id for e in due] == [1, 2, 3]

    def test_claim_marks_processing(self, store, make_event, now):
        make_event(id=1, status=EventStatus.FAILED, last_error="boom", attempts=2)

        claimed = store.claim_event(1, now, now - timedelta(minutes=15))

        assert claimed.status == EventStatus.PROCESSING
        assert claimed.attempts == 3
        assert claimed.last_error is None
        assert claimed.claimed_at == now

    def test_claim_twice_loses(self, store, make_event, now):
        make_event(id=1)
        stale_before = now - timedelta(minutes=15)

        assert store.claim_event(1, now, stale_before) is not None
        assert store.claim_event(1, now, stale_before) is None

    def test_claim_done_only_when_allowed(self, store, make_event, now):
        make_event(id=1, status=EventStatus.DONE, attempts=1)
        stale_before = now - timedelta(minutes=15)

        assert store.claim_event(1, now, stale_before) is None
        claimed = store.claim_event(1, now, stale_before, allow_done=True)
        assert claimed.attempts == 2

    def test_claim_missing_event(self, store, now):
        assert store.claim_event(42, now, now) is None

    def test_fail_and_reset(self, store, make_event, now):
        make_event(id=1)
        store.claim_event(1, now, now - timedelta(minutes=15))

        store.fail_event(1, "boom", now + timedelta(minutes=5))
        failed = store.get_event(1)
        assert failed.status == EventStatus.FAILED
        assert failed.last_error == "boom"

        store.reset_event(1)
        reset = store.get_event(1)
        assert reset.status == EventStatus.PENDING
        assert reset.next_attempt_at is None
        assert reset.attempts == 1

    def test_update_missing_event_raises(self, store, now):
        with pytest.raises(NotFoundError):
            store.complete_event(99, now)

    def test_duplicate_event_id_rejected(self, store, make_event):
        make_event(id=1)
        with pytest.raises(DuplicateKeyError):
            make_event(id=1)

    def test_returns_copies(self, store, make_event):
        """Test that mutating a returned model does not touch stored state."""
        make_event(id=1, summary="original")

        event = store.get_event(1)
        event.summary = "changed"

        assert store.get_event(1).summary == "original"


class TestDataStoreAnchorsAndDeliveries:
    """Tests for the unique indexes."""

    def test_anchor_natural_key_is_unique(self, store, now):
        store.create_anchor(_key(), now)

        with pytest.raises(DuplicateKeyError):
            store.create_anchor(_key(), now)
        assert len(store.get_anchors()) == 1

    def test_find_anchor(self, store, now):
        created = store.create_anchor(_key(), now)

        assert store.find_anchor(_key()).id == created.id
        assert store.find_anchor(_key("other")) is None

    def test_delivery_is_unique_per_event_and_anchor(self, store, make_event, now):
        make_event(id=1)
        anchor = store.create_anchor(_key(), now)
        store.create_delivery(1, anchor.id, now)

        with pytest.raises(DuplicateKeyError):
            store.create_delivery(1, anchor.id, now)

    def test_close_only_touches_queued(self, store, make_event, now):
        make_event(id=1)
        anchor = store.create_anchor(_key(), now)
        delivery = store.create_delivery(1, anchor.id, now)

        assert store.close_deliveries([delivery.id], DeliveryStatus.SENT, now) == 1
        assert store.close_deliveries([delivery.id], DeliveryStatus.FAILED, now, "x") == 0

        stored = store.get_delivery(delivery.id)
        assert stored.status == DeliveryStatus.SENT
        assert stored.sent_at == now
        assert stored.error is None

    def test_queued_deliveries_newest_first(self, store, make_event, now):
        anchor = store.create_anchor(_key(), now)
        for offset in range(3):
            event = make_event()
            store.create_delivery(event.id, anchor.id, now + timedelta(minutes=offset))

        queued = store.queued_deliveries(anchor.id, 2)

        assert [d.event_id for d in queued] == [3, 2]

    def test_digest_anchors_with_queued(self, store, make_event, now):
        instant = store.create_anchor(_key("a"), now)
        digest = store.create_anchor(
            _key("b").model_copy(update={"send_mode": SendMode.DIGEST}), now
        )
        make_event(id=1)
        store.create_delivery(1, instant.id, now)
        store.create_delivery(1, digest.id, now)

        assert store.digest_anchor_ids_with_queued() == [digest.id]


class TestDataStoreRunLog:
    def test_latest_run(self, store, now):
        assert store.latest_run() is None

        first = store.start_run("ALERT_SENDER", now)
        second = store.start_run("ALERT_SENDER", now)
        store.finish_run(second.id, now, success=True, processed_count=3)

        latest = store.latest_run("ALERT_SENDER")
        assert latest.id == second.id
        assert latest.success is True
        assert latest.processed_count == 3
        assert first.id < second.id
        assert store.latest_run("OTHER") is None
