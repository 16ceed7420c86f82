"""
Shared pytest fixtures for the alert dispatch tests.

Time is frozen at Tuesday March 3, 2026 15:00 UTC (10:00 in New York, before
the DST switch), so digest windows can be reasoned about in plain numbers:
a 06:00 local digest is due at 11:00 UTC.
"""

import itertools
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from dispatch.clock import ManualClock
from dispatch.dispatcher import Dispatcher
from shared.channels import EmailChannel, NotificationChannels, SMSChannel
from shared.config import Settings
from shared.data_store import DataStore
from shared.models import Event, EventKind, Subscriber, SubscriberPreferences


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 3, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(now: datetime) -> ManualClock:
    return ManualClock(now)


@pytest.fixture
def settings() -> Settings:
    """Defaults only; ignores any .env file in the working directory."""
    return Settings(_env_file=None)


@pytest.fixture
def data_dir() -> Path:
    """Path to the JSON fixtures."""
    return Path(__file__).parent.parent / "data"


@pytest.fixture
def fixture_store(data_dir: Path) -> DataStore:
    """DataStore seeded from the JSON fixtures."""
    return DataStore(data_dir=data_dir)


@pytest.fixture
def store() -> DataStore:
    """Empty DataStore for each test."""
    return DataStore(load_fixtures=False)


@pytest.fixture
def email_channel() -> EmailChannel:
    """Fresh EmailChannel for each test."""
    return EmailChannel(fail_rate=0.0)


@pytest.fixture
def sms_channel() -> SMSChannel:
    """Fresh SMSChannel for each test."""
    return SMSChannel(fail_rate=0.0)


@pytest.fixture
def channels(email_channel: EmailChannel, sms_channel: SMSChannel) -> NotificationChannels:
    """Fresh NotificationChannels facade for each test."""
    return NotificationChannels(email=email_channel, sms=sms_channel)


@pytest.fixture
def dispatcher(store, channels, clock, settings) -> Dispatcher:
    return Dispatcher(store, channels, clock=clock, settings=settings)


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture
def make_event(store: DataStore, now: datetime):
    """
    Add an event to ``store``.

    Ids are handed out in call order unless given explicitly.
    """
    ids = itertools.count(1)

    def _make(kind: EventKind = EventKind.BILL_STATUS_CHANGED, **fields) -> Event:
        fields.setdefault("id", next(ids))
        fields.setdefault("summary", "Passed Third Reading")
        fields.setdefault("chamber", "house")
        fields.setdefault("context", {"billNumber": f"HB{fields['id']:04d}"})
        fields.setdefault("occurred_at", now - timedelta(minutes=10))
        fields.setdefault("created_at", now - timedelta(minutes=9))
        return store.add_event(Event(kind=kind, **fields))

    return _make


@pytest.fixture
def make_subscriber(store: DataStore):
    """
    Add a subscriber to ``store``.

    ``enabled`` lists preference keys to switch on; other keyword arguments
    are passed through as preference fields (camelCase or snake_case).
    """

    def _make(
        subscriber_id: str,
        cadence: str = "instant",
        enabled=("billStatusChange",),
        channel: str = "email",
        email=None,
        phone=None,
        **prefs,
    ) -> Subscriber:
        preferences = SubscriberPreferences(
            alertDeliveryMethod=channel,
            alertFrequency=cadence,
            enabledAlertTypes={key: True for key in enabled},
            **prefs,
        )
        subscriber = Subscriber(
            id=subscriber_id,
            name=subscriber_id.title(),
            email=email if email is not None else f"{subscriber_id}@example.com",
            phone=phone,
            preferences=preferences,
        )
        return store.add_subscriber(subscriber)

    return _make
