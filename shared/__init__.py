"""
Shared infrastructure for the alert dispatcher.

This package contains everything the dispatch core depends on but does not own:
- Domain models (Event, Subscriber, Anchor, Delivery, ...)
- The store protocol with in-memory and SQLAlchemy implementations
- Mock notification channels (Email, SMS)
- Message rendering
- Settings
"""

from shared.models import (
    Anchor,
    AnchorKey,
    DeadLetter,
    Delivery,
    DispatchRun,
    Event,
    Subscriber,
    SubscriberPreferences,
)
from shared.store import (
    DispatchStore,
    DuplicateKeyError,
    NotFoundError,
    StoreError,
    StoreUnavailableError,
)
from shared.data_store import DataStore
from shared.channels import EmailChannel, NotificationChannels, NotificationResult, SMSChannel, SendError
from shared.config import Settings, get_settings

__all__ = [
    "Anchor",
    "AnchorKey",
    "DeadLetter",
    "Delivery",
    "DispatchRun",
    "Event",
    "Subscriber",
    "SubscriberPreferences",
    "DispatchStore",
    "DuplicateKeyError",
    "NotFoundError",
    "StoreError",
    "StoreUnavailableError",
    "DataStore",
    "EmailChannel",
    "SMSChannel",
    "NotificationChannels",
    "NotificationResult",
    "SendError",
    "Settings",
    "get_settings",
]
