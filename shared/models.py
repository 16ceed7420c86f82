"""
Domain models for the alert dispatch engine.

These models describe the rows the dispatcher reads and writes: events produced
by the ingestion pipeline, subscribers with their delivery preferences, the
subscription anchors used for bookkeeping, and one delivery record per
(event, anchor) pair.

Design decisions:
- Using Pydantic for validation and serialization
- Subscriber preferences are validated once at load time into a typed struct
- All timestamps are timezone-aware UTC
"""

import re
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums - Status values used across the domain
# =============================================================================

class EventKind(str, Enum):
    """
    Event types produced by the ingestion pipeline.
    Not every kind has a preference mapping (see dispatch.preferences).
    """
    BILL_STATUS_CHANGED = "BILL_STATUS_CHANGED"
    BILL_INTRODUCED = "BILL_INTRODUCED"
    BILL_NEW_ACTION = "BILL_NEW_ACTION"
    BILL_ADDED_TO_CALENDAR = "BILL_ADDED_TO_CALENDAR"
    BILL_REMOVED_FROM_CALENDAR = "BILL_REMOVED_FROM_CALENDAR"
    COMMITTEE_REFERRAL = "COMMITTEE_REFERRAL"
    COMMITTEE_VOTE_RECORDED = "COMMITTEE_VOTE_RECORDED"
    HEARING_SCHEDULED = "HEARING_SCHEDULED"
    HEARING_CHANGED = "HEARING_CHANGED"
    HEARING_CANCELED = "HEARING_CANCELED"
    CALENDAR_PUBLISHED = "CALENDAR_PUBLISHED"
    CALENDAR_UPDATED = "CALENDAR_UPDATED"


class EventStatus(str, Enum):
    """
    Alert processing state of an event.
    Declaration order is the sort order used when selecting due events.
    """
    PENDING = "PENDING"           # Created by ingestion, never claimed
    PROCESSING = "PROCESSING"     # Claimed by a dispatch run
    DONE = "DONE"                 # Fan-out finished
    FAILED = "FAILED"             # Fan-out raised, waiting for next_attempt_at

    @property
    def rank(self) -> int:
        return list(EventStatus).index(self)


class Channel(str, Enum):
    """Supported delivery channels."""
    EMAIL = "email"
    SMS = "sms"


class Cadence(str, Enum):
    """How often a subscriber wants to hear about events."""
    INSTANT = "instant"
    DAILY_DIGEST = "daily_digest"
    WEEKLY_DIGEST = "weekly_digest"


class SendMode(str, Enum):
    INSTANT = "INSTANT"
    DIGEST = "DIGEST"


class DigestCadence(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"


class DeliveryStatus(str, Enum):
    QUEUED = "QUEUED"
    SENT = "SENT"
    FAILED = "FAILED"


class Weekday(str, Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @property
    def number(self) -> int:
        """Monday == 0, matching datetime.weekday()."""
        return list(Weekday).index(self)


class CalendarChamber(str, Enum):
    HOUSE = "house"
    SENATE = "senate"
    BOTH = "both"


class PreferenceKey(str, Enum):
    """
    Keys of the subscriber's enabled-alerts settings.

    These keys back the notification settings page, so their values stay
    stable. COMMITTEE_VOTE is a legacy key kept for older saved preferences.
    """
    BILL_STATUS_CHANGE = "billStatusChange"
    BILL_INTRODUCED = "billIntroduced"
    BILL_ADDED_TO_CALENDAR = "billAddedToCalendar"
    BILL_REMOVED_FROM_CALENDAR = "billRemovedFromCalendar"
    CALENDAR_PUBLISHED = "calendarPublished"
    CALENDAR_UPDATED = "calendarUpdated"
    COMMITTEE_REFERRAL = "committeeReferral"
    COMMITTEE_VOTE_RECORDED = "committeeVoteRecorded"
    HEARING_SCHEDULED = "hearingScheduled"
    COMMITTEE_VOTE = "committeeVote"


# =============================================================================
# Events
# =============================================================================

class Event(BaseModel):
    """
    A discrete occurrence that may need to be announced to subscribers.

    Created by the ingestion pipeline in PENDING. Only the status fields are
    written by the dispatcher; ``context`` is passed through to rendering.
    """
    id: int = Field(..., description="Event identifier, increasing in arrival order")
    kind: EventKind
    priority: bool = Field(
        default=False,
        description="Flagged events are delivered instantly regardless of cadence",
    )
    summary: str = Field(default="")
    chamber: Optional[str] = Field(default=None, description="Originating chamber, if any")
    occurred_at: datetime = Field(default_factory=utcnow)
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque payload (bill number, vote counts, calendar items...)",
    )

    status: EventStatus = Field(default=EventStatus.PENDING)
    attempts: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    dead_lettered_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Subscribers
# =============================================================================

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")


class SubscriberPreferences(BaseModel):
    """
    Typed delivery preferences, validated once when the subscriber is loaded.

    Accepts the historical camelCase settings blob (``alertFrequency``,
    ``enabledAlertTypes`` as a dict of booleans, ...) as well as the field
    names below.
    """
    channel: Channel = Field(default=Channel.EMAIL, alias="alertDeliveryMethod")
    cadence: Cadence = Field(default=Cadence.INSTANT, alias="alertFrequency")
    enabled: frozenset[PreferenceKey] = Field(
        default_factory=frozenset,
        alias="enabledAlertTypes",
        description="Preference keys the subscriber has switched on",
    )
    digest_day: Weekday = Field(default=Weekday.MONDAY, alias="digestDay")
    digest_time: time = Field(default=time(6, 0), alias="digestTime")
    calendar_chamber: CalendarChamber = Field(
        default=CalendarChamber.BOTH,
        alias="calendarChamber",
    )

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("cadence", mode="before")
    @classmethod
    def _accept_realtime(cls, value: Any) -> Any:
        if value == "realtime":
            return Cadence.INSTANT
        return value

    @field_validator("enabled", mode="before")
    @classmethod
    def _enabled_from_flags(cls, value: Any) -> Any:
        # {"billIntroduced": true, "hearingScheduled": false, "someFutureKey": true}
        if isinstance(value, dict):
            known = {k.value for k in PreferenceKey}
            return frozenset(
                PreferenceKey(key) for key, flag in value.items()
                if flag is True and key in known
            )
        return value

    @field_validator("digest_day", mode="before")
    @classmethod
    def _lower_day(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("digest_time", mode="before")
    @classmethod
    def _parse_hhmm(cls, value: Any) -> Any:
        if isinstance(value, str):
            match = _HHMM.match(value.strip())
            if not match:
                raise ValueError(f"digest time must be HH:MM, got {value!r}")
            hours, minutes = int(match.group(1)), int(match.group(2))
            if hours > 23 or minutes > 59:
                raise ValueError(f"digest time out of range: {value!r}")
            return time(hours, minutes)
        return value

    @property
    def is_digest(self) -> bool:
        return self.cadence in (Cadence.DAILY_DIGEST, Cadence.WEEKLY_DIGEST)

    def digest_cadence(self) -> Optional[DigestCadence]:
        """The anchor cadence implied by these preferences (None for instant)."""
        if self.cadence == Cadence.DAILY_DIGEST:
            return DigestCadence.DAILY
        if self.cadence == Cadence.WEEKLY_DIGEST:
            return DigestCadence.WEEKLY
        return None


class Subscriber(BaseModel):
    """
    A recipient of alerts.

    Contact targets are per channel; a subscriber whose preferred channel has
    no target is skipped by the dispatcher.
    """
    id: str = Field(..., description="Unique subscriber identifier")
    name: str = Field(default="")
    email: Optional[str] = Field(default=None)
    phone: Optional[str] = Field(default=None)
    preferences: SubscriberPreferences = Field(default_factory=SubscriberPreferences)

    def target_for(self, channel: Channel) -> Optional[str]:
        """Contact target for a channel, or None when unusable."""
        value = self.email if channel == Channel.EMAIL else self.phone
        if value is None or not value.strip():
            return None
        return value.strip()


# =============================================================================
# Anchors and deliveries
# =============================================================================

class AnchorKey(BaseModel):
    """Natural key of a subscription anchor. At most one anchor per key."""
    subscriber_id: str
    kind: EventKind
    channel: Channel
    target: str
    send_mode: SendMode
    digest_cadence: Optional[DigestCadence] = None

    model_config = ConfigDict(frozen=True)

    def as_string(self) -> str:
        """Flattened key used for unique indexes (NULL-safe)."""
        return "|".join([
            self.subscriber_id,
            self.kind.value,
            self.channel.value,
            self.target,
            self.send_mode.value,
            self.digest_cadence.value if self.digest_cadence else "-",
        ])


class Anchor(BaseModel):
    """
    Durable identity of a (subscriber, kind, channel, mode, cadence) subscription.
    Used only for delivery bookkeeping and digest timing.
    """
    id: int
    subscriber_id: str
    kind: EventKind
    channel: Channel
    target: str
    send_mode: SendMode
    digest_cadence: Optional[DigestCadence] = None
    last_triggered_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class Delivery(BaseModel):
    """One attempt to notify one subscriber about one event through one anchor."""
    id: int
    event_id: int
    anchor_id: int
    status: DeliveryStatus = DeliveryStatus.QUEUED
    sent_at: Optional[datetime] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class DeadLetter(BaseModel):
    """
    Operator-facing record of work the dispatcher gave up on.

    subject_type is "digest" (a failed digest batch for ``anchor_id``) or
    "event" (an event that exhausted its retry ceiling).
    """
    id: int
    subject_type: str
    anchor_id: Optional[int] = None
    event_id: Optional[int] = None
    delivery_ids: list[int] = Field(default_factory=list)
    error: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None


class DispatchRun(BaseModel):
    """Log row for one trigger invocation."""
    id: int
    kind: str = "ALERT_SENDER"
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    success: Optional[bool] = None
    processed_count: Optional[int] = None
    error: Optional[str] = None
