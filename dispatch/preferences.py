"""
Preference resolution: does this subscriber get this event, and how?

The kind-to-preference-key table is the single place that says which
settings switch governs which event kind. Kinds without an entry are never
delivered unless forced, and are reported as unmapped so a new ingestion
event type does not silently go dark.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from shared.models import (
    CalendarChamber,
    Channel,
    DigestCadence,
    Event,
    EventKind,
    PreferenceKey,
    SendMode,
    Subscriber,
)


PREFERENCE_MAP_VERSION = 2

KIND_TO_PREFERENCE: dict[EventKind, PreferenceKey] = {
    EventKind.BILL_STATUS_CHANGED: PreferenceKey.BILL_STATUS_CHANGE,
    EventKind.BILL_INTRODUCED: PreferenceKey.BILL_INTRODUCED,
    EventKind.BILL_ADDED_TO_CALENDAR: PreferenceKey.BILL_ADDED_TO_CALENDAR,
    EventKind.BILL_REMOVED_FROM_CALENDAR: PreferenceKey.BILL_REMOVED_FROM_CALENDAR,
    EventKind.CALENDAR_PUBLISHED: PreferenceKey.CALENDAR_PUBLISHED,
    EventKind.CALENDAR_UPDATED: PreferenceKey.CALENDAR_UPDATED,
    EventKind.COMMITTEE_REFERRAL: PreferenceKey.COMMITTEE_REFERRAL,
    EventKind.COMMITTEE_VOTE_RECORDED: PreferenceKey.COMMITTEE_VOTE_RECORDED,
    EventKind.HEARING_SCHEDULED: PreferenceKey.HEARING_SCHEDULED,
    EventKind.HEARING_CHANGED: PreferenceKey.HEARING_SCHEDULED,
    EventKind.HEARING_CANCELED: PreferenceKey.HEARING_SCHEDULED,
}

# Older saved settings used one switch for all committee votes
LEGACY_FALLBACKS: dict[EventKind, PreferenceKey] = {
    EventKind.COMMITTEE_VOTE_RECORDED: PreferenceKey.COMMITTEE_VOTE,
}


class SkipReason(str, Enum):
    NO_TARGET = "no_target"
    NOTHING_ENABLED = "nothing_enabled"
    KIND_DISABLED = "kind_disabled"
    CHAMBER_FILTERED = "chamber_filtered"


@dataclass(frozen=True)
class Decision:
    """Outcome of resolving one (event, subscriber) pair."""
    eligible: bool
    forced: bool = False
    channel: Optional[Channel] = None
    target: Optional[str] = None
    send_mode: Optional[SendMode] = None
    digest_cadence: Optional[DigestCadence] = None
    skip_reason: Optional[SkipReason] = None

    @classmethod
    def skip(cls, reason: SkipReason) -> "Decision":
        return cls(eligible=False, skip_reason=reason)


def preference_key_for(kind: EventKind) -> Optional[PreferenceKey]:
    return KIND_TO_PREFERENCE.get(kind)


def is_mapped(kind: EventKind) -> bool:
    return preference_key_for(kind) is not None


def _chamber_of(event: Event) -> Optional[CalendarChamber]:
    raw = (event.chamber or event.context.get("chamber") or "")
    value = str(raw).strip().lower()
    if value in ("house", "h"):
        return CalendarChamber.HOUSE
    if value in ("senate", "s"):
        return CalendarChamber.SENATE
    return None


def wants_chamber(subscriber: Subscriber, event: Event) -> bool:
    """Calendar-chamber restriction; events with no known chamber always pass."""
    wanted = subscriber.preferences.calendar_chamber
    if wanted == CalendarChamber.BOTH:
        return True
    chamber = _chamber_of(event)
    return chamber is None or chamber == wanted


def wants_kind(subscriber: Subscriber, kind: EventKind) -> bool:
    enabled = subscriber.preferences.enabled
    key = preference_key_for(kind)
    if key is not None and key in enabled:
        return True
    legacy = LEGACY_FALLBACKS.get(kind)
    return legacy is not None and legacy in enabled


class PreferenceResolver:
    """
    Decides eligibility and send mode for (event, subscriber) pairs.

    Forced (priority) events skip the kind and chamber checks and always go
    out instantly, but the anchor still records the subscriber's digest
    cadence so forcing never rewrites their normal bookkeeping.
    """

    def resolve(self, event: Event, subscriber: Subscriber) -> Decision:
        prefs = subscriber.preferences
        channel = prefs.channel
        target = subscriber.target_for(channel)
        if target is None:
            return Decision.skip(SkipReason.NO_TARGET)
        if not prefs.enabled:
            return Decision.skip(SkipReason.NOTHING_ENABLED)

        forced = event.priority
        if not forced:
            if not wants_kind(subscriber, event.kind):
                return Decision.skip(SkipReason.KIND_DISABLED)
            if event.kind == EventKind.CALENDAR_PUBLISHED and not wants_chamber(subscriber, event):
                return Decision.skip(SkipReason.CHAMBER_FILTERED)

        if forced or not prefs.is_digest:
            send_mode = SendMode.INSTANT
        else:
            send_mode = SendMode.DIGEST

        return Decision(
            eligible=True,
            forced=forced,
            channel=channel,
            target=target,
            send_mode=send_mode,
            digest_cadence=prefs.digest_cadence(),
        )
