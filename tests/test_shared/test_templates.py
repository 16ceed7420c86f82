"""
Tests for notification templates.

Rendering is pure, so these build events in memory and check the subject,
preview and the bits of HTML that matter to a reader.
"""

from datetime import datetime, timedelta, timezone

import pytest

from shared.models import Event, EventKind
from shared.templates import (
    RenderOptions,
    dashboard_url,
    extract_calendar_items,
    extract_committee_vote,
    format_counts,
    format_party_breakdown,
    format_when,
    humanize_kind,
    instant_subject,
    party_line_label,
    render_digest,
    render_instant,
    strip_html,
    to_preview_text,
    truncate,
)

NY = "America/New_York"
OCCURRED = datetime(2026, 3, 3, 19, 30, tzinfo=timezone.utc)  # 2:30 PM in New York


def _event(kind=EventKind.BILL_STATUS_CHANGED, event_id=1, **fields) -> Event:
    fields.setdefault("occurred_at", OCCURRED)
    fields.setdefault("summary", "Passed Third Reading")
    fields.setdefault("context", {"billNumber": "HB0123", "billTitle": "Class Size Limits"})
    return Event(id=event_id, kind=kind, **fields)


def _calendar_items(count: int) -> list[dict]:
    return [
        {"position": i + 1, "billNumber": f"SB{i + 1:04d}", "actionText": "Third Reading"}
        for i in range(count)
    ]


class TestTextHelpers:
    def test_format_when(self):
        assert format_when(OCCURRED, NY) == "March 3, 2026 at 2:30 PM"

    def test_format_when_midnight_is_date_only(self):
        midnight = datetime(2026, 3, 3, 5, 0, tzinfo=timezone.utc)
        assert format_when(midnight, NY) == "March 3, 2026"

    def test_strip_html(self):
        raw = "<style>p {color: red}</style><p>Hello&nbsp;<b>world</b></p>\n\n<p>again</p>"
        assert strip_html(raw) == "Hello world again"

    def test_truncate(self):
        assert truncate("short", 10) == "short"
        assert truncate("a" * 20, 10) == "a" * 9 + "…"

    def test_preview_length(self):
        assert len(to_preview_text("<p>" + "word " * 100 + "</p>")) == 120

    def test_humanize_kind(self):
        assert humanize_kind(EventKind.HEARING_CANCELED) == "Hearing canceled"
        assert humanize_kind("SOMETHING_NEW") == "Something New"

    def test_dashboard_url(self):
        options = RenderOptions(dashboard_base_url="https://dash.example.com/")

        assert dashboard_url("HB0123", EventKind.BILL_INTRODUCED, options) == (
            "https://dash.example.com/bills/HB0123"
        )
        assert dashboard_url("HB 1", EventKind.COMMITTEE_VOTE_RECORDED, options) == (
            "https://dash.example.com/bills/HB%201?activeTab=votes"
        )


class TestCommitteeVotes:
    """Tests for vote extraction and the party-line label."""

    def test_party_line(self):
        vote = extract_committee_vote({
            "voteCounts": {"yes": 7, "no": 4},
            "partyBreakdown": {"yes": {"Democrat": 7}, "no": {"Republican": 4}},
        })

        assert vote.counts == {"yes": 7, "no": 4}
        assert party_line_label(vote) == "Party Line"
        assert format_counts(vote) == "Yes 7 · No 4"
        assert format_party_breakdown(vote) == "Yes: D 7 | No: R 4"

    def test_unanimous(self):
        vote = extract_committee_vote({"voteCounts": {"yesVotes": 11, "noVotes": 0}})
        assert party_line_label(vote) == "Unanimous"

    def test_mixed_party(self):
        vote = extract_committee_vote({
            "voteCounts": {"yes": 6, "no": 3},
            "partyBreakdown": {"yes": {"D": 5, "R": 1}, "no": {"R": 3}},
        })
        assert party_line_label(vote) == "Mixed Party"

    def test_unknown_without_breakdown(self):
        vote = extract_committee_vote({"yes": "3", "no": "2"})

        assert vote.counts == {"yes": 3, "no": 2}
        assert party_line_label(vote) == "Unknown"

    def test_pdf_link(self):
        vote = extract_committee_vote({"votePdfUrl": " https://example.org/v.pdf "})
        assert vote.pdf_url == "https://example.org/v.pdf"
        assert not vote.has_counts


class TestCalendarItems:
    def test_extracts_rows(self):
        rows = extract_calendar_items({
            "calendar": {"items": [
                {"position": "2", "bill": {"billNumber": "SB0001"}, "action": "Second Reading"},
                {"notes": ""},
                "garbage",
            ]},
        })

        assert len(rows) == 1
        assert rows[0].position == 2
        assert rows[0].bill_number == "SB0001"
        assert rows[0].action == "Second Reading"

    def test_missing_items(self):
        assert extract_calendar_items({}) == []


class TestRenderInstant:
    """Tests for standalone alerts."""

    def test_basic_alert(self):
        message = render_instant(_event(), RenderOptions(timezone=NY))

        assert message.subject == "HB0123 - Bill status changed"
        assert message.preview == "HB0123: Bill status changed - Passed Third Reading"
        assert message.text == message.preview
        assert "HB0123 - Class Size Limits" in message.html
        assert "March 3, 2026 at 2:30 PM" in message.html
        assert "Event ID: 1" in message.html
        assert message.important is False

    def test_priority_alert_is_marked_important(self):
        message = render_instant(_event(priority=True))

        assert message.subject.startswith("\U0001f6a8 IMPORTANT: ")
        assert message.preview.startswith("IMPORTANT: ")
        assert "flagged by the caucus" in message.html
        assert message.important is True

    def test_without_bill_number(self):
        event = _event(EventKind.HEARING_SCHEDULED, context={})
        assert instant_subject(event) == "Hearing scheduled"

    def test_committee_vote(self):
        event = _event(
            EventKind.COMMITTEE_VOTE_RECORDED,
            context={
                "billNumber": "SB0078",
                "voteCounts": {"yes": 7, "no": 4},
                "partyBreakdown": {"yes": {"D": 7}, "no": {"R": 4}},
            },
        )

        message = render_instant(event)

        assert "Committee vote - Yes 7 · No 4 (Party Line)" in message.preview
        assert "activeTab=votes" in message.html

    def test_committee_vote_pending(self):
        event = _event(EventKind.COMMITTEE_VOTE_RECORDED, context={"billNumber": "SB0078"})

        message = render_instant(event)

        assert "details not yet posted" in message.preview
        assert "have not been posted yet" in message.html

    def test_calendar_subject_and_rows(self):
        event = _event(
            EventKind.CALENDAR_PUBLISHED,
            chamber="senate",
            summary="Third Reading Calendar No. 12",
            context={"items": _calendar_items(3)},
        )

        message = render_instant(event)

        assert message.subject == "Senate Third Reading Calendar No. 12"
        assert message.preview == "Senate Third Reading Calendar No. 12 - 3 items"
        assert "SB0003" in message.html
        assert "Showing" not in message.html

    def test_calendar_rows_capped(self):
        event = _event(EventKind.CALENDAR_PUBLISHED, context={"items": _calendar_items(5)})

        message = render_instant(event, RenderOptions(max_calendar_rows=2))

        assert "Showing 2 of 5 items." in message.html
        assert "SB0003" not in message.html

    def test_html_is_escaped(self):
        event = _event(summary="<script>alert(1)</script>")
        assert "<script>" not in render_instant(event).html


class TestRenderDigest:
    """Tests for aggregated digests."""

    def test_newest_first(self):
        older = _event(event_id=1, context={"billNumber": "HB0001"})
        newer = _event(
            event_id=2,
            context={"billNumber": "HB0002"},
            occurred_at=OCCURRED + timedelta(hours=1),
        )

        message = render_digest([older, newer])

        assert message.subject == "Bill updates digest (2)"
        assert message.html.index("HB0002") < message.html.index("HB0001")
        assert message.preview == "2 updates: HB0002, HB0001"
        assert message.important is False

    def test_important_when_any_flagged(self):
        message = render_digest([_event(event_id=1), _event(event_id=2, priority=True)])

        assert message.important is True
        assert "IMPORTANT: HB0123" in message.preview

    def test_preview_mentions_more(self):
        events = [_event(event_id=i) for i in range(1, 6)]
        assert render_digest(events).preview.endswith(", and more")

    def test_digest_calendar_rows_capped(self):
        event = _event(EventKind.CALENDAR_PUBLISHED, context={"items": _calendar_items(30)})

        message = render_digest([event], RenderOptions(max_calendar_rows_digest=25))

        assert "Showing 25 of 30 items." in message.html
        assert message.subject == "Bill updates digest (1)"

    @pytest.mark.parametrize("count,expected", [(1, "1 update: "), (3, "3 updates: ")])
    def test_preview_count(self, count, expected):
        events = [_event(event_id=i) for i in range(1, count + 1)]
        assert render_digest(events).preview.startswith(expected)
