"""
Notification message templates.

Rendering is a pure function of event data: given one event (instant) or a
batch of events (digest) it returns the subject, HTML body, plain-text body
and inbox preview. Nothing here touches the store or the channels.

Design decisions:
- Templates are stored as simple strings with {variable} placeholders
- Event payloads (``Event.context``) are read leniently; missing or malformed
  fields degrade to shorter output instead of raising
- Flagged (priority) events carry an IMPORTANT marker everywhere they appear
- All times are shown in the reference timezone
"""

import html
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from urllib.parse import quote
from zoneinfo import ZoneInfo

from shared.models import Event, EventKind

PREVIEW_LENGTH = 120
IMPORTANT_PREFIX = "IMPORTANT: "
IMPORTANT_SUBJECT_PREFIX = "\U0001f6a8 IMPORTANT: "


@dataclass
class RenderedMessage:
    """A message ready to hand to a channel."""
    subject: str
    html: str
    text: str
    preview: str
    important: bool = False


@dataclass
class RenderOptions:
    """Knobs the renderer needs from configuration."""
    timezone: str = "America/New_York"
    dashboard_base_url: str = "https://www.caucusreport.com"
    max_calendar_rows: int = 100
    max_calendar_rows_digest: int = 25


# =============================================================================
# Labels
# =============================================================================

EVENT_TYPE_LABELS: dict[EventKind, str] = {
    EventKind.BILL_STATUS_CHANGED: "Bill status changed",
    EventKind.BILL_INTRODUCED: "New bill introduced",
    EventKind.BILL_NEW_ACTION: "New action",
    EventKind.BILL_ADDED_TO_CALENDAR: "Added to calendar",
    EventKind.BILL_REMOVED_FROM_CALENDAR: "Removed from calendar",
    EventKind.COMMITTEE_REFERRAL: "Referred to committee",
    EventKind.COMMITTEE_VOTE_RECORDED: "Committee vote recorded",
    EventKind.HEARING_SCHEDULED: "Hearing scheduled",
    EventKind.HEARING_CHANGED: "Hearing changed",
    EventKind.HEARING_CANCELED: "Hearing canceled",
    EventKind.CALENDAR_PUBLISHED: "Calendar published",
    EventKind.CALENDAR_UPDATED: "Calendar updated",
}


def humanize_kind(kind: Any) -> str:
    """Display label for an event kind, falling back to Title Case."""
    try:
        return EVENT_TYPE_LABELS[EventKind(kind)]
    except (KeyError, ValueError):
        return str(kind).lower().replace("_", " ").title()


def normalize_chamber(text: Optional[str]) -> str:
    text = (text or "").strip()
    if not text:
        return ""
    return text[0].upper() + text[1:].lower()


# =============================================================================
# Text helpers
# =============================================================================

_STYLE_OR_SCRIPT = re.compile(r"<(style|script)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]+>")
_SPACE = re.compile(r"\s+")


def strip_html(value: str) -> str:
    value = _STYLE_OR_SCRIPT.sub(" ", value)
    value = _TAG.sub(" ", value)
    return _SPACE.sub(" ", html.unescape(value)).strip()


def truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 1] + "…"


def to_preview_text(value: str, limit: int = PREVIEW_LENGTH) -> str:
    """HTML-stripped, whitespace-collapsed, truncated preview line."""
    return truncate(strip_html(value), limit)


def format_when(value: datetime, timezone: str) -> str:
    """'March 3, 2026 at 2:30 PM' in the given zone; midnight shows the date only."""
    local = value.astimezone(ZoneInfo(timezone))
    date_part = f"{local.strftime('%B')} {local.day}, {local.year}"
    if local.hour == 0 and local.minute == 0:
        return date_part
    hour = local.hour % 12 or 12
    period = "AM" if local.hour < 12 else "PM"
    return f"{date_part} at {hour}:{local.minute:02d} {period}"


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return float(value) if "." in value else int(value)
        except ValueError:
            return None
    return None


def bill_number(event: Event) -> Optional[str]:
    return _clean(event.context.get("billNumber"))


def bill_title(event: Event) -> Optional[str]:
    return _clean(event.context.get("billTitle") or event.context.get("shortTitle"))


def dashboard_url(number: str, kind: Optional[EventKind], options: RenderOptions) -> str:
    url = f"{options.dashboard_base_url.rstrip('/')}/bills/{quote(number, safe='')}"
    if kind == EventKind.COMMITTEE_VOTE_RECORDED:
        url += "?activeTab=votes"
    return url


# =============================================================================
# Committee votes
# =============================================================================

_PARTY_ALIASES = {
    "d": "D", "dem": "D", "democrat": "D", "democratic": "D",
    "r": "R", "rep": "R", "republican": "R",
    "i": "I", "ind": "I", "independent": "I",
}

_COUNT_KEYS = {
    "yes": ("yesVotes", "yes", "yea", "yeas", "y"),
    "no": ("noVotes", "no", "nay", "nays", "n"),
    "excused": ("excused", "excusedVotes", "exc"),
    "absent": ("absent", "absentVotes", "abs"),
    "not_voting": ("notVoting", "notVotingVotes", "nv"),
}

_COUNT_LABELS = {
    "yes": "Yes",
    "no": "No",
    "excused": "Excused",
    "absent": "Absent",
    "not_voting": "Not voting",
}


@dataclass
class CommitteeVote:
    counts: dict[str, float]
    party_yes: Optional[dict[str, float]] = None
    party_no: Optional[dict[str, float]] = None
    pdf_url: Optional[str] = None

    @property
    def has_counts(self) -> bool:
        return bool(self.counts)

    @property
    def has_party(self) -> bool:
        return self.party_yes is not None


def _first(obj: dict, keys: tuple) -> Any:
    for key in keys:
        if obj.get(key) is not None:
            return obj[key]
    return None


def _party_counts(raw: Any) -> dict[str, float]:
    if not isinstance(raw, dict):
        return {}
    out: dict[str, float] = {}
    for key, value in raw.items():
        number = _as_number(value)
        if number is None:
            continue
        party = _PARTY_ALIASES.get(str(key).strip().lower(), str(key).strip().upper()[:8])
        out[party] = out.get(party, 0) + number
    return out


def extract_committee_vote(payload: dict[str, Any]) -> CommitteeVote:
    """Pull vote totals, party breakdown and PDF link out of an event payload."""
    pdf = _clean(_first(payload, ("votePdfUrl", "pdfUrl", "urlPdf", "votePdf")))

    counts_obj = _first(payload, ("voteCounts", "counts", "vote", "rollup"))
    if not isinstance(counts_obj, dict):
        counts_obj = payload
    counts = {}
    for name, keys in _COUNT_KEYS.items():
        number = _as_number(_first(counts_obj, keys))
        if number is not None:
            counts[name] = number

    vote = CommitteeVote(counts=counts, pdf_url=pdf)
    breakdown = _first(payload, ("partyBreakdown", "breakdownByParty", "party"))
    if isinstance(breakdown, dict):
        vote.party_yes = _party_counts(_first(breakdown, ("yes", "yea", "yeas")))
        vote.party_no = _party_counts(_first(breakdown, ("no", "nay", "nays")))
    return vote


def party_line_label(vote: CommitteeVote) -> str:
    """
    Classify a committee vote.

    Unanimous: yes votes and no "no" votes (overall or by party).
    Party Line: exactly one party voted yes, a different one voted no, and
    neither crossed over. Mixed Party: anything else with a breakdown.
    Unknown: no breakdown to judge from.
    """
    yes_total = vote.counts.get("yes", 0)
    no_total = vote.counts.get("no", 0)
    if yes_total > 0 and no_total == 0:
        return "Unanimous"
    if not vote.has_party:
        return "Unknown"

    parties = set(vote.party_yes) | set(vote.party_no)
    if not parties:
        return "Unknown"

    with_yes = [p for p in parties if vote.party_yes.get(p, 0) > 0]
    with_no = [p for p in parties if vote.party_no.get(p, 0) > 0]

    if not with_no and sum(vote.party_yes.values()) > 0:
        return "Unanimous"

    if len(with_yes) == 1 and len(with_no) == 1 and with_yes[0] != with_no[0]:
        yes_party, no_party = with_yes[0], with_no[0]
        if vote.party_no.get(yes_party, 0) == 0 and vote.party_yes.get(no_party, 0) == 0:
            return "Party Line"

    return "Mixed Party"


def _fmt_count(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def format_counts(vote: CommitteeVote) -> str:
    return " · ".join(
        f"{_COUNT_LABELS[name]} {_fmt_count(vote.counts[name])}"
        for name in _COUNT_KEYS
        if name in vote.counts
    )


def format_party_breakdown(vote: CommitteeVote) -> Optional[str]:
    if not vote.has_party:
        return None
    yes = ", ".join(f"{p} {_fmt_count(n)}" for p, n in vote.party_yes.items() if n > 0)
    no = ", ".join(f"{p} {_fmt_count(n)}" for p, n in vote.party_no.items() if n > 0)
    if not yes and not no:
        return None
    return f"Yes: {yes or '-'} | No: {no or '-'}"


# =============================================================================
# Calendars
# =============================================================================

@dataclass
class CalendarRow:
    position: Optional[int]
    bill_number: Optional[str]
    action: Optional[str]
    notes: Optional[str]


def extract_calendar_items(payload: dict[str, Any]) -> list[CalendarRow]:
    candidates = payload.get("items") or payload.get("calendarItems")
    if candidates is None and isinstance(payload.get("calendar"), dict):
        candidates = payload["calendar"].get("items")
    if not isinstance(candidates, list):
        return []

    rows = []
    for item in candidates:
        if not isinstance(item, dict):
            continue
        position = _as_number(item.get("position"))
        bill = item.get("bill")
        number = _clean(item.get("billNumber")) or (
            _clean(bill.get("billNumber")) if isinstance(bill, dict) else None
        )
        action = _clean(item.get("actionText") or item.get("action"))
        notes = _clean(item.get("notes") or item.get("note"))
        if not (position or number or action or notes):
            continue
        rows.append(CalendarRow(
            position=int(position) if position is not None else None,
            bill_number=number,
            action=action,
            notes=notes,
        ))
    return rows


CALENDAR_ROW_HTML = """<tr>
<td style="padding:8px;border-top:1px solid #eee;vertical-align:top;width:70px;">{position}</td>
<td style="padding:8px;border-top:1px solid #eee;vertical-align:top;width:140px;">{bill}</td>
<td style="padding:8px;border-top:1px solid #eee;vertical-align:top;">{details}</td>
</tr>"""

CALENDAR_TABLE_HTML = """<div style="margin:12px 0 0;">
<h3 style="margin:0 0 8px;font-size:16px;">Calendar items</h3>
<table style="width:100%;border-collapse:collapse;">
<thead><tr><th align="left">Pos</th><th align="left">Bill</th><th align="left">Details</th></tr></thead>
<tbody>{rows}</tbody>
</table>
{more}</div>"""


def calendar_table_html(rows: list[CalendarRow], max_rows: int, options: RenderOptions) -> str:
    if not rows:
        return "<p><strong>Calendar items:</strong> No items were included with this event.</p>"

    shown = rows[:max_rows]
    rendered = []
    for row in shown:
        if row.bill_number:
            href = html.escape(dashboard_url(row.bill_number, None, options))
            bill = f'<a href="{href}">{html.escape(row.bill_number)}</a>'
        else:
            bill = "-"
        details = ""
        if row.action:
            details += f'<div style="font-weight:600;">{html.escape(row.action)}</div>'
        if row.notes:
            details += f'<div style="color:#444;margin-top:4px;">{html.escape(row.notes)}</div>'
        rendered.append(CALENDAR_ROW_HTML.format(
            position=html.escape(str(row.position)) if row.position is not None else "-",
            bill=bill,
            details=details,
        ))

    more = ""
    if len(rows) > len(shown):
        more = (
            f'<p style="margin:8px 0 0;color:#666;font-size:12px;">'
            f"Showing {len(shown)} of {len(rows)} items.</p>"
        )
    return CALENDAR_TABLE_HTML.format(rows="".join(rendered), more=more)


# =============================================================================
# Instant messages
# =============================================================================

IMPORTANT_BANNER_HTML = (
    '<div style="margin:0 0 14px;padding:12px 14px;border:1px solid #ef4444;'
    'background:#fee2e2;border-radius:10px;text-align:center;font-weight:700;color:#991b1b;">'
    "This bill has been flagged by the caucus.</div>"
)

IMPORTANT_PILL_HTML = (
    '<span style="margin-left:8px;padding:2px 8px;border-radius:999px;font-size:11px;'
    'font-weight:700;color:#991b1b;background:#fee2e2;">IMPORTANT</span>'
)

INSTANT_HTML = """<div style="font-family:Helvetica,Arial,sans-serif;{container_style}">
{banner}<h2 style="margin:0 0 12px;">{heading}</h2>
{body}
<hr style="border:none;border-top:1px solid #eee;margin:16px 0;" />
<p style="margin:0;color:#666;font-size:12px;">Event ID: {event_id}</p>
</div>"""


def _line(label: str, value: str) -> str:
    return f'<p style="margin:0 0 8px;"><strong>{label}:</strong> {value}</p>'


def _bill_line(event: Event) -> str:
    number = bill_number(event)
    if not number:
        return ""
    title = bill_title(event)
    label = f"{number} - {title}" if title else number
    pill = IMPORTANT_PILL_HTML if event.priority else ""
    return _line("Bill", html.escape(label) + pill)


def _dashboard_button(event: Event, options: RenderOptions) -> str:
    number = bill_number(event)
    if not number:
        return ""
    url = html.escape(dashboard_url(number, event.kind, options))
    colour = "#dc2626" if event.priority else "#000000"
    return (
        f'<p style="margin:20px 0;text-align:center;"><a href="{url}" '
        f'style="padding:12px 24px;color:#fff;background:{colour};border-radius:8px;'
        f'text-decoration:none;">View on dashboard</a></p>'
    )


def instant_subject(event: Event) -> str:
    number = bill_number(event)
    label = humanize_kind(event.kind)
    subject = f"{number} - {label}" if number else label
    if event.kind == EventKind.CALENDAR_PUBLISHED and event.summary.strip():
        subject = f"{normalize_chamber(event.chamber)} {event.summary.strip()}".strip()
    if event.priority:
        subject = IMPORTANT_SUBJECT_PREFIX + subject
    return subject


def instant_preview(event: Event) -> str:
    prefix = IMPORTANT_PREFIX if event.priority else ""
    number = bill_number(event)
    label = humanize_kind(event.kind)

    if event.kind == EventKind.COMMITTEE_VOTE_RECORDED:
        vote = extract_committee_vote(event.context)
        if vote.has_counts:
            base = f"Committee vote - {format_counts(vote)} ({party_line_label(vote)})"
        else:
            base = "Committee vote recorded - details not yet posted"
    elif event.kind == EventKind.CALENDAR_PUBLISHED:
        items = extract_calendar_items(event.context)
        if items:
            base = f"{normalize_chamber(event.chamber)} {event.summary} - {len(items)} items"
        else:
            base = "Calendar published"
        number = None
    else:
        base = f"{label} - {event.summary}"

    if number:
        base = f"{number}: {base}"
    return to_preview_text(prefix + base)


def _instant_body(event: Event, options: RenderOptions) -> tuple[str, str]:
    """Return (heading, inner HTML) for one event."""
    when = _line("When", html.escape(format_when(event.occurred_at, options.timezone)))

    if event.kind == EventKind.COMMITTEE_VOTE_RECORDED:
        vote = extract_committee_vote(event.context)
        parts = [_bill_line(event), when]
        if vote.pdf_url:
            parts.append(_line(
                "Committee vote PDF",
                f'<a href="{html.escape(vote.pdf_url)}">Open PDF</a>',
            ))
        if vote.has_counts:
            parts.append(_line("Vote totals", html.escape(format_counts(vote))))
            parts.append(_line("Party line", party_line_label(vote)))
            breakdown = format_party_breakdown(vote)
            if breakdown:
                parts.append(_line("Party breakdown", html.escape(breakdown)))
        else:
            parts.append(_line(
                "Vote details",
                "A committee vote was recorded, but the official PDF and vote "
                "counts have not been posted yet.",
            ))
        parts.append(_dashboard_button(event, options))
        return humanize_kind(event.kind), "\n".join(p for p in parts if p)

    if event.kind == EventKind.CALENDAR_PUBLISHED:
        heading = f"{normalize_chamber(event.chamber)} {event.summary}".strip()
        table = calendar_table_html(
            extract_calendar_items(event.context), options.max_calendar_rows, options
        )
        return heading or humanize_kind(event.kind), f"{when}\n{table}"

    parts = [_bill_line(event), when]
    if event.summary:
        parts.append(_line("Summary", html.escape(event.summary)))
    parts.append(_dashboard_button(event, options))
    return humanize_kind(event.kind), "\n".join(p for p in parts if p)


def render_instant(event: Event, options: Optional[RenderOptions] = None) -> RenderedMessage:
    """Render one event as a standalone notification."""
    options = options or RenderOptions()
    heading, body = _instant_body(event, options)
    container_style = (
        "border-left:6px solid #ef4444;background:#fff7f7;padding:14px;border-radius:10px;"
        if event.priority else ""
    )
    body_html = INSTANT_HTML.format(
        container_style=container_style,
        banner=IMPORTANT_BANNER_HTML if event.priority else "",
        heading=html.escape(heading),
        body=body,
        event_id=event.id,
    )
    preview = instant_preview(event)
    return RenderedMessage(
        subject=instant_subject(event),
        html=body_html,
        text=preview,
        preview=preview,
        important=event.priority,
    )


# =============================================================================
# Digest messages
# =============================================================================

DIGEST_HTML = """<div style="font-family:Helvetica,Arial,sans-serif;">
<h2 style="margin:0 0 12px;">Bill updates digest</h2>
<p style="margin:0 0 14px;color:#666;">{count} update{plural}</p>
<table style="width:100%;border-collapse:collapse;">
<thead><tr><th align="left" style="padding:10px;">Item</th><th align="left" style="padding:10px;">Update</th></tr></thead>
<tbody>{rows}</tbody>
</table>
</div>"""

DIGEST_ROW_HTML = """<tr style="{row_style}">
<td style="padding:10px;vertical-align:top;"><div style="font-weight:600;">{title}{pill}</div>{subtitle}</td>
<td style="padding:10px;vertical-align:top;">{update}</td>
</tr>"""


def _digest_row(event: Event, options: RenderOptions) -> str:
    number = bill_number(event)
    title = bill_title(event)
    label = humanize_kind(event.kind)
    when = html.escape(format_when(event.occurred_at, options.timezone))
    link = ""
    if number:
        href = html.escape(dashboard_url(number, event.kind, options))
        link = f'<div style="margin-top:6px;"><a href="{href}">View on dashboard</a></div>'

    if event.kind == EventKind.COMMITTEE_VOTE_RECORDED:
        vote = extract_committee_vote(event.context)
        if vote.has_counts:
            yes = _fmt_count(vote.counts["yes"]) if "yes" in vote.counts else "-"
            no = _fmt_count(vote.counts["no"]) if "no" in vote.counts else "-"
            counts = f"Yes {yes} · No {no}"
        else:
            counts = "Vote details pending"
        left = html.escape(number) if number else "Committee vote"
        subtitle = html.escape(title) if title else ""
        update = (
            f'<div style="font-weight:600;">Committee vote</div>'
            f"<div>{html.escape(f'{counts} ({party_line_label(vote)})')}</div>{link}"
        )
    elif event.kind == EventKind.CALENDAR_PUBLISHED:
        left = html.escape(label)
        subtitle = when
        update = calendar_table_html(
            extract_calendar_items(event.context), options.max_calendar_rows_digest, options
        )
    else:
        left = html.escape(number) if number else html.escape(label)
        subtitle = html.escape(title) if title else ""
        update = ""
        if number:
            update += f'<div style="font-weight:600;">{html.escape(label)}</div>'
        update += f'<div style="color:#666;font-size:12px;">{when}</div>'
        if event.summary:
            update += f"<div>{html.escape(event.summary)}</div>"
        update += link

    return DIGEST_ROW_HTML.format(
        row_style="background:#fff1f2;" if event.priority else "border-top:1px solid #eee;",
        title=left,
        pill=IMPORTANT_PILL_HTML if event.priority else "",
        subtitle=f'<div style="color:#666;font-size:12px;">{subtitle}</div>' if subtitle else "",
        update=update,
    )


def _digest_preview_item(event: Event) -> str:
    prefix = IMPORTANT_PREFIX if event.priority else ""
    if event.kind == EventKind.COMMITTEE_VOTE_RECORDED:
        vote = extract_committee_vote(event.context)
        counts = format_counts(vote) if vote.has_counts else "details pending"
        name = bill_number(event) or humanize_kind(event.kind)
        return f"{prefix}{name} ({counts}, {party_line_label(vote)})"
    if event.kind == EventKind.CALENDAR_PUBLISHED:
        return f"{prefix}Calendar ({len(extract_calendar_items(event.context))} items)"
    return f"{prefix}{bill_number(event) or humanize_kind(event.kind)}"


def digest_preview(events: list[Event]) -> str:
    count = len(events)
    top = ", ".join(_digest_preview_item(e) for e in events[:3])
    if count <= 3:
        base = f"{count} update{'' if count == 1 else 's'}: {top}"
    else:
        base = f"{count} updates: {top}, and more"
    return to_preview_text(base)


def render_digest(events: list[Event], options: Optional[RenderOptions] = None) -> RenderedMessage:
    """
    Render a batch of events as one digest.

    Events are shown newest first by occurrence time. The digest is important
    when any included event is flagged.
    """
    options = options or RenderOptions()
    ordered = sorted(events, key=lambda e: e.occurred_at, reverse=True)
    count = len(ordered)
    body_html = DIGEST_HTML.format(
        count=count,
        plural="" if count == 1 else "s",
        rows="".join(_digest_row(e, options) for e in ordered),
    )
    preview = digest_preview(ordered)
    return RenderedMessage(
        subject=f"Bill updates digest ({count})",
        html=body_html,
        text=preview,
        preview=preview,
        important=any(e.priority for e in ordered),
    )
