"""
Retry timing for failed events.

Everything here is pure: classification looks only at the error text, and
``next_attempt`` only at its arguments.
"""

import json
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Sequence

DEFAULT_SCHEDULE_MINUTES = (2, 5, 10, 20, 40, 60)
ERROR_TEXT_LIMIT = 4000

_RATE_LIMIT_MARKERS = ("rate_limit", "too many requests", "429")
_QUOTA_MARKERS = ("quota",)


class BackoffClass(str, Enum):
    GENERIC = "GENERIC"
    RATE_LIMITED = "RATE_LIMITED"
    QUOTA_EXHAUSTED = "QUOTA_EXHAUSTED"


def format_error(err: object) -> str:
    """
    Render any error as text.

    Exceptions become ``Name: message``; strings pass through; other objects
    use a ``code``/``message`` pair when they have one and fall back to JSON.
    """
    if isinstance(err, BaseException):
        message = str(err)
        name = type(err).__name__
        return f"{name}: {message}" if message else name
    if isinstance(err, str):
        return err

    code = getattr(err, "code", None)
    message = getattr(err, "message", None)
    if isinstance(err, dict):
        code = err.get("code") or err.get("name")
        message = err.get("message") or err.get("error")
    if code and message:
        return f"{code}: {message}"
    if message:
        return str(message)
    try:
        return json.dumps(err, default=str)
    except (TypeError, ValueError):
        return str(err)


def cap_error(text: str, limit: int = ERROR_TEXT_LIMIT) -> str:
    """Trim error text to what fits in the error columns."""
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def classify(err: object) -> BackoffClass:
    """Decide how long a failure should cool down, from its error text."""
    text = format_error(err).lower()
    if any(marker in text for marker in _QUOTA_MARKERS):
        return BackoffClass.QUOTA_EXHAUSTED
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return BackoffClass.RATE_LIMITED
    return BackoffClass.GENERIC


def is_rate_limited(err: object) -> bool:
    return classify(err) != BackoffClass.GENERIC


def next_attempt(
    attempts: int,
    classification: BackoffClass,
    now: datetime,
    schedule_minutes: Sequence[int] = DEFAULT_SCHEDULE_MINUTES,
    rate_limited_minutes: int = 15,
    quota_minutes: int = 720,
) -> datetime:
    """
    When a failed event becomes claimable again.

    ``attempts`` is the event's counter after the failing claim, so the
    first failure (attempts == 1) waits schedule[1].
    """
    if classification == BackoffClass.RATE_LIMITED:
        return now + timedelta(minutes=rate_limited_minutes)
    if classification == BackoffClass.QUOTA_EXHAUSTED:
        return now + timedelta(minutes=quota_minutes)
    index = min(max(attempts, 0), len(schedule_minutes) - 1)
    return now + timedelta(minutes=schedule_minutes[index])


def exhausted(attempts: int, max_attempts: Optional[int]) -> bool:
    """True once an event has used its final allowed attempt."""
    return max_attempts is not None and attempts >= max_attempts
