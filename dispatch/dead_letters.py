"""Operator actions on dead-letter records."""

import logging
from datetime import datetime

from shared.store import DispatchStore, NotFoundError

logger = logging.getLogger("dispatcher")


class AlreadyResolvedError(Exception):
    """Raised when requeueing a dead letter that was already handled."""


def requeue_dead_letter(store: DispatchStore, dead_letter_id: int, now: datetime) -> int:
    """
    Put a dead letter's work back in line and resolve the record.

    Digest records move their FAILED deliveries back to QUEUED so the next
    due window picks them up. Event records return the event to PENDING;
    ``attempts`` is left as it was.

    Returns the number of rows requeued.
    """
    record = store.get_dead_letter(dead_letter_id)
    if record is None:
        raise NotFoundError(f"Dead letter not found: {dead_letter_id}")
    if record.resolved_at is not None:
        raise AlreadyResolvedError(f"Dead letter {dead_letter_id} already resolved")

    if record.subject_type == "digest":
        count = store.requeue_deliveries(record.delivery_ids)
    else:
        store.reset_event(record.event_id)
        count = 1

    store.resolve_dead_letter(dead_letter_id, now)
    logger.info(f"Requeued dead letter {dead_letter_id} ({record.subject_type}, {count} rows)")
    return count
