"""
Delivery recorder.

At most one delivery row exists per (event, anchor). Opening a delivery that
already exists is a conflict and the caller skips that subscriber, except
when the existing row is FAILED: a retried event reopens it so the subscriber
gets another chance without a second row. An instant row still QUEUED from a
run that died before closing it is resumed rather than skipped.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from dispatch.backoff import cap_error
from shared.models import Delivery, DeliveryStatus
from shared.store import DispatchStore, DuplicateKeyError

logger = logging.getLogger("deliveries")


class DeliveryRecorder:
    def __init__(self, store: DispatchStore):
        self.store = store

    def open_delivery(
        self,
        event_id: int,
        anchor_id: int,
        now: datetime,
        resume_queued: bool = False,
    ) -> Optional[Delivery]:
        """
        Create a QUEUED delivery, or reopen a FAILED one.

        With ``resume_queued`` an existing QUEUED row is handed back as well.
        The instant path uses this for rows an interrupted run opened but never
        closed; the caller holds the event claim, so nobody else owns the row.

        Returns None when the existing delivery is SENT, or QUEUED without
        ``resume_queued``.
        """
        try:
            return self.store.create_delivery(event_id, anchor_id, now)
        except DuplicateKeyError:
            pass

        existing = self.store.find_delivery(event_id, anchor_id)
        if existing is None:
            return None
        if existing.status == DeliveryStatus.FAILED and self.store.reopen_delivery(existing.id):
            logger.info(f"Reopened failed delivery {existing.id} (event={event_id} anchor={anchor_id})")
            return existing.model_copy(update={"status": DeliveryStatus.QUEUED, "error": None})
        if existing.status == DeliveryStatus.QUEUED and resume_queued:
            logger.warning(
                f"Resuming delivery {existing.id} left QUEUED by an interrupted run "
                f"(event={event_id} anchor={anchor_id})"
            )
            return existing
        logger.debug(
            f"Delivery already {existing.status.value} for event={event_id} anchor={anchor_id}"
        )
        return None

    def close_delivery(
        self,
        delivery_id: int,
        status: DeliveryStatus,
        at: datetime,
        error: Optional[str] = None,
    ) -> bool:
        return self.close_deliveries_batch([delivery_id], status, at, error) == 1

    def close_deliveries_batch(
        self,
        delivery_ids: Iterable[int],
        status: DeliveryStatus,
        at: datetime,
        error: Optional[str] = None,
    ) -> int:
        if status == DeliveryStatus.QUEUED:
            raise ValueError("deliveries can only be closed as SENT or FAILED")
        return self.store.close_deliveries(
            delivery_ids,
            status,
            at,
            cap_error(error) if error else None,
        )
