"""
Anchor registry.

An anchor is the durable identity of one subscription (subscriber, kind,
channel, target, mode, cadence). Deliveries hang off anchors, and digest
timing is tracked on them.
"""

import logging
from datetime import datetime

from shared.models import Anchor, AnchorKey
from shared.store import DispatchStore, DuplicateKeyError, StoreError

logger = logging.getLogger("anchors")


class AnchorRegistry:
    """
    Get-or-create over the store's unique natural-key index.

    Two workers racing on the same key both try the insert; the loser sees
    DuplicateKeyError and re-reads the winner's row.
    """

    def __init__(self, store: DispatchStore):
        self.store = store

    def get_or_create(self, key: AnchorKey, now: datetime) -> Anchor:
        existing = self.store.find_anchor(key)
        if existing is not None:
            return existing

        try:
            anchor = self.store.create_anchor(key, now)
            logger.debug(f"Created anchor {anchor.id} for {key.as_string()}")
            return anchor
        except DuplicateKeyError:
            winner = self.store.find_anchor(key)
            if winner is None:
                raise StoreError(f"Anchor conflict but no row found for {key.as_string()}")
            return winner

    def touch(self, anchor_id: int, at: datetime) -> None:
        """Record a successful send through this anchor."""
        self.store.touch_anchor(anchor_id, at)

    def reserve(self, anchor: Anchor, at: datetime) -> bool:
        """
        Stamp ``at`` if nobody else has stamped the anchor since it was read.

        Overlapping runs both reading the same anchor get one winner; the
        loser sees False and must not send.
        """
        return self.store.touch_anchor_if(anchor.id, anchor.last_triggered_at, at)

    def release(self, anchor: Anchor, at: datetime) -> None:
        """Undo :meth:`reserve` after a failed send."""
        if not self.store.touch_anchor_if(anchor.id, at, anchor.last_triggered_at):
            logger.warning(f"Anchor {anchor.id} was stamped again before release")
