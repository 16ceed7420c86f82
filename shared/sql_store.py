"""
Relational DispatchStore backed by SQLAlchemy.

Design decisions:
- Conditional updates (claim, reopen, close) are single UPDATE statements
  whose WHERE clause carries the expected state; rowcount tells the caller
  whether it won
- Uniqueness lives in the schema: anchors carry a flattened natural_key
  column (NULL cadences would never collide in a composite index) and
  deliveries a UniqueConstraint on (event_id, anchor_id)
- Driver errors are translated to the store error hierarchy so the dispatch
  core never imports SQLAlchemy
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Optional

from pydantic import ValidationError
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    and_,
    case,
    create_engine,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from shared.models import (
    Anchor,
    AnchorKey,
    DeadLetter,
    Delivery,
    DeliveryStatus,
    DispatchRun,
    Event,
    EventStatus,
    SendMode,
    Subscriber,
)
from shared.store import DuplicateKeyError, NotFoundError, StoreUnavailableError

logger = logging.getLogger("sql_store")


class UTCDateTime(TypeDecorator):
    """Stores aware datetimes as UTC and hands them back aware."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to the store")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


# =============================================================================
# Tables
# =============================================================================

class EventRow(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    kind: Mapped[str] = mapped_column(String(64), index=True)
    priority: Mapped[bool] = mapped_column(Boolean, default=False)
    summary: Mapped[str] = mapped_column(Text, default="")
    chamber: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime)
    context: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    status: Mapped[str] = mapped_column(String(16), index=True, default=EventStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    dead_lettered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)


class SubscriberRow(Base):
    __tablename__ = "subscribers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    preferences: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)


class AnchorRow(Base):
    __tablename__ = "anchors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    natural_key: Mapped[str] = mapped_column(String(512), unique=True)
    subscriber_id: Mapped[str] = mapped_column(String(64), index=True)
    kind: Mapped[str] = mapped_column(String(64))
    channel: Mapped[str] = mapped_column(String(16))
    target: Mapped[str] = mapped_column(String(255))
    send_mode: Mapped[str] = mapped_column(String(16))
    digest_cadence: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)


class DeliveryRow(Base):
    __tablename__ = "deliveries"
    __table_args__ = (UniqueConstraint("event_id", "anchor_id", name="uq_delivery_event_anchor"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), index=True)
    anchor_id: Mapped[int] = mapped_column(ForeignKey("anchors.id"), index=True)
    status: Mapped[str] = mapped_column(String(16), index=True, default=DeliveryStatus.QUEUED.value)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)


class DeadLetterRow(Base):
    __tablename__ = "dead_letters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_type: Mapped[str] = mapped_column(String(16))
    anchor_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    event_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    delivery_ids: Mapped[list[int]] = mapped_column(JSON, default=list)
    error: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class DispatchRunRow(Base):
    __tablename__ = "dispatch_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(32), index=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime)
    finished_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    success: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    processed_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


_STATUS_RANK = {status.value: status.rank for status in EventStatus}


def _to_subscriber(row: SubscriberRow) -> Optional[Subscriber]:
    """Validate one subscriber row; an invalid row is logged and left out."""
    try:
        return Subscriber.model_validate(row, from_attributes=True)
    except ValidationError as e:
        logger.warning(f"Skipping subscriber {row.id} with invalid preferences: {e}")
        return None



def make_engine(url: str) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if url == "sqlite://" or (url.startswith("sqlite") and ":memory:" in url):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, pool_pre_ping=True)


class SqlStore:
    """DispatchStore implementation on a SQLAlchemy engine."""

    def __init__(self, url_or_engine: Any, create_schema: bool = True):
        if isinstance(url_or_engine, Engine):
            self.engine = url_or_engine
        else:
            self.engine = make_engine(url_or_engine)
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)
        if create_schema:
            try:
                Base.metadata.create_all(self.engine)
            except OperationalError as e:
                raise StoreUnavailableError(str(e)) from e

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self._sessions() as session, session.begin():
                yield session
        except IntegrityError as e:
            raise DuplicateKeyError(str(e.orig)) from e
        except OperationalError as e:
            logger.error(f"Database unavailable: {e.orig}")
            raise StoreUnavailableError(str(e.orig)) from e

    # =========================================================================
    # Events
    # =========================================================================

    def add_event(self, event: Event) -> Event:
        with self._transaction() as session:
            data = event.model_dump(mode="python")
            data["kind"] = event.kind.value
            data["status"] = event.status.value
            session.add(EventRow(**data))
        return event.model_copy()

    def get_event(self, event_id: int) -> Optional[Event]:
        with self._transaction() as session:
            row = session.get(EventRow, event_id)
            return Event.model_validate(row, from_attributes=True) if row else None

    def _claimable(self, stale_before: datetime, allow_done: bool = False):
        stale = and_(
            EventRow.status == EventStatus.PROCESSING.value,
            EventRow.claimed_at.is_not(None),
            EventRow.claimed_at < stale_before,
        )
        open_statuses = [EventStatus.PENDING.value, EventStatus.FAILED.value]
        if allow_done:
            return or_(
                EventRow.status.in_(open_statuses + [EventStatus.DONE.value]),
                stale,
            )
        return and_(
            EventRow.dead_lettered_at.is_(None),
            or_(EventRow.status.in_(open_statuses), stale),
        )

    def select_due_events(
        self, now: datetime, limit: int, stale_before: datetime
    ) -> list[Event]:
        rank = case(_STATUS_RANK, value=EventRow.status, else_=len(_STATUS_RANK))
        stmt = (
            select(EventRow)
            .where(
                self._claimable(stale_before),
                or_(EventRow.next_attempt_at.is_(None), EventRow.next_attempt_at <= now),
            )
            .order_by(rank, EventRow.id)
            .limit(limit)
        )
        with self._transaction() as session:
            return [
                Event.model_validate(row, from_attributes=True)
                for row in session.scalars(stmt)
            ]

    def claim_event(
        self,
        event_id: int,
        now: datetime,
        stale_before: datetime,
        allow_done: bool = False,
    ) -> Optional[Event]:
        stmt = (
            update(EventRow)
            .where(EventRow.id == event_id, self._claimable(stale_before, allow_done))
            .values(
                status=EventStatus.PROCESSING.value,
                attempts=EventRow.attempts + 1,
                last_error=None,
                next_attempt_at=None,
                dead_lettered_at=None,
                claimed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            result = session.execute(stmt)
            if result.rowcount != 1:
                return None
            row = session.get(EventRow, event_id, populate_existing=True)
            return Event.model_validate(row, from_attributes=True)

    def _update_event(self, event_id: int, **values) -> None:
        stmt = (
            update(EventRow)
            .where(EventRow.id == event_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            if session.execute(stmt).rowcount == 0:
                raise NotFoundError(f"Event not found: {event_id}")

    def complete_event(self, event_id: int, now: datetime) -> None:
        self._update_event(event_id, status=EventStatus.DONE.value, processed_at=now)

    def fail_event(
        self,
        event_id: int,
        error: str,
        next_attempt_at: Optional[datetime],
        dead_lettered_at: Optional[datetime] = None,
    ) -> None:
        self._update_event(
            event_id,
            status=EventStatus.FAILED.value,
            last_error=error,
            next_attempt_at=next_attempt_at,
            dead_lettered_at=dead_lettered_at,
        )

    def reset_event(self, event_id: int) -> None:
        self._update_event(
            event_id,
            status=EventStatus.PENDING.value,
            next_attempt_at=None,
            dead_lettered_at=None,
        )

    # =========================================================================
    # Subscribers
    # =========================================================================

    def add_subscriber(self, subscriber: Subscriber) -> Subscriber:
        with self._transaction() as session:
            session.merge(SubscriberRow(
                id=subscriber.id,
                name=subscriber.name,
                email=subscriber.email,
                phone=subscriber.phone,
                preferences=subscriber.preferences.model_dump(mode="json", by_alias=True),
            ))
        return subscriber.model_copy()

    def get_subscriber(self, subscriber_id: str) -> Optional[Subscriber]:
        with self._transaction() as session:
            row = session.get(SubscriberRow, subscriber_id)
            return _to_subscriber(row) if row else None

    def list_subscribers(self, limit: int) -> list[Subscriber]:
        stmt = select(SubscriberRow).order_by(SubscriberRow.id).limit(limit)
        with self._transaction() as session:
            subscribers = [_to_subscriber(row) for row in session.scalars(stmt)]
        return [s for s in subscribers if s is not None]

    # =========================================================================
    # Anchors
    # =========================================================================

    def find_anchor(self, key: AnchorKey) -> Optional[Anchor]:
        stmt = select(AnchorRow).where(AnchorRow.natural_key == key.as_string())
        with self._transaction() as session:
            row = session.scalars(stmt).first()
            return Anchor.model_validate(row, from_attributes=True) if row else None

    def create_anchor(self, key: AnchorKey, now: datetime) -> Anchor:
        with self._transaction() as session:
            row = AnchorRow(
                natural_key=key.as_string(),
                subscriber_id=key.subscriber_id,
                kind=key.kind.value,
                channel=key.channel.value,
                target=key.target,
                send_mode=key.send_mode.value,
                digest_cadence=key.digest_cadence.value if key.digest_cadence else None,
                created_at=now,
            )
            session.add(row)
            session.flush()
            return Anchor.model_validate(row, from_attributes=True)

    def get_anchor(self, anchor_id: int) -> Optional[Anchor]:
        with self._transaction() as session:
            row = session.get(AnchorRow, anchor_id)
            return Anchor.model_validate(row, from_attributes=True) if row else None

    def touch_anchor(self, anchor_id: int, at: datetime) -> None:
        stmt = (
            update(AnchorRow)
            .where(AnchorRow.id == anchor_id)
            .values(last_triggered_at=at)
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            if session.execute(stmt).rowcount == 0:
                raise NotFoundError(f"Anchor not found: {anchor_id}")

    def touch_anchor_if(
        self, anchor_id: int, expected: Optional[datetime], at: Optional[datetime]
    ) -> bool:
        if expected is None:
            unchanged = AnchorRow.last_triggered_at.is_(None)
        else:
            unchanged = AnchorRow.last_triggered_at == expected
        stmt = (
            update(AnchorRow)
            .where(AnchorRow.id == anchor_id, unchanged)
            .values(last_triggered_at=at)
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            if session.execute(stmt).rowcount == 1:
                return True
            if session.get(AnchorRow, anchor_id) is None:
                raise NotFoundError(f"Anchor not found: {anchor_id}")
            return False

    def digest_anchor_ids_with_queued(self) -> list[int]:
        stmt = (
            select(AnchorRow.id)
            .join(DeliveryRow, DeliveryRow.anchor_id == AnchorRow.id)
            .where(
                AnchorRow.send_mode == SendMode.DIGEST.value,
                DeliveryRow.status == DeliveryStatus.QUEUED.value,
            )
            .distinct()
            .order_by(AnchorRow.id)
        )
        with self._transaction() as session:
            return list(session.scalars(stmt))

    # =========================================================================
    # Deliveries
    # =========================================================================

    def create_delivery(self, event_id: int, anchor_id: int, now: datetime) -> Delivery:
        with self._transaction() as session:
            row = DeliveryRow(
                event_id=event_id,
                anchor_id=anchor_id,
                status=DeliveryStatus.QUEUED.value,
                created_at=now,
            )
            session.add(row)
            session.flush()
            return Delivery.model_validate(row, from_attributes=True)

    def find_delivery(self, event_id: int, anchor_id: int) -> Optional[Delivery]:
        stmt = select(DeliveryRow).where(
            DeliveryRow.event_id == event_id, DeliveryRow.anchor_id == anchor_id
        )
        with self._transaction() as session:
            row = session.scalars(stmt).first()
            return Delivery.model_validate(row, from_attributes=True) if row else None

    def reopen_delivery(self, delivery_id: int) -> bool:
        return self.requeue_deliveries([delivery_id]) == 1

    def close_deliveries(
        self,
        delivery_ids: Iterable[int],
        status: DeliveryStatus,
        at: datetime,
        error: Optional[str] = None,
    ) -> int:
        ids = list(delivery_ids)
        if not ids:
            return 0
        values: dict[str, Any] = {"status": status.value, "error": error}
        if status == DeliveryStatus.SENT:
            values["sent_at"] = at
        stmt = (
            update(DeliveryRow)
            .where(
                DeliveryRow.id.in_(ids),
                DeliveryRow.status == DeliveryStatus.QUEUED.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            return session.execute(stmt).rowcount

    def requeue_deliveries(self, delivery_ids: Iterable[int]) -> int:
        ids = list(delivery_ids)
        if not ids:
            return 0
        stmt = (
            update(DeliveryRow)
            .where(
                DeliveryRow.id.in_(ids),
                DeliveryRow.status == DeliveryStatus.FAILED.value,
            )
            .values(status=DeliveryStatus.QUEUED.value, error=None)
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            return session.execute(stmt).rowcount

    def queued_deliveries(self, anchor_id: int, limit: int) -> list[Delivery]:
        stmt = (
            select(DeliveryRow)
            .where(
                DeliveryRow.anchor_id == anchor_id,
                DeliveryRow.status == DeliveryStatus.QUEUED.value,
            )
            .order_by(DeliveryRow.created_at.desc(), DeliveryRow.id.desc())
            .limit(limit)
        )
        with self._transaction() as session:
            return [
                Delivery.model_validate(row, from_attributes=True)
                for row in session.scalars(stmt)
            ]

    def list_deliveries(
        self, event_id: Optional[int] = None, anchor_id: Optional[int] = None
    ) -> list[Delivery]:
        stmt = select(DeliveryRow).order_by(DeliveryRow.id)
        if event_id is not None:
            stmt = stmt.where(DeliveryRow.event_id == event_id)
        if anchor_id is not None:
            stmt = stmt.where(DeliveryRow.anchor_id == anchor_id)
        with self._transaction() as session:
            return [
                Delivery.model_validate(row, from_attributes=True)
                for row in session.scalars(stmt)
            ]

    # =========================================================================
    # Dead letters
    # =========================================================================

    def add_dead_letter(
        self,
        subject_type: str,
        error: str,
        now: datetime,
        anchor_id: Optional[int] = None,
        event_id: Optional[int] = None,
        delivery_ids: Optional[list[int]] = None,
    ) -> DeadLetter:
        with self._transaction() as session:
            row = DeadLetterRow(
                subject_type=subject_type,
                anchor_id=anchor_id,
                event_id=event_id,
                delivery_ids=list(delivery_ids or []),
                error=error,
                created_at=now,
            )
            session.add(row)
            session.flush()
            return DeadLetter.model_validate(row, from_attributes=True)

    def get_dead_letter(self, dead_letter_id: int) -> Optional[DeadLetter]:
        with self._transaction() as session:
            row = session.get(DeadLetterRow, dead_letter_id)
            return DeadLetter.model_validate(row, from_attributes=True) if row else None

    def list_dead_letters(self, include_resolved: bool = False) -> list[DeadLetter]:
        stmt = select(DeadLetterRow).order_by(DeadLetterRow.id)
        if not include_resolved:
            stmt = stmt.where(DeadLetterRow.resolved_at.is_(None))
        with self._transaction() as session:
            return [
                DeadLetter.model_validate(row, from_attributes=True)
                for row in session.scalars(stmt)
            ]

    def resolve_dead_letter(self, dead_letter_id: int, at: datetime) -> None:
        stmt = (
            update(DeadLetterRow)
            .where(DeadLetterRow.id == dead_letter_id)
            .values(resolved_at=at)
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            if session.execute(stmt).rowcount == 0:
                raise NotFoundError(f"Dead letter not found: {dead_letter_id}")

    # =========================================================================
    # Run log
    # =========================================================================

    def start_run(self, kind: str, now: datetime) -> DispatchRun:
        with self._transaction() as session:
            row = DispatchRunRow(kind=kind, started_at=now)
            session.add(row)
            session.flush()
            return DispatchRun.model_validate(row, from_attributes=True)

    def finish_run(
        self,
        run_id: int,
        now: datetime,
        success: bool,
        processed_count: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        stmt = (
            update(DispatchRunRow)
            .where(DispatchRunRow.id == run_id)
            .values(
                finished_at=now,
                success=success,
                processed_count=processed_count,
                error=error,
            )
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            if session.execute(stmt).rowcount == 0:
                raise NotFoundError(f"Run not found: {run_id}")

    def latest_run(self, kind: Optional[str] = None) -> Optional[DispatchRun]:
        stmt = select(DispatchRunRow).order_by(DispatchRunRow.id.desc()).limit(1)
        if kind is not None:
            stmt = stmt.where(DispatchRunRow.kind == kind)
        with self._transaction() as session:
            row = session.scalars(stmt).first()
            return DispatchRun.model_validate(row, from_attributes=True) if row else None
