"""Polling change feed over the card state overlay.

Each live subscriber owns its checkpoint and a window of already delivered
``(card_id, updated_at)`` pairs; nothing is shared between subscribers
except the database. Every poll pages through all rows above the query
floor, so a burst larger than one page is still delivered, and each pair
is delivered once per subscriber. Clients still de-duplicate across
reconnects.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from order_board.config import Settings, settings
from order_board.models import CardState
from order_board.services.card_state_service import as_utc, get_changed_since

logger = logging.getLogger(__name__)

EVENT_CONNECTED = 'connected'
EVENT_ORDER_UPDATE = 'order_update'
EVENT_HEARTBEAT = 'heartbeat'
EVENT_ERROR = 'error'


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _iso(value: datetime) -> str:
    return as_utc(value).isoformat()


@dataclass(frozen=True)
class CardChange:
    card_id: str
    delivery_date: str
    status: str
    assigned_to: str | None
    assigned_by: str | None
    notes: str | None
    sort_order: int
    updated_at: datetime

    @classmethod
    def from_state(cls, state: CardState) -> CardChange:
        return cls(
            card_id=state.card_id,
            delivery_date=state.delivery_date,
            status=state.status.value if hasattr(state.status, 'value') else str(state.status),
            assigned_to=state.assigned_to,
            assigned_by=state.assigned_by,
            notes=state.notes,
            sort_order=state.sort_order or 0,
            updated_at=as_utc(state.updated_at),
        )

    @property
    def dedupe_key(self) -> tuple[str, str]:
        return self.card_id, _iso(self.updated_at)

    def payload(self) -> dict:
        return {
            'cardId': self.card_id,
            'deliveryDate': self.delivery_date,
            'status': self.status,
            'assignedTo': self.assigned_to,
            'assignedBy': self.assigned_by,
            'notes': self.notes,
            'sortOrder': self.sort_order,
            'updatedAt': _iso(self.updated_at),
        }


class DedupeWindow:
    """Recently delivered ``(card_id, updated_at)`` keys.

    Holds ``max_size`` keys, except that keys newer than the current query
    floor are never evicted: the next poll can still return those rows, so
    forgetting them would deliver a large burst twice. Keys at or below the
    floor can no longer come back and are pruned.
    """

    def __init__(self, max_size: int = 100) -> None:
        if max_size <= 0:
            raise ValueError('Dedupe window size must be greater than zero')
        self.max_size = max_size
        self._seen: OrderedDict[tuple[str, str], datetime | None] = OrderedDict()
        self._floor: datetime | None = None

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def _in_window(self, updated_at: datetime | None) -> bool:
        return updated_at is not None and self._floor is not None and updated_at > self._floor

    def prune(self, floor: datetime) -> None:
        self._floor = as_utc(floor)
        for key, updated_at in list(self._seen.items()):
            if updated_at is not None and not self._in_window(updated_at):
                del self._seen[key]

    def add(self, key: tuple[str, str], updated_at: datetime | None = None) -> bool:
        """Record ``key``; False when it was already present."""
        if key in self._seen:
            self._seen.move_to_end(key)
            return False
        self._seen[key] = as_utc(updated_at) if updated_at is not None else None
        while len(self._seen) > self.max_size:
            oldest_key = next(iter(self._seen))
            if self._in_window(self._seen[oldest_key]):
                break
            del self._seen[oldest_key]
        return True


@dataclass(frozen=True)
class ChangeBatch:
    changes: list[CardChange]
    checkpoint: datetime
    window_start: datetime

    def payload(self) -> dict:
        return {
            'changes': [change.payload() for change in self.changes],
            'count': len(self.changes),
            'checkpoint': _iso(self.checkpoint),
            'queryWindow': {'from': _iso(self.window_start), 'to': _iso(self.checkpoint)},
        }


@dataclass(frozen=True)
class FeedEvent:
    event: str
    data: dict


def change_window_floor(
    checkpoint: datetime,
    now: datetime,
    *,
    lookback: timedelta,
    clock_skew: timedelta,
) -> datetime:
    return max(as_utc(checkpoint) - clock_skew, as_utc(now) - lookback)


def collect_changes(
    db: Session,
    *,
    tenant_id: str,
    since: datetime | None,
    seen: DedupeWindow | None,
    now: datetime,
    lookback: timedelta,
    clock_skew: timedelta,
    limit: int,
) -> ChangeBatch:
    """Every change in the window, oldest first, minus those in ``seen``.

    ``limit`` is the page size; pages are read until a short one so a burst
    larger than a page is still delivered in full.
    """
    if limit <= 0:
        raise ValueError('Change page size must be greater than zero')
    floor = change_window_floor(since or (now - lookback), now, lookback=lookback, clock_skew=clock_skew)
    seen = seen if seen is not None else DedupeWindow()
    seen.prune(floor)

    changes: list[CardChange] = []
    after: tuple[datetime, int] | None = None
    while True:
        rows = get_changed_since(db, tenant_id=tenant_id, floor=floor, after=after, limit=limit)
        for row in rows:
            change = CardChange.from_state(row)
            if seen.add(change.dedupe_key, change.updated_at):
                changes.append(change)
        if len(rows) < limit:
            break
        after = (rows[-1].updated_at, rows[-1].id)
    return ChangeBatch(changes=changes, checkpoint=now, window_start=floor)


def format_sse(event: FeedEvent) -> str:
    return f'event: {event.event}\ndata: {json.dumps(event.data, default=str)}\n\n'


class ChangeFeedSubscriber:
    def __init__(
        self,
        *,
        tenant_id: str,
        session_factory: sessionmaker,
        poll_interval: float = 3.0,
        lookback: timedelta = timedelta(minutes=3),
        clock_skew: timedelta = timedelta(seconds=2),
        dedupe_size: int = 100,
        max_rows: int = 200,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.tenant_id = tenant_id
        self.poll_interval = poll_interval
        self.lookback = lookback
        self.clock_skew = clock_skew
        self.max_rows = max_rows
        self._session_factory = session_factory
        self._clock = clock
        self._seen = DedupeWindow(dedupe_size)
        self.checkpoint = clock()

    @classmethod
    def from_settings(
        cls,
        *,
        tenant_id: str,
        session_factory: sessionmaker,
        config: Settings = settings,
    ) -> ChangeFeedSubscriber:
        return cls(
            tenant_id=tenant_id,
            session_factory=session_factory,
            poll_interval=config.change_feed_poll_interval_seconds,
            lookback=timedelta(seconds=config.change_feed_lookback_seconds),
            clock_skew=timedelta(seconds=config.change_feed_clock_skew_seconds),
            dedupe_size=config.change_feed_dedupe_size,
            max_rows=config.change_feed_max_rows,
        )

    def connected_event(self) -> FeedEvent:
        return FeedEvent(
            EVENT_CONNECTED,
            {
                'type': EVENT_CONNECTED,
                'message': 'Change feed connected',
                'checkpoint': _iso(self.checkpoint),
                'timestamp': _iso(self._clock()),
            },
        )

    def poll_once(self) -> list[FeedEvent]:
        now = self._clock()
        with self._session_factory() as db:
            batch = collect_changes(
                db,
                tenant_id=self.tenant_id,
                since=self.checkpoint,
                seen=self._seen,
                now=now,
                lookback=self.lookback,
                clock_skew=self.clock_skew,
                limit=self.max_rows,
            )
        self.checkpoint = batch.checkpoint
        checkpoint = _iso(batch.checkpoint)
        if not batch.changes:
            return [FeedEvent(EVENT_HEARTBEAT, {'type': EVENT_HEARTBEAT, 'checkpoint': checkpoint, 'timestamp': checkpoint})]
        return [
            FeedEvent(
                EVENT_ORDER_UPDATE,
                {'type': EVENT_ORDER_UPDATE, **change.payload(), 'checkpoint': checkpoint, 'timestamp': checkpoint},
            )
            for change in batch.changes
        ]

    def error_event(self) -> FeedEvent:
        return FeedEvent(
            EVENT_ERROR,
            {
                'type': EVENT_ERROR,
                'message': 'Failed to fetch card state changes',
                'checkpoint': _iso(self.checkpoint),
                'timestamp': _iso(self._clock()),
            },
        )

    async def events(self) -> AsyncIterator[FeedEvent]:
        yield self.connected_event()
        while True:
            try:
                batch = await run_in_threadpool(self.poll_once)
            except Exception:
                logger.exception('Change feed poll failed for tenant %s', self.tenant_id)
                batch = [self.error_event()]
            for event in batch:
                yield event
            await asyncio.sleep(self.poll_interval)
