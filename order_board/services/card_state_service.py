from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.orm import Session

from order_board.db import insert_ignore
from order_board.models import CardState, CardStatus


class _Unset:
    def __repr__(self) -> str:
        return 'UNSET'


UNSET = _Unset()

_stamp_lock = threading.Lock()
_last_stamp: datetime | None = None


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_updated_at() -> datetime:
    """Wall-clock UTC time, bumped by a microsecond if it would not advance."""
    global _last_stamp
    with _stamp_lock:
        stamp = _now()
        if _last_stamp is not None and stamp <= _last_stamp:
            stamp = _last_stamp + timedelta(microseconds=1)
        _last_stamp = stamp
        return stamp


@dataclass(frozen=True)
class CardStatePatch:
    status: CardStatus | str | _Unset = UNSET
    assigned_to: str | None | _Unset = UNSET
    notes: str | None | _Unset = UNSET
    sort_order: int | _Unset = UNSET

    def is_empty(self) -> bool:
        return all(value is UNSET for value in (self.status, self.assigned_to, self.notes, self.sort_order))


@dataclass(frozen=True)
class ResolvedCardState:
    status: CardStatus = CardStatus.UNASSIGNED
    assigned_to: str | None = None
    assigned_by: str | None = None
    notes: str | None = None
    sort_order: int = 0
    updated_at: datetime | None = None


def with_defaults(state: CardState | None) -> ResolvedCardState:
    if state is None:
        return ResolvedCardState()
    return ResolvedCardState(
        status=CardStatus(state.status),
        assigned_to=state.assigned_to,
        assigned_by=state.assigned_by,
        notes=state.notes,
        sort_order=state.sort_order or 0,
        updated_at=as_utc(state.updated_at) if state.updated_at else None,
    )


def validate_patch(patch: CardStatePatch) -> None:
    if patch.status is not UNSET:
        try:
            CardStatus(patch.status)
        except ValueError as exc:
            raise ValueError(f'Invalid status: {patch.status}') from exc
    if patch.sort_order is not UNSET:
        if isinstance(patch.sort_order, bool) or not isinstance(patch.sort_order, int):
            raise ValueError('Sort order must be an integer')
        if patch.sort_order < 0:
            raise ValueError('Sort order cannot be negative')


def upsert_card_state(
    db: Session,
    *,
    tenant_id: str,
    card_id: str,
    delivery_date: str,
    patch: CardStatePatch,
    actor: str | None = None,
) -> CardState:
    """Apply ``patch`` to the overlay row for one card.

    Fields left UNSET keep whatever the stored row holds. The row is created
    with defaults when absent and then locked, so the read-merge-write runs
    inside the caller's transaction without losing a concurrent writer's
    fields. The caller commits.
    """
    if not card_id:
        raise ValueError('Card id is required')
    validate_patch(patch)

    insert_ignore(
        db,
        CardState,
        {
            'tenant_id': tenant_id,
            'card_id': card_id,
            'delivery_date': delivery_date,
            'status': CardStatus.UNASSIGNED,
            'sort_order': 0,
            'updated_at': next_updated_at(),
        },
        index_elements=['tenant_id', 'card_id', 'delivery_date'],
    )
    state = db.execute(
        select(CardState)
        .where(
            CardState.tenant_id == tenant_id,
            CardState.card_id == card_id,
            CardState.delivery_date == delivery_date,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()

    if patch.status is not UNSET:
        state.status = CardStatus(patch.status)
    if patch.assigned_to is not UNSET:
        state.assigned_to = patch.assigned_to
        state.assigned_by = actor
    if patch.notes is not UNSET:
        state.notes = patch.notes
    if patch.sort_order is not UNSET:
        state.sort_order = patch.sort_order
    state.updated_at = next_updated_at()
    db.flush()
    return state


def get_card_state(db: Session, *, tenant_id: str, card_id: str, delivery_date: str) -> CardState | None:
    return db.execute(
        select(CardState).where(
            CardState.tenant_id == tenant_id,
            CardState.card_id == card_id,
            CardState.delivery_date == delivery_date,
        )
    ).scalar_one_or_none()


def get_all_for_date(db: Session, *, tenant_id: str, delivery_date: str) -> dict[str, CardState]:
    rows = db.execute(
        select(CardState).where(CardState.tenant_id == tenant_id, CardState.delivery_date == delivery_date)
    ).scalars().all()
    return {row.card_id: row for row in rows}


def get_changed_since(
    db: Session,
    *,
    tenant_id: str,
    floor: datetime,
    after: tuple[datetime, int] | None = None,
    limit: int = 200,
) -> list[CardState]:
    """Rows written after ``floor``, oldest first.

    ``after`` is the ``(updated_at, id)`` of the last row of a previous page;
    rows at or before it are skipped.
    """
    stmt = select(CardState).where(CardState.tenant_id == tenant_id, CardState.updated_at > floor)
    if after is not None:
        after_updated_at, after_id = after
        stmt = stmt.where(
            or_(
                CardState.updated_at > after_updated_at,
                and_(CardState.updated_at == after_updated_at, CardState.id > after_id),
            )
        )
    return db.execute(
        stmt.order_by(CardState.updated_at.asc(), CardState.id.asc()).limit(limit)
    ).scalars().all()


def clear_card_states_for_date(db: Session, *, tenant_id: str, delivery_date: str) -> int:
    result = db.execute(
        delete(CardState).where(CardState.tenant_id == tenant_id, CardState.delivery_date == delivery_date)
    )
    return result.rowcount or 0
