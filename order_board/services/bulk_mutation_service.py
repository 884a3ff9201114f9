from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from order_board.models import CardState
from order_board.services.card_state_service import CardStatePatch, upsert_card_state, validate_patch

logger = logging.getLogger(__name__)

REORDER_STEP = 10


@dataclass(frozen=True)
class BulkUpdateItem:
    card_id: str
    patch: CardStatePatch


@dataclass(frozen=True)
class BulkItemResult:
    card_id: str
    success: bool
    state: CardState | None = None
    error: str | None = None


def reorder_cards(db: Session, *, tenant_id: str, delivery_date: str, ordered_card_ids: list[str]) -> int:
    """Give each card ``sort_order = (position + 1) * 10``.

    Only ``sort_order`` is written; status, assignment and notes stay as
    stored, and the move is not attributed to anyone. A card listed twice
    keeps its first position. The caller commits.
    """
    seen: set[str] = set()
    position = 0
    for card_id in ordered_card_ids:
        if not card_id or card_id in seen:
            continue
        seen.add(card_id)
        position += 1
        upsert_card_state(
            db,
            tenant_id=tenant_id,
            card_id=card_id,
            delivery_date=delivery_date,
            patch=CardStatePatch(sort_order=position * REORDER_STEP),
        )
    return position


def _apply_one(db: Session, *, tenant_id: str, delivery_date: str, item: BulkUpdateItem, actor: str | None) -> CardState:
    return upsert_card_state(
        db,
        tenant_id=tenant_id,
        card_id=item.card_id,
        delivery_date=delivery_date,
        patch=item.patch,
        actor=actor,
    )


def bulk_status_update(
    db: Session,
    *,
    tenant_id: str,
    delivery_date: str,
    updates: list[BulkUpdateItem],
    actor: str | None = None,
) -> list[BulkItemResult]:
    """Apply many card patches, reporting success or failure per item.

    Valid items are written and committed as one batch. If that batch fails
    in the database, each item is retried in its own transaction so a single
    bad row cannot block the rest.
    """
    results: dict[int, BulkItemResult] = {}
    valid: list[tuple[int, BulkUpdateItem]] = []
    for position, item in enumerate(updates):
        if not item.card_id:
            results[position] = BulkItemResult(card_id=item.card_id, success=False, error='Card id is required')
        elif item.patch.is_empty():
            results[position] = BulkItemResult(card_id=item.card_id, success=False, error='No fields to update')
        else:
            try:
                validate_patch(item.patch)
            except ValueError as exc:
                results[position] = BulkItemResult(card_id=item.card_id, success=False, error=str(exc))
            else:
                valid.append((position, item))

    try:
        for position, item in valid:
            state = _apply_one(db, tenant_id=tenant_id, delivery_date=delivery_date, item=item, actor=actor)
            results[position] = BulkItemResult(card_id=item.card_id, success=True, state=state)
        db.commit()
    except (SQLAlchemyError, ValueError) as exc:
        db.rollback()
        logger.warning('Bulk update batch failed for tenant %s, retrying per item: %s', tenant_id, exc)
        for position, item in valid:
            try:
                state = _apply_one(db, tenant_id=tenant_id, delivery_date=delivery_date, item=item, actor=actor)
                db.commit()
            except (SQLAlchemyError, ValueError) as item_exc:
                db.rollback()
                results[position] = BulkItemResult(card_id=item.card_id, success=False, error=str(item_exc))
            else:
                results[position] = BulkItemResult(card_id=item.card_id, success=True, state=state)

    return [results[position] for position in range(len(updates))]
