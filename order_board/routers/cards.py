from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from order_board.auth import ADMIN_ROLES, Principal, require_role
from order_board.config import settings
from order_board.db import get_db
from order_board.dependencies import get_client_ip, tenant_editor, tenant_principal
from order_board.schemas import (
    BulkUpdateRequest,
    CardStateUpdateRequest,
    ClearByDateRequest,
    ReorderRequest,
    board_payload,
    bulk_result_payload,
    card_state_payload,
)
from order_board.services.audit_service import log_audit
from order_board.services.board_service import build_board
from order_board.services.bulk_mutation_service import bulk_status_update, reorder_cards
from order_board.services.card_state_service import clear_card_states_for_date, upsert_card_state
from order_board.services.change_feed_service import collect_changes
from order_board.services.order_ingestion_service import normalize_delivery_date

router = APIRouter(prefix='/api/tenants/{tenant_id}', tags=['cards'])

# An unencoded '+' in a query string arrives as a space.
_SPACED_OFFSET = re.compile(r'(\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?) (\d{2}:?\d{2})$')


def _delivery_date(value: str | None) -> str:
    try:
        return normalize_delivery_date(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _parse_since(value: str | None) -> datetime | None:
    if not value:
        return None
    raw = value.strip()
    if raw.endswith('Z'):
        raw = raw[:-1] + '+00:00'
    raw = _SPACED_OFFSET.sub(r'\1+\2', raw)
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail='Invalid since timestamp; use ISO 8601 such as 2025-06-22T12:00:00Z',
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@router.get('/cards')
def list_cards(
    tenant_id: str,
    date: str = Query(...),
    principal: Principal = Depends(tenant_principal),
    db: Session = Depends(get_db),
):
    board = build_board(db, tenant_id=tenant_id, delivery_date=_delivery_date(date))
    return board_payload(board)


@router.put('/card-state/{card_id}')
def update_card_state(
    tenant_id: str,
    card_id: str,
    body: CardStateUpdateRequest,
    request: Request,
    principal: Principal = Depends(tenant_editor),
    db: Session = Depends(get_db),
):
    delivery_date = _delivery_date(body.delivery_date)
    patch = body.to_patch()
    if patch.is_empty():
        raise HTTPException(status_code=400, detail='No fields to update')

    try:
        state = upsert_card_state(
            db,
            tenant_id=tenant_id,
            card_id=card_id,
            delivery_date=delivery_date,
            patch=patch,
            actor=principal.username,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        tenant_id=tenant_id,
        actor_principal_id=principal.id,
        action='CARD_STATE_UPDATED',
        ip=get_client_ip(request),
        metadata={'card_id': card_id, 'delivery_date': delivery_date, 'fields': sorted(body.model_fields_set)},
    )
    db.commit()
    return card_state_payload(state)


@router.post('/card-state/bulk')
def bulk_update_card_states(
    tenant_id: str,
    body: BulkUpdateRequest,
    request: Request,
    principal: Principal = Depends(tenant_editor),
    db: Session = Depends(get_db),
):
    delivery_date = _delivery_date(body.delivery_date)
    results = bulk_status_update(
        db,
        tenant_id=tenant_id,
        delivery_date=delivery_date,
        updates=[entry.to_item() for entry in body.updates],
        actor=principal.username,
    )
    success_count = sum(1 for result in results if result.success)

    log_audit(
        db,
        tenant_id=tenant_id,
        actor_principal_id=principal.id,
        action='CARD_STATES_BULK_UPDATED',
        ip=get_client_ip(request),
        metadata={'delivery_date': delivery_date, 'requested': len(results), 'succeeded': success_count},
    )
    db.commit()
    return {
        'results': [bulk_result_payload(result) for result in results],
        'successCount': success_count,
        'failureCount': len(results) - success_count,
    }


@router.post('/card-state/clear-by-date', dependencies=[Depends(require_role(*ADMIN_ROLES))])
def clear_card_states(
    tenant_id: str,
    body: ClearByDateRequest,
    request: Request,
    principal: Principal = Depends(tenant_principal),
    db: Session = Depends(get_db),
):
    delivery_date = _delivery_date(body.delivery_date)
    deleted = clear_card_states_for_date(db, tenant_id=tenant_id, delivery_date=delivery_date)

    log_audit(
        db,
        tenant_id=tenant_id,
        actor_principal_id=principal.id,
        action='CARD_STATES_CLEARED',
        ip=get_client_ip(request),
        metadata={'delivery_date': delivery_date, 'deleted': deleted},
    )
    db.commit()
    return {'success': True, 'deletedCount': deleted}


@router.get('/card-state/changes')
def card_state_changes(
    tenant_id: str,
    since: str | None = Query(default=None),
    principal: Principal = Depends(tenant_principal),
    db: Session = Depends(get_db),
):
    batch = collect_changes(
        db,
        tenant_id=tenant_id,
        since=_parse_since(since),
        seen=None,
        now=datetime.now(tz=timezone.utc),
        lookback=timedelta(seconds=settings.change_feed_lookback_seconds),
        clock_skew=timedelta(seconds=settings.change_feed_clock_skew_seconds),
        limit=settings.change_feed_max_rows,
    )
    return batch.payload()


@router.post('/orders/reorder')
def reorder(
    tenant_id: str,
    body: ReorderRequest,
    request: Request,
    principal: Principal = Depends(tenant_editor),
    db: Session = Depends(get_db),
):
    delivery_date = _delivery_date(body.delivery_date)
    try:
        count = reorder_cards(
            db,
            tenant_id=tenant_id,
            delivery_date=delivery_date,
            ordered_card_ids=body.ordered_card_ids,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        tenant_id=tenant_id,
        actor_principal_id=principal.id,
        action='CARDS_REORDERED',
        ip=get_client_ip(request),
        metadata={'delivery_date': delivery_date, 'count': count},
    )
    db.commit()
    return {'success': True, 'count': count}
