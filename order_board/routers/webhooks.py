from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from order_board.db import get_db
from order_board.dependencies import get_client_ip
from order_board.models import Store
from order_board.services.audit_service import log_audit
from order_board.services.order_ingestion_service import ingest_order

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/webhooks', tags=['webhooks'])


@router.post('/orders/{tenant_id}/{store_id}')
async def order_webhook(
    tenant_id: str,
    store_id: int,
    request: Request,
    db: Session = Depends(get_db),
):
    store_exists = db.execute(
        select(Store.id).where(Store.id == store_id, Store.tenant_id == tenant_id)
    ).scalar_one_or_none()
    if not store_exists:
        raise HTTPException(status_code=404, detail='Store not found')

    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail='Invalid order data') from exc

    try:
        order, created = ingest_order(db, tenant_id=tenant_id, store_id=store_id, payload=payload)
    except ValueError as exc:
        logger.warning('Rejected order webhook for tenant %s store %s: %s', tenant_id, store_id, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        tenant_id=tenant_id,
        actor_principal_id=None,
        action='ORDER_INGESTED',
        ip=get_client_ip(request),
        metadata={'upstream_order_id': order.upstream_order_id, 'created': created, 'store_id': store_id},
    )
    db.commit()
    return {
        'success': True,
        'orderId': order.id,
        'created': created,
        'deliveryDate': order.delivery_date,
    }
