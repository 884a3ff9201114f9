from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.orm import Session

from order_board.db import insert_ignore
from order_board.models import UNSCHEDULED_DATE, Order
from order_board.services.label_index import normalize_upstream_id

logger = logging.getLogger(__name__)

_DELIVERY_DATE_TAG = re.compile(r'^\d{2}/\d{2}/\d{4}$')


@dataclass(frozen=True)
class NormalizedOrder:
    upstream_order_id: str
    order_name: str | None
    customer_name: str
    customer_email: str | None
    delivery_date: str
    notes: str | None
    tags: list[str]
    total_price: Decimal | None
    currency: str | None
    line_items: list[dict]


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def split_tags(raw) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        parts = raw.split(',')
    else:
        parts = [str(part) for part in raw]
    return [part.strip() for part in parts if part and part.strip()]


def extract_delivery_date(tags: list[str]) -> str:
    for tag in tags:
        if _DELIVERY_DATE_TAG.match(tag):
            return tag
    return UNSCHEDULED_DATE


def normalize_delivery_date(value: str | None) -> str:
    raw = (value or '').strip()
    if raw.lower() == UNSCHEDULED_DATE:
        return UNSCHEDULED_DATE
    candidate = raw.replace('-', '/')
    if not _DELIVERY_DATE_TAG.match(candidate):
        raise ValueError('Date must be in dd/mm/yyyy format')
    return candidate


def _decimal_or_none(value) -> Decimal | None:
    if value is None or value == '':
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _normalize_line_item(raw: dict) -> dict:
    quantity = raw.get('quantity')
    try:
        quantity = max(int(quantity), 1)
    except (TypeError, ValueError):
        quantity = 1
    price = _decimal_or_none(raw.get('price'))
    return {
        'id': normalize_upstream_id(raw.get('id')),
        'product_id': normalize_upstream_id(raw.get('product_id')),
        'variant_id': normalize_upstream_id(raw.get('variant_id')),
        'title': str(raw.get('title') or raw.get('name') or ''),
        'variant_title': raw.get('variant_title') or None,
        'quantity': quantity,
        'price': str(price) if price is not None else None,
    }


def normalize_order_payload(payload) -> NormalizedOrder:
    if not isinstance(payload, dict):
        raise ValueError('Invalid order data')
    upstream_id = payload.get('id')
    if upstream_id is None or str(upstream_id).strip() == '':
        raise ValueError('Order id is required')
    line_items = payload.get('line_items')
    if not isinstance(line_items, list):
        raise ValueError('Order line items are required')
    if any(not isinstance(item, dict) for item in line_items):
        raise ValueError('Order line items must be objects')

    customer = payload.get('customer') or {}
    customer_name = f"{customer.get('first_name') or ''} {customer.get('last_name') or ''}".strip() or 'N/A'
    tags = split_tags(payload.get('tags'))
    return NormalizedOrder(
        upstream_order_id=normalize_upstream_id(upstream_id) or str(upstream_id).strip(),
        order_name=payload.get('name'),
        customer_name=customer_name,
        customer_email=customer.get('email') or payload.get('email'),
        delivery_date=extract_delivery_date(tags),
        notes=payload.get('note'),
        tags=tags,
        total_price=_decimal_or_none(payload.get('total_price')),
        currency=payload.get('currency'),
        line_items=[_normalize_line_item(item) for item in line_items],
    )


def ingest_order(db: Session, *, tenant_id: str, store_id: int | None, payload: dict) -> tuple[Order, bool]:
    """Create or refresh the order row for ``payload``.

    Keyed on (tenant, upstream order id) so webhook retries update the same
    row. Raises ValueError before touching the database when the payload is
    malformed. The caller commits.
    """
    normalized = normalize_order_payload(payload)
    now = _now()
    created = insert_ignore(
        db,
        Order,
        {
            'tenant_id': tenant_id,
            'upstream_order_id': normalized.upstream_order_id,
            'customer_name': normalized.customer_name,
            'delivery_date': normalized.delivery_date,
            'tags': [],
            'line_items': [],
            'raw_snapshot': {},
            'created_at': now,
            'updated_at': now,
        },
        index_elements=['tenant_id', 'upstream_order_id'],
    )
    order = db.execute(
        select(Order)
        .where(Order.tenant_id == tenant_id, Order.upstream_order_id == normalized.upstream_order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()

    order.store_id = store_id
    order.order_name = normalized.order_name
    order.customer_name = normalized.customer_name
    order.customer_email = normalized.customer_email
    order.delivery_date = normalized.delivery_date
    order.notes = normalized.notes
    order.tags = normalized.tags
    order.total_price = normalized.total_price
    order.currency = normalized.currency
    order.line_items = normalized.line_items
    order.raw_snapshot = payload
    order.updated_at = now
    db.flush()

    logger.info(
        '%s order %s for tenant %s (delivery %s, %d line items)',
        'Created' if created else 'Updated',
        normalized.upstream_order_id,
        tenant_id,
        normalized.delivery_date,
        len(normalized.line_items),
    )
    return order, created
