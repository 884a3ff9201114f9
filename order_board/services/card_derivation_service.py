from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from order_board.models import LabelCategory
from order_board.services.classification_rules import (
    ItemKind,
    LineItemContext,
    best_label,
    classify_line_item,
    consolidated_display_title,
    extract_time_slot,
    is_pickup_order,
    is_wedding_product,
)
from order_board.services.label_index import DEFAULT_LABEL_PRIORITY, LabelIndex, ProductLabel, normalize_upstream_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TopUpItem:
    title: str
    variant_title: str | None
    quantity: int
    price: Decimal | None
    line_item_id: str
    product_id: str | None = None
    variant_id: str | None = None


@dataclass
class Card:
    card_id: str
    upstream_order_id: str
    line_item_id: str
    unit_index: int
    product_title: str
    variant_title: str | None
    price: Decimal | None
    store_id: int | None
    delivery_date: str
    order_name: str | None = None
    customer_name: str | None = None
    product_id: str | None = None
    variant_id: str | None = None
    tags: tuple[str, ...] = ()
    is_add_on: bool = False
    is_wedding_product: bool = False
    is_express_order: bool = False
    express_time_slot: str | None = None
    is_pickup_order: bool = False
    difficulty_label: str | None = None
    difficulty_priority: int = DEFAULT_LABEL_PRIORITY
    product_type_label: str | None = None
    product_type_priority: int = DEFAULT_LABEL_PRIORITY
    top_up_items: list[TopUpItem] = field(default_factory=list)


@dataclass
class DerivedCards:
    main_cards: list[Card]
    add_on_cards: list[Card]

    @property
    def all_cards(self) -> list[Card]:
        return [*self.main_cards, *self.add_on_cards]


@dataclass(frozen=True)
class _LineItem:
    line_item_id: str
    product_id: str | None
    variant_id: str | None
    title: str
    variant_title: str | None
    quantity: int
    price: Decimal | None


@dataclass(frozen=True)
class _OrderSignals:
    is_express_order: bool
    express_time_slot: str | None
    is_pickup_order: bool


def card_id_for(upstream_order_id: str, line_item_id: str, unit_index: int) -> str:
    return f'{upstream_order_id}-{line_item_id}-{unit_index}'


def _parse_price(value) -> Decimal | None:
    if value is None or value == '':
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _parse_quantity(value) -> int:
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        return 1
    return max(quantity, 1)


def _line_item_from_raw(raw: dict, position: int) -> _LineItem:
    product_id = normalize_upstream_id(raw.get('product_id'))
    variant_id = normalize_upstream_id(raw.get('variant_id'))
    line_item_id = normalize_upstream_id(raw.get('id')) or f'item{position}'
    return _LineItem(
        line_item_id=line_item_id,
        product_id=product_id,
        variant_id=variant_id,
        title=str(raw.get('title') or raw.get('name') or ''),
        variant_title=raw.get('variant_title') or None,
        quantity=_parse_quantity(raw.get('quantity', 1)),
        price=_parse_price(raw.get('price')),
    )


def _build_card(
    order,
    item: _LineItem,
    labels: tuple[ProductLabel, ...],
    signals: _OrderSignals,
    *,
    unit_index: int,
    is_add_on: bool,
    product_title: str | None = None,
) -> Card:
    difficulty = best_label(labels, LabelCategory.DIFFICULTY)
    product_type = best_label(labels, LabelCategory.PRODUCT_TYPE)
    upstream_order_id = str(order.upstream_order_id)
    return Card(
        card_id=card_id_for(upstream_order_id, item.line_item_id, unit_index),
        upstream_order_id=upstream_order_id,
        line_item_id=item.line_item_id,
        unit_index=unit_index,
        product_title=product_title if product_title is not None else item.title,
        variant_title=item.variant_title,
        price=item.price,
        store_id=order.store_id,
        delivery_date=order.delivery_date,
        order_name=getattr(order, 'order_name', None),
        customer_name=getattr(order, 'customer_name', None),
        product_id=item.product_id,
        variant_id=item.variant_id,
        tags=tuple(order.tags or ()),
        is_add_on=is_add_on,
        is_wedding_product=is_wedding_product(labels),
        is_express_order=signals.is_express_order,
        express_time_slot=signals.express_time_slot,
        is_pickup_order=signals.is_pickup_order,
        difficulty_label=difficulty.name if difficulty else None,
        difficulty_priority=difficulty.priority if difficulty else DEFAULT_LABEL_PRIORITY,
        product_type_label=product_type.name if product_type else None,
        product_type_priority=product_type.priority if product_type else DEFAULT_LABEL_PRIORITY,
    )


def derive_cards(order, labels: LabelIndex) -> DerivedCards:
    """Expand one order into per-unit cards.

    Express line items only contribute their time slot, consolidated extras
    (top-ups, corsages, boutonnieres) ride along on every main card, and an
    order made only of extras still gets one card so it stays on the board.
    """
    items = [_line_item_from_raw(raw, position) for position, raw in enumerate(order.line_items or [])]

    is_express = False
    express_slot: str | None = None
    remaining: list[tuple[_LineItem, tuple[ProductLabel, ...], ItemKind]] = []
    for item in items:
        item_labels = tuple(labels.lookup(item.product_id, item.variant_id))
        kind = classify_line_item(LineItemContext(item.title, item.variant_title, item_labels))
        if kind is ItemKind.EXPRESS:
            is_express = True
            express_slot = express_slot or extract_time_slot(item.variant_title, item.title)
            continue
        remaining.append((item, item_labels, kind))

    signals = _OrderSignals(
        is_express_order=is_express,
        express_time_slot=express_slot,
        is_pickup_order=is_pickup_order(order.tags or ()),
    )

    main_cards: list[Card] = []
    add_on_cards: list[Card] = []
    extras: list[tuple[_LineItem, tuple[ProductLabel, ...]]] = []
    for item, item_labels, kind in remaining:
        if kind is ItemKind.CONSOLIDATED:
            extras.append((item, item_labels))
            continue
        if item.product_id is None and item.variant_id is None:
            logger.warning(
                'Line item %s on order %s has no product or variant id; rendering with unknown classification',
                item.line_item_id,
                order.upstream_order_id,
            )
        target = add_on_cards if kind is ItemKind.ADD_ON else main_cards
        for unit_index in range(item.quantity):
            target.append(
                _build_card(order, item, item_labels, signals, unit_index=unit_index, is_add_on=kind is ItemKind.ADD_ON)
            )

    top_up_items = [
        TopUpItem(
            title=consolidated_display_title(item.title, item.variant_title),
            variant_title=item.variant_title,
            quantity=item.quantity,
            price=item.price,
            line_item_id=item.line_item_id,
            product_id=item.product_id,
            variant_id=item.variant_id,
        )
        for item, _ in extras
    ]

    if main_cards:
        for card in main_cards:
            card.top_up_items = list(top_up_items)
    elif extras:
        item, item_labels = extras[0]
        fallback = _build_card(
            order,
            item,
            item_labels,
            signals,
            unit_index=0,
            is_add_on=False,
            product_title=top_up_items[0].title,
        )
        fallback.top_up_items = top_up_items[1:]
        main_cards.append(fallback)

    return DerivedCards(main_cards=main_cards, add_on_cards=add_on_cards)
