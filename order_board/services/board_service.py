from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from order_board.models import CardState, Order, Store
from order_board.services.card_derivation_service import Card, derive_cards
from order_board.services.card_state_service import ResolvedCardState, get_all_for_date, with_defaults
from order_board.services.classification_rules import TIME_WINDOW_ORDER, TimeWindow, time_window_for
from order_board.services.label_index import LabelIndex, load_label_index
from order_board.services.sort_utils import sort_board_cards

UNKNOWN_STORE = 'Unknown Store'


@dataclass(frozen=True)
class BoardCard:
    card: Card
    state: ResolvedCardState
    store_id: int | None
    store_name: str
    time_window: TimeWindow


@dataclass
class TimeWindowBucket:
    window: TimeWindow
    cards: list[BoardCard] = field(default_factory=list)


@dataclass
class StoreContainer:
    store_id: int | None
    store_name: str
    windows: list[TimeWindowBucket] = field(default_factory=list)


@dataclass
class BoardView:
    delivery_date: str
    cards: list[BoardCard]
    main_cards: list[BoardCard]
    add_on_cards: list[BoardCard]
    containers: list[StoreContainer]


def _ordered_stores(stores: Sequence) -> list:
    return sorted(stores, key=lambda store: (store.created_at, store.id))


def resolve_store(store_id: int | None, order_name: str | None, stores: Sequence):
    if store_id is not None:
        for store in stores:
            if store.id == store_id:
                return store
    name = (order_name or '').lstrip('#').strip().lower()
    if name:
        candidates = [store for store in stores if store.order_name_prefix]
        for store in sorted(candidates, key=lambda store: len(store.order_name_prefix), reverse=True):
            if name.startswith(store.order_name_prefix.lower()):
                return store
    return None


def resolve_store_name(store_id: int | None, order_name: str | None, stores: Sequence) -> str:
    store = resolve_store(store_id, order_name, stores)
    return store.name if store is not None else UNKNOWN_STORE


def to_board_card(card: Card, state: CardState | None, stores: Sequence) -> BoardCard:
    store = resolve_store(card.store_id, card.order_name, stores)
    return BoardCard(
        card=card,
        state=with_defaults(state),
        store_id=store.id if store is not None else None,
        store_name=store.name if store is not None else UNKNOWN_STORE,
        time_window=time_window_for(card.tags, card.express_time_slot),
    )


def group_cards(cards: Sequence[BoardCard], stores: Sequence) -> list[StoreContainer]:
    store_rank = {store.id: rank for rank, store in enumerate(_ordered_stores(stores))}
    buckets: dict[int | None, dict[TimeWindow, list[BoardCard]]] = {}
    names: dict[int | None, str] = {}
    for board_card in cards:
        names[board_card.store_id] = board_card.store_name
        buckets.setdefault(board_card.store_id, {}).setdefault(board_card.time_window, []).append(board_card)

    containers: list[StoreContainer] = []
    for store_id in sorted(buckets, key=lambda key: (key is None, store_rank.get(key, len(store_rank)))):
        windows = buckets[store_id]
        containers.append(
            StoreContainer(
                store_id=store_id,
                store_name=names[store_id],
                windows=[
                    TimeWindowBucket(window=window, cards=sort_board_cards(windows[window]))
                    for window in TIME_WINDOW_ORDER
                    if window in windows
                ],
            )
        )
    return containers


def assemble_board(
    delivery_date: str,
    orders: Sequence,
    labels: LabelIndex,
    states: Mapping[str, CardState],
    stores: Sequence,
) -> BoardView:
    main_cards: list[BoardCard] = []
    add_on_cards: list[BoardCard] = []
    for order in orders:
        derived = derive_cards(order, labels)
        main_cards.extend(to_board_card(card, states.get(card.card_id), stores) for card in derived.main_cards)
        add_on_cards.extend(to_board_card(card, states.get(card.card_id), stores) for card in derived.add_on_cards)

    return BoardView(
        delivery_date=delivery_date,
        cards=[*main_cards, *add_on_cards],
        main_cards=sort_board_cards(main_cards),
        add_on_cards=sort_board_cards(add_on_cards),
        containers=group_cards(main_cards, stores),
    )


def build_board(db: Session, *, tenant_id: str, delivery_date: str) -> BoardView:
    orders = db.execute(
        select(Order)
        .where(Order.tenant_id == tenant_id, Order.delivery_date == delivery_date)
        .order_by(Order.created_at.asc(), Order.id.asc())
    ).scalars().all()
    stores = db.execute(
        select(Store).where(Store.tenant_id == tenant_id).order_by(Store.created_at.asc(), Store.id.asc())
    ).scalars().all()
    return assemble_board(
        delivery_date,
        orders,
        load_label_index(db, tenant_id=tenant_id),
        get_all_for_date(db, tenant_id=tenant_id, delivery_date=delivery_date),
        stores,
    )
