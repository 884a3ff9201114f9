from __future__ import annotations

from collections.abc import Iterable
from typing import TypeVar

from order_board.models import CardStatus

T = TypeVar('T')


def normalize_sort_text(value: str | None) -> str:
    return (value or '').strip().lower()


def card_sort_key(board_card) -> tuple[int, int, int, int, int, str]:
    card, state = board_card.card, board_card.state
    return (
        1 if state.status == CardStatus.COMPLETED else 0,
        0 if card.is_wedding_product else 1,
        state.sort_order,
        card.difficulty_priority,
        card.product_type_priority,
        normalize_sort_text(card.product_title),
    )


def sort_board_cards(cards: Iterable[T]) -> list[T]:
    # sorted() is stable, so full ties keep their incoming order.
    return sorted(cards, key=card_sort_key)
