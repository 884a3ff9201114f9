from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from order_board.models import CardState
from order_board.services.board_service import BoardCard, BoardView, StoreContainer
from order_board.services.bulk_mutation_service import BulkItemResult, BulkUpdateItem
from order_board.services.card_derivation_service import TopUpItem
from order_board.services.card_state_service import CardStatePatch


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')


class CardStateFields(CamelModel):
    status: str | None = None
    notes: str | None = None
    assigned_to: str | None = None
    sort_order: int | None = None

    def to_patch(self) -> CardStatePatch:
        provided = self.model_fields_set
        values = {}
        for name in ('notes', 'assigned_to'):
            if name in provided:
                values[name] = getattr(self, name)
        for name in ('status', 'sort_order'):
            if name in provided and getattr(self, name) is not None:
                values[name] = getattr(self, name)
        return CardStatePatch(**values)


class CardStateUpdateRequest(CardStateFields):
    delivery_date: str


class BulkUpdateEntry(CardStateFields):
    card_id: str = ''

    def to_item(self) -> BulkUpdateItem:
        return BulkUpdateItem(card_id=self.card_id, patch=self.to_patch())


class BulkUpdateRequest(CamelModel):
    delivery_date: str
    updates: list[BulkUpdateEntry] = Field(default_factory=list)


class ReorderRequest(CamelModel):
    delivery_date: str
    ordered_card_ids: list[str] = Field(default_factory=list)


class ClearByDateRequest(CamelModel):
    delivery_date: str


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _money(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def _status_value(status) -> str:
    return status.value if hasattr(status, 'value') else str(status)


def top_up_payload(item: TopUpItem) -> dict:
    return {
        'title': item.title,
        'variantTitle': item.variant_title,
        'quantity': item.quantity,
        'price': _money(item.price),
    }


def card_payload(board_card: BoardCard) -> dict:
    card, state = board_card.card, board_card.state
    return {
        'cardId': card.card_id,
        'upstreamOrderId': card.upstream_order_id,
        'orderName': card.order_name,
        'lineItemId': card.line_item_id,
        'unitIndex': card.unit_index,
        'customerName': card.customer_name,
        'productTitle': card.product_title,
        'variantTitle': card.variant_title,
        'productId': card.product_id,
        'variantId': card.variant_id,
        'price': _money(card.price),
        'storeId': board_card.store_id,
        'storeName': board_card.store_name,
        'deliveryDate': card.delivery_date,
        'timeWindow': board_card.time_window.value,
        'isAddOn': card.is_add_on,
        'isWeddingProduct': card.is_wedding_product,
        'isExpressOrder': card.is_express_order,
        'expressTimeSlot': card.express_time_slot,
        'isPickupOrder': card.is_pickup_order,
        'difficultyLabel': card.difficulty_label,
        'difficultyPriority': card.difficulty_priority,
        'productTypeLabel': card.product_type_label,
        'productTypePriority': card.product_type_priority,
        'topUpItems': [top_up_payload(item) for item in card.top_up_items],
        'status': _status_value(state.status),
        'assignedTo': state.assigned_to,
        'assignedBy': state.assigned_by,
        'notes': state.notes,
        'sortOrder': state.sort_order,
        'stateUpdatedAt': _iso(state.updated_at),
    }


def container_payload(container: StoreContainer) -> dict:
    return {
        'storeId': container.store_id,
        'storeName': container.store_name,
        'timeWindows': [
            {'label': bucket.window.value, 'cards': [card_payload(card) for card in bucket.cards]}
            for bucket in container.windows
        ],
    }


def board_payload(board: BoardView) -> dict:
    return {
        'deliveryDate': board.delivery_date,
        'cards': [card_payload(card) for card in board.cards],
        'mainCards': [card_payload(card) for card in board.main_cards],
        'addOnCards': [card_payload(card) for card in board.add_on_cards],
        'containers': [container_payload(container) for container in board.containers],
        'count': len(board.cards),
    }


def card_state_payload(state: CardState) -> dict:
    return {
        'cardId': state.card_id,
        'deliveryDate': state.delivery_date,
        'status': _status_value(state.status),
        'assignedTo': state.assigned_to,
        'assignedBy': state.assigned_by,
        'notes': state.notes,
        'sortOrder': state.sort_order,
        'updatedAt': _iso(state.updated_at),
    }


def bulk_result_payload(result: BulkItemResult) -> dict:
    payload = {'cardId': result.card_id, 'success': result.success}
    if result.state is not None:
        payload['state'] = card_state_payload(result.state)
    if result.error is not None:
        payload['error'] = result.error
    return payload
