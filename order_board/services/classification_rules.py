"""Rule tables for line-item classification and delivery time windows.

Everything here is a pure function of strings and labels so the rules can be
extended and tested without touching the derivation loop.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from order_board.models import LabelCategory
from order_board.services.label_index import ProductLabel

CONSOLIDATION_KEYWORDS = ('top-up', 'corsage', 'boutonniere')
TOP_UP_LABEL = 'top-up'
ADD_ON_MARKERS = ('add-on', 'addon')
WEDDING_LABEL_NAME = 'Weddings'

_TIME_SLOT = re.compile(r'\d{1,2}:\d{2}\s*(?:[AP]M)?\s*-\s*\d{1,2}:\d{2}\s*(?:[AP]M)?', re.IGNORECASE)
_CLOCK_RANGE = re.compile(
    r'(\d{1,2}):(\d{2})\s*([AP]M)?\s*-\s*(\d{1,2}):(\d{2})\s*([AP]M)?',
    re.IGNORECASE,
)


class ItemKind(str, Enum):
    EXPRESS = 'express'
    CONSOLIDATED = 'consolidated'
    ADD_ON = 'add_on'
    MAIN = 'main'


@dataclass(frozen=True)
class LineItemContext:
    title: str
    variant_title: str | None = None
    labels: tuple[ProductLabel, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ClassificationRule:
    name: str
    kind: ItemKind
    predicate: Callable[[LineItemContext], bool]


def _lower(value: str | None) -> str:
    return (value or '').lower()


def _category_is(label: ProductLabel, category: LabelCategory) -> bool:
    return _lower(label.category) == category.value.lower()


def consolidated_keyword(title: str | None, variant_title: str | None) -> str | None:
    haystacks = (_lower(title), _lower(variant_title))
    for keyword in CONSOLIDATION_KEYWORDS:
        if any(keyword in text for text in haystacks):
            return keyword
    return None


def consolidated_display_title(title: str | None, variant_title: str | None) -> str:
    keyword = consolidated_keyword(title, variant_title)
    if keyword and keyword not in _lower(title) and keyword in _lower(variant_title):
        return variant_title or ''
    return title or variant_title or ''


def is_express_item(context: LineItemContext) -> bool:
    return 'express' in _lower(context.title)


def is_consolidated_item(context: LineItemContext) -> bool:
    if any(_lower(label.name) == TOP_UP_LABEL for label in context.labels):
        return True
    return consolidated_keyword(context.title, context.variant_title) is not None


def is_add_on_item(context: LineItemContext) -> bool:
    for label in context.labels:
        name, category = _lower(label.name), _lower(label.category)
        if any(marker in name or marker in category for marker in ADD_ON_MARKERS):
            return True
    return False


DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule('express', ItemKind.EXPRESS, is_express_item),
    ClassificationRule('consolidated', ItemKind.CONSOLIDATED, is_consolidated_item),
    ClassificationRule('add_on', ItemKind.ADD_ON, is_add_on_item),
)


def classify_line_item(context: LineItemContext, rules: Sequence[ClassificationRule] = DEFAULT_RULES) -> ItemKind:
    for rule in rules:
        if rule.predicate(context):
            return rule.kind
    return ItemKind.MAIN


def extract_time_slot(*texts: str | None) -> str | None:
    for text in texts:
        match = _TIME_SLOT.search(text or '')
        if match:
            return match.group(0).strip()
    return None


def is_pickup_order(tags: Iterable[str]) -> bool:
    return any('pickup' in _lower(tag) for tag in tags)


def is_wedding_product(labels: Iterable[ProductLabel]) -> bool:
    return any(
        _category_is(label, LabelCategory.PRODUCT_TYPE) and label.name == WEDDING_LABEL_NAME for label in labels
    )


def best_label(labels: Iterable[ProductLabel], category: LabelCategory) -> ProductLabel | None:
    matching = [label for label in labels if _category_is(label, category)]
    if not matching:
        return None
    return min(matching, key=lambda label: label.priority)


class TimeWindow(str, Enum):
    MORNING = 'Morning'
    MIDDAY = 'Midday'
    AFTERNOON = 'Afternoon'
    NIGHT = 'Night'
    UNSCHEDULED = 'Unscheduled'


TIME_WINDOW_ORDER: tuple[TimeWindow, ...] = (
    TimeWindow.MORNING,
    TimeWindow.MIDDAY,
    TimeWindow.AFTERNOON,
    TimeWindow.NIGHT,
    TimeWindow.UNSCHEDULED,
)

# (start hour, end hour) pairs, 24h clock, as they appear in delivery tags.
TIME_WINDOW_RULES: tuple[tuple[TimeWindow, tuple[tuple[int, int], ...]], ...] = (
    (TimeWindow.MORNING, ((10, 13), (10, 14))),
    (TimeWindow.MIDDAY, ((11, 15),)),
    (TimeWindow.AFTERNOON, ((14, 16), (14, 18))),
    (TimeWindow.NIGHT, ((18, 22),)),
)


def _to_24h(hour: int, meridiem: str | None) -> int:
    if not meridiem:
        return hour
    meridiem = meridiem.upper()
    if meridiem == 'PM' and hour < 12:
        return hour + 12
    if meridiem == 'AM' and hour == 12:
        return 0
    return hour


def parse_clock_range(text: str | None) -> tuple[int, int] | None:
    match = _CLOCK_RANGE.search(text or '')
    if not match:
        return None
    start_hour, _, start_meridiem, end_hour, _, end_meridiem = match.groups()
    return _to_24h(int(start_hour), start_meridiem), _to_24h(int(end_hour), end_meridiem)


def _window_for_tag(tag: str) -> TimeWindow | None:
    clock_range = parse_clock_range(tag)
    if clock_range is not None:
        for window, ranges in TIME_WINDOW_RULES:
            if clock_range in ranges:
                return window
        return None
    for window, _ in TIME_WINDOW_RULES:
        if re.search(rf'\b{window.value}\b', tag, re.IGNORECASE):
            return window
    return None


def window_for_hour(hour: int) -> TimeWindow:
    if hour < 11:
        return TimeWindow.MORNING
    if hour < 14:
        return TimeWindow.MIDDAY
    if hour < 18:
        return TimeWindow.AFTERNOON
    return TimeWindow.NIGHT


def time_window_for(tags: Iterable[str], express_time_slot: str | None = None) -> TimeWindow:
    for tag in tags:
        window = _window_for_tag(tag)
        if window is not None:
            return window
    clock_range = parse_clock_range(express_time_slot)
    if clock_range is not None:
        return window_for_hour(clock_range[0])
    return TimeWindow.UNSCHEDULED
