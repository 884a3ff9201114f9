from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from order_board.models import ProductLabel as ProductLabelModel
from order_board.models import ProductLabelMapping, SavedProduct

DEFAULT_LABEL_PRIORITY = 999

_TRAILING_DIGITS = re.compile(r'(\d+)\s*$')


@dataclass(frozen=True)
class ProductLabel:
    name: str
    category: str
    color: str | None = None
    priority: int = DEFAULT_LABEL_PRIORITY


def normalize_upstream_id(value) -> str | None:
    """Return the numeric id behind ``value``.

    Upstream platforms hand out either plain numbers or opaque global ids
    such as ``gid://shopify/ProductVariant/4411``; both map to ``'4411'``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    match = _TRAILING_DIGITS.search(str(value))
    if not match:
        return None
    return match.group(1)


@dataclass
class LabelIndex:
    by_variant: dict[tuple[str, str], list[ProductLabel]] = field(default_factory=dict)
    by_product: dict[str, list[ProductLabel]] = field(default_factory=dict)

    def lookup(self, product_id, variant_id) -> list[ProductLabel]:
        product_key = normalize_upstream_id(product_id)
        if product_key is None:
            return []
        variant_key = normalize_upstream_id(variant_id)
        if variant_key is not None:
            labels = self.by_variant.get((product_key, variant_key))
            if labels:
                return list(labels)
        return list(self.by_product.get(product_key, []))

    def add(self, product_id, variant_id, label: ProductLabel) -> None:
        product_key = normalize_upstream_id(product_id)
        if product_key is None:
            return
        variant_key = normalize_upstream_id(variant_id)
        if variant_key is None:
            self.by_product.setdefault(product_key, []).append(label)
        else:
            self.by_variant.setdefault((product_key, variant_key), []).append(label)


def load_label_index(db: Session, *, tenant_id: str) -> LabelIndex:
    rows = db.execute(
        select(
            SavedProduct.upstream_product_id,
            SavedProduct.upstream_variant_id,
            ProductLabelModel.name,
            ProductLabelModel.category,
            ProductLabelModel.color,
            ProductLabelModel.priority,
        )
        .join(ProductLabelMapping, ProductLabelMapping.saved_product_id == SavedProduct.id)
        .join(ProductLabelModel, ProductLabelModel.id == ProductLabelMapping.label_id)
        .where(SavedProduct.tenant_id == tenant_id, ProductLabelModel.tenant_id == tenant_id)
        .order_by(SavedProduct.id.asc(), ProductLabelModel.priority.asc(), ProductLabelModel.id.asc())
    ).all()

    seen: dict[tuple[str | None, str | None], set[tuple[str, str]]] = defaultdict(set)
    index = LabelIndex()
    for row in rows:
        key = (normalize_upstream_id(row.upstream_product_id), normalize_upstream_id(row.upstream_variant_id))
        label_key = (row.name, row.category)
        if label_key in seen[key]:
            continue
        seen[key].add(label_key)
        index.add(
            row.upstream_product_id,
            row.upstream_variant_id,
            ProductLabel(
                name=row.name,
                category=row.category,
                color=row.color,
                priority=row.priority if row.priority is not None else DEFAULT_LABEL_PRIORITY,
            ),
        )
    return index
