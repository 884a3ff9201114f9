from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer(), 'sqlite')


class Base(DeclarativeBase):
    pass


class StaffRole(str, Enum):
    OWNER = 'OWNER'
    ADMIN = 'ADMIN'
    FLORIST = 'FLORIST'
    VIEWER = 'VIEWER'


class CardStatus(str, Enum):
    UNASSIGNED = 'unassigned'
    ASSIGNED = 'assigned'
    COMPLETED = 'completed'


class LabelCategory(str, Enum):
    DIFFICULTY = 'difficulty'
    PRODUCT_TYPE = 'productType'
    CUSTOM = 'custom'


UNSCHEDULED_DATE = 'unscheduled'


class Store(Base):
    __tablename__ = 'stores'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    domain: Mapped[str | None] = mapped_column(Text)
    order_name_prefix: Mapped[str | None] = mapped_column(String(32))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='1')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StaffUser(Base):
    __tablename__ = 'staff_users'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'username', name='staff_users_tenant_username_key'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    username: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[StaffRole] = mapped_column(SQLEnum(StaffRole, name='staff_role'), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='1')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebSession(Base):
    __tablename__ = 'web_sessions'
    __table_args__ = (
        UniqueConstraint('session_token', name='web_sessions_session_token_key'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    session_token: Mapped[str] = mapped_column(String(128), nullable=False)
    principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('staff_users.id'), nullable=False)
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Order(Base):
    __tablename__ = 'orders'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'upstream_order_id', name='orders_tenant_upstream_key'),
        Index('orders_tenant_delivery_date_idx', 'tenant_id', 'delivery_date'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    upstream_order_id: Mapped[str] = mapped_column(Text, nullable=False)
    store_id: Mapped[int | None] = mapped_column(BigInteger)
    order_name: Mapped[str | None] = mapped_column(Text)
    customer_name: Mapped[str] = mapped_column(Text, nullable=False)
    customer_email: Mapped[str | None] = mapped_column(Text)
    delivery_date: Mapped[str] = mapped_column(String(16), nullable=False, default=UNSCHEDULED_DATE)
    notes: Mapped[str | None] = mapped_column(Text)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    total_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    currency: Mapped[str | None] = mapped_column(String(8))
    line_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    raw_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SavedProduct(Base):
    __tablename__ = 'saved_products'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    upstream_product_id: Mapped[str] = mapped_column(Text, nullable=False)
    upstream_variant_id: Mapped[str | None] = mapped_column(Text)
    title: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ProductLabel(Base):
    __tablename__ = 'product_labels'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    color: Mapped[str | None] = mapped_column(String(32))
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=999, server_default='999')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ProductLabelMapping(Base):
    __tablename__ = 'product_label_mappings'

    saved_product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('saved_products.id', ondelete='CASCADE'), primary_key=True
    )
    label_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('product_labels.id', ondelete='CASCADE'), primary_key=True)


class CardState(Base):
    __tablename__ = 'card_states'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'card_id', 'delivery_date', name='card_states_tenant_card_date_key'),
        Index('card_states_tenant_updated_idx', 'tenant_id', 'updated_at'),
        CheckConstraint('sort_order >= 0', name='card_states_sort_order_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    card_id: Mapped[str] = mapped_column(Text, nullable=False)
    delivery_date: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[CardStatus] = mapped_column(
        SQLEnum(CardStatus, name='card_status', values_callable=lambda enum: [member.value for member in enum]),
        nullable=False,
        default=CardStatus.UNASSIGNED,
    )
    assigned_to: Mapped[str | None] = mapped_column(Text)
    assigned_by: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    actor_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('staff_users.id'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    ip: Mapped[str | None] = mapped_column(String(64))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
