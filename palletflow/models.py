from __future__ import annotations

from datetime import datetime, timezone
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
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigInt = BigInteger().with_variant(Integer, 'sqlite')


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _enum_column(enum_cls: type[Enum], name: str) -> SQLEnum:
    # Persist the contract strings ('Pending', 'Hand_Delivery', ...) rather than member names.
    return SQLEnum(enum_cls, name=name, values_callable=lambda members: [member.value for member in members])


class Base(DeclarativeBase):
    pass


class ReceivingOrderStatus(str, Enum):
    PENDING = 'Pending'
    UNLOADING = 'Unloading'
    STAGED = 'Staged'
    RECEIVED = 'Received'


class ShippingOrderStatus(str, Enum):
    PENDING = 'Pending'
    PICKING = 'Picking'
    LOADING = 'Loading'
    COMPLETED = 'Completed'
    SHIPPED = 'Shipped'


class ShipmentType(str, Enum):
    HAND_DELIVERY = 'Hand_Delivery'
    CONTAINER_LOADING = 'Container_Loading'


class PalletStatus(str, Enum):
    RECEIVED = 'Received'
    STORED = 'Stored'
    STAGED = 'Staged'
    LOADED = 'Loaded'
    SHIPPED = 'Shipped'
    WRITE_OFF = 'WriteOff'


class ManifestType(str, Enum):
    HAND = 'Hand'
    CONTAINER = 'Container'


class ManifestStatus(str, Enum):
    OPEN = 'Open'
    CLOSED = 'Closed'
    CANCELLED = 'Cancelled'


class WriteOffReason(str, Enum):
    DAMAGED = 'Damaged'
    LOST = 'Lost'
    COUNT_CORRECTION = 'Count Correction'


class EmailStatus(str, Enum):
    SENT = 'Sent'
    FAILED = 'Failed'


class Product(Base):
    __tablename__ = 'products'
    __table_args__ = (
        CheckConstraint('units_per_pallet > 0', name='products_units_per_pallet_positive'),
        CheckConstraint('pallet_positions >= 1', name='products_pallet_positions_min'),
    )

    item_id: Mapped[str] = mapped_column(Text, primary_key=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default='')
    units_per_pallet: Mapped[int] = mapped_column(Integer, nullable=False)
    pallet_positions: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default='1')
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class Location(Base):
    __tablename__ = 'locations'

    location_id: Mapped[str] = mapped_column(Text, primary_key=True)
    warehouse_code: Mapped[str] = mapped_column(Text, nullable=False, default='W1', server_default='W1')
    rack: Mapped[int | None] = mapped_column(Integer)
    level: Mapped[int | None] = mapped_column(Integer)
    position: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    is_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')


class ReceivingOrder(Base):
    __tablename__ = 'receiving_orders'

    id: Mapped[int] = mapped_column(BigInt, primary_key=True)
    container_num: Mapped[str] = mapped_column(Text, nullable=False)
    seal_num: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[ReceivingOrderStatus] = mapped_column(
        _enum_column(ReceivingOrderStatus, 'receiving_order_status'),
        nullable=False,
        default=ReceivingOrderStatus.PENDING,
        server_default=ReceivingOrderStatus.PENDING.value,
    )
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    signed_form_ref: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class ReceivingOrderLine(Base):
    __tablename__ = 'receiving_order_lines'
    __table_args__ = (
        UniqueConstraint('receiving_order_id', 'item_id', name='receiving_order_lines_order_item_key'),
        CheckConstraint('expected_qty > 0', name='receiving_order_lines_expected_qty_positive'),
    )

    id: Mapped[int] = mapped_column(BigInt, primary_key=True)
    receiving_order_id: Mapped[int] = mapped_column(
        BigInt, ForeignKey('receiving_orders.id', ondelete='CASCADE'), nullable=False
    )
    item_id: Mapped[str] = mapped_column(Text, ForeignKey('products.item_id'), nullable=False)
    expected_qty: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class Manifest(Base):
    __tablename__ = 'manifests'

    id: Mapped[int] = mapped_column(BigInt, primary_key=True)
    type: Mapped[ManifestType] = mapped_column(_enum_column(ManifestType, 'manifest_type'), nullable=False)
    container_num: Mapped[str | None] = mapped_column(Text)
    seal_num: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[ManifestStatus] = mapped_column(
        _enum_column(ManifestStatus, 'manifest_status'),
        nullable=False,
        default=ManifestStatus.OPEN,
        server_default=ManifestStatus.OPEN.value,
    )
    signed_form_ref: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class ShippingOrder(Base):
    __tablename__ = 'shipping_orders'

    id: Mapped[int] = mapped_column(BigInt, primary_key=True)
    order_ref: Mapped[str] = mapped_column(Text, nullable=False)
    shipment_type: Mapped[ShipmentType] = mapped_column(_enum_column(ShipmentType, 'shipment_type'), nullable=False)
    seal_num: Mapped[str | None] = mapped_column(Text)
    status: Mapped[ShippingOrderStatus] = mapped_column(
        _enum_column(ShippingOrderStatus, 'shipping_order_status'),
        nullable=False,
        default=ShippingOrderStatus.PENDING,
        server_default=ShippingOrderStatus.PENDING.value,
    )
    manifest_id: Mapped[int | None] = mapped_column(BigInt, ForeignKey('manifests.id'))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class ShippingOrderLine(Base):
    __tablename__ = 'shipping_order_lines'
    __table_args__ = (
        UniqueConstraint('shipping_order_id', 'item_id', name='shipping_order_lines_order_item_key'),
        CheckConstraint('requested_qty > 0', name='shipping_order_lines_requested_qty_positive'),
    )

    id: Mapped[int] = mapped_column(BigInt, primary_key=True)
    shipping_order_id: Mapped[int] = mapped_column(
        BigInt, ForeignKey('shipping_orders.id', ondelete='CASCADE'), nullable=False
    )
    item_id: Mapped[str] = mapped_column(Text, ForeignKey('products.item_id'), nullable=False)
    requested_qty: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class Pallet(Base):
    __tablename__ = 'pallets'
    __table_args__ = (
        CheckConstraint('qty > 0', name='pallets_qty_positive'),
        Index('ix_pallets_item_status', 'item_id', 'status'),
        Index('ix_pallets_shipping_order', 'shipping_order_id'),
        Index('ix_pallets_receiving_order_item', 'receiving_order_id', 'item_id'),
    )

    id: Mapped[int] = mapped_column(BigInt, primary_key=True)
    item_id: Mapped[str] = mapped_column(Text, ForeignKey('products.item_id'), nullable=False)
    qty: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[PalletStatus] = mapped_column(
        _enum_column(PalletStatus, 'pallet_status'),
        nullable=False,
        default=PalletStatus.RECEIVED,
        server_default=PalletStatus.RECEIVED.value,
    )
    pre_load_status: Mapped[PalletStatus | None] = mapped_column(_enum_column(PalletStatus, 'pallet_status'))
    receiving_order_id: Mapped[int | None] = mapped_column(BigInt, ForeignKey('receiving_orders.id'))
    shipping_order_id: Mapped[int | None] = mapped_column(BigInt, ForeignKey('shipping_orders.id'))
    location_id: Mapped[str | None] = mapped_column(Text, ForeignKey('locations.location_id'))
    manifest_id: Mapped[int | None] = mapped_column(BigInt, ForeignKey('manifests.id'))
    is_cross_dock: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigInt, primary_key=True)
    actor: Mapped[str | None] = mapped_column(Text)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str | None] = mapped_column(Text)
    entity_id: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class EmailLog(Base):
    __tablename__ = 'email_logs'

    id: Mapped[int] = mapped_column(BigInt, primary_key=True)
    shipping_order_id: Mapped[int | None] = mapped_column(BigInt, ForeignKey('shipping_orders.id'))
    recipient: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[EmailStatus] = mapped_column(_enum_column(EmailStatus, 'email_status'), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
