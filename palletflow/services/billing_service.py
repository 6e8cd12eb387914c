from __future__ import annotations

import csv
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from io import StringIO

from sqlalchemy import select
from sqlalchemy.orm import Session

from palletflow.errors import ValidationError
from palletflow.models import Pallet, PalletStatus, Product, ShipmentType, ShippingOrder

IN_WAREHOUSE_STATUSES = frozenset({PalletStatus.RECEIVED, PalletStatus.STORED, PalletStatus.STAGED})

SUMMARY_HEADER = [
    'Storage_Pallet_Positions',
    'In_Pallet_Positions_Standard',
    'CrossDock_Pallet_Positions',
    'Out_Pallet_Positions_Standard',
    'HandDelivery_Pallet_Positions',
]
DETAIL_HEADER = ['Delivery Date', 'Shipping Order Ref', 'Total_Pallet_Positions', 'Notes']


@dataclass(frozen=True)
class BillingPalletRow:
    pallet_id: int
    status: PalletStatus
    is_cross_dock: bool
    pallet_positions: int
    created_at: datetime
    received_at: datetime | None = None
    shipped_at: datetime | None = None
    shipping_order_id: int | None = None
    order_ref: str | None = None
    shipment_type: ShipmentType | None = None


@dataclass(frozen=True)
class BillingMetrics:
    storage_pallet_positions: int
    in_pallet_positions_standard: int
    cross_dock_pallet_positions: int
    out_pallet_positions_standard: int
    hand_delivery_pallet_positions: int

    def as_row(self) -> list[int]:
        return [
            self.storage_pallet_positions,
            self.in_pallet_positions_standard,
            self.cross_dock_pallet_positions,
            self.out_pallet_positions_standard,
            self.hand_delivery_pallet_positions,
        ]


@dataclass(frozen=True)
class HandDeliveryRow:
    delivery_date: date
    order_ref: str
    total_pallet_positions: int
    notes: str = ''


@dataclass(frozen=True)
class BillingReport:
    from_date: date
    to_date: date
    metrics: BillingMetrics
    hand_delivery_rows: list[HandDeliveryRow]


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; they were written as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def range_bounds(from_date: date, to_date: date) -> tuple[datetime, datetime]:
    if to_date < from_date:
        raise ValidationError('To date must be on or after from date')
    start = datetime.combine(from_date, time.min, tzinfo=timezone.utc)
    end = datetime.combine(to_date, time.max, tzinfo=timezone.utc)
    return start, end


def _in_range(value: datetime | None, start: datetime, end: datetime) -> bool:
    value = _as_utc(value)
    return value is not None and start <= value <= end


def storage_pallet_positions(rows: list[BillingPalletRow], *, from_date: date, to_date: date) -> int:
    """Position-days for pallets still on the warehouse floor.

    A single-day range counts each present pallet once; longer ranges count
    the inclusive days from max(received, from) to `to_date`.
    """
    _, end = range_bounds(from_date, to_date)
    single_day = from_date == to_date
    total = 0
    for row in rows:
        if row.status not in IN_WAREHOUSE_STATUSES:
            continue
        stored_since = _as_utc(row.received_at or row.created_at)
        if stored_since > end:
            continue
        if single_day:
            total += row.pallet_positions
            continue
        storage_start = max(stored_since.date(), from_date)
        total += ((to_date - storage_start).days + 1) * row.pallet_positions
    return total


def in_pallet_positions_standard(rows: list[BillingPalletRow], *, from_date: date, to_date: date) -> int:
    start, end = range_bounds(from_date, to_date)
    return sum(
        row.pallet_positions
        for row in rows
        if not row.is_cross_dock and row.status != PalletStatus.SHIPPED and _in_range(row.created_at, start, end)
    )


def cross_dock_pallet_positions(rows: list[BillingPalletRow], *, from_date: date, to_date: date) -> int:
    start, end = range_bounds(from_date, to_date)
    return sum(row.pallet_positions for row in rows if row.is_cross_dock and _in_range(row.created_at, start, end))


def _shipped_in_range(row: BillingPalletRow, start: datetime, end: datetime) -> bool:
    return row.status == PalletStatus.SHIPPED and _in_range(row.shipped_at, start, end)


def out_pallet_positions_standard(rows: list[BillingPalletRow], *, from_date: date, to_date: date) -> int:
    start, end = range_bounds(from_date, to_date)
    return sum(
        row.pallet_positions
        for row in rows
        if not row.is_cross_dock
        and row.shipment_type != ShipmentType.HAND_DELIVERY
        and _shipped_in_range(row, start, end)
    )


def _hand_delivery_rows_in_range(rows: list[BillingPalletRow], *, from_date: date, to_date: date) -> list[BillingPalletRow]:
    start, end = range_bounds(from_date, to_date)
    return [
        row for row in rows if row.shipment_type == ShipmentType.HAND_DELIVERY and _shipped_in_range(row, start, end)
    ]


def hand_delivery_pallet_positions(rows: list[BillingPalletRow], *, from_date: date, to_date: date) -> int:
    return sum(row.pallet_positions for row in _hand_delivery_rows_in_range(rows, from_date=from_date, to_date=to_date))


def calculate_billing_metrics(rows: list[BillingPalletRow], *, from_date: date, to_date: date) -> BillingMetrics:
    return BillingMetrics(
        storage_pallet_positions=storage_pallet_positions(rows, from_date=from_date, to_date=to_date),
        in_pallet_positions_standard=in_pallet_positions_standard(rows, from_date=from_date, to_date=to_date),
        cross_dock_pallet_positions=cross_dock_pallet_positions(rows, from_date=from_date, to_date=to_date),
        out_pallet_positions_standard=out_pallet_positions_standard(rows, from_date=from_date, to_date=to_date),
        hand_delivery_pallet_positions=hand_delivery_pallet_positions(rows, from_date=from_date, to_date=to_date),
    )


def hand_delivery_detail_rows(
    rows: list[BillingPalletRow],
    *,
    from_date: date,
    to_date: date,
    notes: dict[str, str] | None = None,
) -> list[HandDeliveryRow]:
    notes = notes or {}
    positions: dict[int, int] = defaultdict(int)
    delivered_on: dict[int, date] = {}
    order_refs: dict[int, str] = {}
    for row in _hand_delivery_rows_in_range(rows, from_date=from_date, to_date=to_date):
        positions[row.shipping_order_id] += row.pallet_positions
        shipped_on = _as_utc(row.shipped_at).date()
        delivered_on[row.shipping_order_id] = max(shipped_on, delivered_on.get(row.shipping_order_id, shipped_on))
        order_refs[row.shipping_order_id] = row.order_ref or ''

    detail = [
        HandDeliveryRow(
            delivery_date=delivered_on[order_id],
            order_ref=order_refs[order_id],
            total_pallet_positions=total,
            notes=notes.get(order_refs[order_id], ''),
        )
        for order_id, total in positions.items()
    ]
    detail.sort(key=lambda row: (row.delivery_date, row.order_ref))
    return detail


def load_billing_rows(db: Session) -> list[BillingPalletRow]:
    stmt = (
        select(
            Pallet.id,
            Pallet.status,
            Pallet.is_cross_dock,
            Pallet.created_at,
            Pallet.received_at,
            Pallet.shipped_at,
            Pallet.shipping_order_id,
            Product.pallet_positions,
            ShippingOrder.order_ref,
            ShippingOrder.shipment_type,
            ShippingOrder.shipped_at.label('order_shipped_at'),
        )
        .join(Product, Product.item_id == Pallet.item_id)
        .outerjoin(ShippingOrder, ShippingOrder.id == Pallet.shipping_order_id)
        .order_by(Pallet.id.asc())
    )
    return [
        BillingPalletRow(
            pallet_id=row.id,
            status=row.status,
            is_cross_dock=row.is_cross_dock,
            pallet_positions=row.pallet_positions or 0,
            created_at=row.created_at,
            received_at=row.received_at,
            shipped_at=row.shipped_at or row.order_shipped_at,
            shipping_order_id=row.shipping_order_id,
            order_ref=row.order_ref,
            shipment_type=row.shipment_type,
        )
        for row in db.execute(stmt).all()
    ]


def build_billing_report(
    db: Session,
    *,
    from_date: date,
    to_date: date,
    notes: dict[str, str] | None = None,
) -> BillingReport:
    range_bounds(from_date, to_date)
    rows = load_billing_rows(db)
    return BillingReport(
        from_date=from_date,
        to_date=to_date,
        metrics=calculate_billing_metrics(rows, from_date=from_date, to_date=to_date),
        hand_delivery_rows=hand_delivery_detail_rows(rows, from_date=from_date, to_date=to_date, notes=notes),
    )


def generate_billing_csv(metrics: BillingMetrics, hand_delivery_rows: list[HandDeliveryRow]) -> str:
    sio = StringIO()
    writer = csv.writer(sio, lineterminator='\n')
    writer.writerow(SUMMARY_HEADER)
    writer.writerow(metrics.as_row())
    writer.writerow([])
    writer.writerow(DETAIL_HEADER)
    for row in hand_delivery_rows:
        writer.writerow([row.delivery_date.isoformat(), row.order_ref, row.total_pallet_positions, row.notes])
    return sio.getvalue()


def billing_filename(from_date: date, to_date: date) -> str:
    return f'billing_{from_date.isoformat()}_{to_date.isoformat()}.csv'
