from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING
from typing import Protocol


class PalletLike(Protocol):
    item_id: str
    qty: int
    receiving_order_id: int | None
    shipping_order_id: int | None
    is_cross_dock: bool


class ShippingLineLike(Protocol):
    shipping_order_id: int
    item_id: str
    requested_qty: int


class ReceivingLineLike(Protocol):
    receiving_order_id: int
    item_id: str
    expected_qty: int


@dataclass(frozen=True)
class ConfirmedTotals:
    confirmed_count: int
    confirmed_qty: int


@dataclass(frozen=True)
class DiscrepancyRow:
    item_id: str
    expected_qty: int
    received_qty: int
    difference: int


def expected_pallet_count(expected_qty: int, units_per_pallet: int) -> int:
    if units_per_pallet < 1:
        raise ValueError('Units per pallet must be at least 1')
    if expected_qty <= 0:
        return 0
    return int((Decimal(expected_qty) / Decimal(units_per_pallet)).to_integral_value(rounding=ROUND_CEILING))


def line_capacity_qty(expected_qty: int, units_per_pallet: int) -> int:
    """Most units a receiving line can ever confirm: whole pallets covering the expected quantity."""
    return expected_pallet_count(expected_qty, units_per_pallet) * units_per_pallet


def confirmed_totals(
    pallets: Iterable[PalletLike],
    *,
    receiving_order_id: int,
    item_id: str,
    include_cross_dock: bool = True,
) -> ConfirmedTotals:
    count = 0
    qty = 0
    for pallet in pallets:
        if pallet.receiving_order_id != receiving_order_id or pallet.item_id != item_id:
            continue
        if not include_cross_dock and pallet.is_cross_dock:
            continue
        count += 1
        qty += pallet.qty
    return ConfirmedTotals(confirmed_count=count, confirmed_qty=qty)


def assigned_qty(pallets: Iterable[PalletLike], *, shipping_order_id: int, item_id: str) -> int:
    return sum(
        pallet.qty
        for pallet in pallets
        if pallet.shipping_order_id == shipping_order_id and pallet.item_id == item_id
    )


def remaining_qty_for(
    lines: Iterable[ShippingLineLike],
    pallets: Iterable[PalletLike],
    *,
    shipping_order_id: int,
    item_id: str,
) -> int:
    requested = None
    for line in lines:
        if line.shipping_order_id == shipping_order_id and line.item_id == item_id:
            requested = line.requested_qty
            break
    if requested is None:
        return 0
    return max(requested - assigned_qty(pallets, shipping_order_id=shipping_order_id, item_id=item_id), 0)


def receiving_discrepancies(
    lines: Iterable[ReceivingLineLike],
    pallets: Iterable[PalletLike],
) -> list[DiscrepancyRow]:
    pallet_rows = list(pallets)
    rows: list[DiscrepancyRow] = []
    for line in lines:
        received = confirmed_totals(
            pallet_rows,
            receiving_order_id=line.receiving_order_id,
            item_id=line.item_id,
        ).confirmed_qty
        rows.append(
            DiscrepancyRow(
                item_id=line.item_id,
                expected_qty=line.expected_qty,
                received_qty=received,
                difference=received - line.expected_qty,
            )
        )
    return rows
