from __future__ import annotations

import unittest
from types import SimpleNamespace

from palletflow.services.quantity_ledger_service import (
    assigned_qty,
    confirmed_totals,
    expected_pallet_count,
    line_capacity_qty,
    receiving_discrepancies,
    remaining_qty_for,
)


def _pallet(item_id, qty, *, receiving_order_id=1, shipping_order_id=None, is_cross_dock=False):
    return SimpleNamespace(
        item_id=item_id,
        qty=qty,
        receiving_order_id=receiving_order_id,
        shipping_order_id=shipping_order_id,
        is_cross_dock=is_cross_dock,
    )


class QuantityLedgerServiceTests(unittest.TestCase):
    def test_expected_pallet_count_rounds_up(self) -> None:
        self.assertEqual(expected_pallet_count(100, 20), 5)
        self.assertEqual(expected_pallet_count(101, 20), 6)
        self.assertEqual(expected_pallet_count(1, 48), 1)
        self.assertEqual(expected_pallet_count(0, 10), 0)

    def test_expected_pallet_count_rejects_empty_pallets(self) -> None:
        with self.assertRaises(ValueError):
            expected_pallet_count(10, 0)

    def test_line_capacity_is_whole_pallets(self) -> None:
        self.assertEqual(line_capacity_qty(100, 20), 100)
        self.assertEqual(line_capacity_qty(90, 20), 100)

    def test_confirmed_totals_filters_by_order_and_item(self) -> None:
        pallets = [
            _pallet('A', 20),
            _pallet('A', 15, is_cross_dock=True, shipping_order_id=7),
            _pallet('B', 10),
            _pallet('A', 5, receiving_order_id=2),
        ]
        totals = confirmed_totals(pallets, receiving_order_id=1, item_id='A')
        self.assertEqual(totals.confirmed_count, 2)
        self.assertEqual(totals.confirmed_qty, 35)

        normal_only = confirmed_totals(pallets, receiving_order_id=1, item_id='A', include_cross_dock=False)
        self.assertEqual(normal_only.confirmed_qty, 20)

    def test_remaining_is_requested_minus_assigned(self) -> None:
        lines = [SimpleNamespace(shipping_order_id=7, item_id='A', requested_qty=50)]
        pallets = [_pallet('A', 20, shipping_order_id=7), _pallet('A', 10, shipping_order_id=8)]
        self.assertEqual(assigned_qty(pallets, shipping_order_id=7, item_id='A'), 20)
        self.assertEqual(remaining_qty_for(lines, pallets, shipping_order_id=7, item_id='A'), 30)

    def test_remaining_without_line_is_zero(self) -> None:
        lines = [SimpleNamespace(shipping_order_id=7, item_id='A', requested_qty=50)]
        self.assertEqual(remaining_qty_for(lines, [], shipping_order_id=7, item_id='B'), 0)

    def test_remaining_is_never_negative(self) -> None:
        lines = [SimpleNamespace(shipping_order_id=7, item_id='A', requested_qty=10)]
        pallets = [_pallet('A', 25, shipping_order_id=7)]
        self.assertEqual(remaining_qty_for(lines, pallets, shipping_order_id=7, item_id='A'), 0)

    def test_receiving_discrepancies_include_cross_dock(self) -> None:
        lines = [
            SimpleNamespace(receiving_order_id=1, item_id='A', expected_qty=100),
            SimpleNamespace(receiving_order_id=1, item_id='B', expected_qty=40),
        ]
        pallets = [_pallet('A', 60), _pallet('A', 30, is_cross_dock=True), _pallet('B', 40)]
        rows = receiving_discrepancies(lines, pallets)
        self.assertEqual([(row.item_id, row.received_qty, row.difference) for row in rows], [('A', 90, -10), ('B', 40, 0)])


if __name__ == '__main__':
    unittest.main()
