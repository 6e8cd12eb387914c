from __future__ import annotations

import csv
import unittest
from datetime import date, datetime, timezone
from io import StringIO

from palletflow.errors import ValidationError
from palletflow.models import Pallet, PalletStatus, ShipmentType, ShippingOrderStatus
from palletflow.services.billing_service import (
    BillingPalletRow,
    billing_filename,
    build_billing_report,
    calculate_billing_metrics,
    generate_billing_csv,
    hand_delivery_detail_rows,
    load_billing_rows,
    storage_pallet_positions,
)
from palletflow.services.shipping_service import create_shipping_order
from sqlite_support import add_product, build_session_factory, build_sqlite_engine, lines

FROM = date(2024, 3, 1)
TO = date(2024, 3, 5)
HAND = ShipmentType.HAND_DELIVERY
CONTAINER = ShipmentType.CONTAINER_LOADING


def at(day: int, month: int = 3, hour: int = 10) -> datetime:
    return datetime(2024, month, day, hour, tzinfo=timezone.utc)


def row(pallet_id, status, *, positions=1, created, shipped=None, cross_dock=False, order=None) -> BillingPalletRow:
    order_id, order_ref, shipment_type = order or (None, None, None)
    return BillingPalletRow(
        pallet_id=pallet_id,
        status=status,
        is_cross_dock=cross_dock,
        pallet_positions=positions,
        created_at=created,
        shipped_at=shipped,
        shipping_order_id=order_id,
        order_ref=order_ref,
        shipment_type=shipment_type,
    )


ROWS = [
    row(1, PalletStatus.STORED, positions=2, created=at(25, month=2)),
    row(2, PalletStatus.STORED, created=at(3)),
    row(3, PalletStatus.SHIPPED, created=at(2), shipped=at(4), order=(5, 'SO-5', CONTAINER)),
    row(4, PalletStatus.SHIPPED, created=at(2), shipped=at(2), cross_dock=True, order=(6, 'SO-6', CONTAINER)),
    row(5, PalletStatus.SHIPPED, positions=2, created=at(20, month=2), shipped=at(4), order=(7, 'HD-7', HAND)),
    row(6, PalletStatus.SHIPPED, created=at(20, month=2), shipped=at(5, hour=23), order=(7, 'HD-7', HAND)),
    row(7, PalletStatus.SHIPPED, created=at(20, month=2), shipped=at(3), order=(8, 'HD-8', HAND)),
    row(8, PalletStatus.SHIPPED, created=at(20, month=2), shipped=at(10), order=(9, 'HD-9', HAND)),
    row(9, PalletStatus.WRITE_OFF, created=at(2)),
]


class BillingMetricTests(unittest.TestCase):
    def test_metrics_over_range(self) -> None:
        metrics = calculate_billing_metrics(ROWS, from_date=FROM, to_date=TO)

        # Pallet 1 stays all five days on two positions; pallet 2 arrives on day three.
        self.assertEqual(metrics.storage_pallet_positions, 5 * 2 + 3)
        self.assertEqual(metrics.in_pallet_positions_standard, 2)
        self.assertEqual(metrics.cross_dock_pallet_positions, 1)
        self.assertEqual(metrics.out_pallet_positions_standard, 1)
        self.assertEqual(metrics.hand_delivery_pallet_positions, 4)

    def test_single_day_storage_counts_present_pallets_once(self) -> None:
        day = date(2024, 3, 3)
        self.assertEqual(storage_pallet_positions(ROWS, from_date=day, to_date=day), 3)

    def test_pallets_arriving_after_range_are_not_stored(self) -> None:
        day = date(2024, 3, 2)
        self.assertEqual(storage_pallet_positions(ROWS, from_date=day, to_date=day), 2)

    def test_inverted_range_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            calculate_billing_metrics(ROWS, from_date=TO, to_date=FROM)

    def test_detail_rows_group_by_order_and_sum_to_metric(self) -> None:
        detail = hand_delivery_detail_rows(ROWS, from_date=FROM, to_date=TO, notes={'HD-7': 'tail lift'})

        self.assertEqual(
            [(entry.delivery_date, entry.order_ref, entry.total_pallet_positions, entry.notes) for entry in detail],
            [(date(2024, 3, 3), 'HD-8', 1, ''), (date(2024, 3, 5), 'HD-7', 3, 'tail lift')],
        )
        metrics = calculate_billing_metrics(ROWS, from_date=FROM, to_date=TO)
        self.assertEqual(sum(entry.total_pallet_positions for entry in detail), metrics.hand_delivery_pallet_positions)


class BillingCsvTests(unittest.TestCase):
    def test_csv_layout_and_escaping(self) -> None:
        note = 'Dock 4, "north" gate\nring bell'
        metrics = calculate_billing_metrics(ROWS, from_date=FROM, to_date=TO)
        detail = hand_delivery_detail_rows(ROWS, from_date=FROM, to_date=TO, notes={'HD-7': note})

        content = generate_billing_csv(metrics, detail)

        self.assertTrue(content.startswith('Storage_Pallet_Positions,In_Pallet_Positions_Standard,'))
        self.assertIn('13,2,1,1,4\n\nDelivery Date,Shipping Order Ref,Total_Pallet_Positions,Notes\n', content)
        self.assertIn('2024-03-05,HD-7,3,"Dock 4, ""north"" gate\nring bell"\n', content)

        parsed = list(csv.reader(StringIO(content)))
        self.assertEqual(parsed[2], [])
        self.assertEqual(parsed[-1], ['2024-03-05', 'HD-7', '3', note])

    def test_filename(self) -> None:
        self.assertEqual(billing_filename(FROM, TO), 'billing_2024-03-01_2024-03-05.csv')


class BillingStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = build_sqlite_engine()
        self.db = build_session_factory(self.engine)()
        add_product(self.db, 'SKU1', pallet_positions=2)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def test_pallet_falls_back_to_order_shipped_date(self) -> None:
        order = create_shipping_order(
            self.db,
            order_ref='HD-1',
            shipment_type=HAND,
            seal_num='HS-1',
            lines=lines(('SKU1', 10)),
            actor='cse-1',
        )
        order.status = ShippingOrderStatus.SHIPPED
        order.shipped_at = at(4)
        self.db.add(
            Pallet(item_id='SKU1', qty=10, status=PalletStatus.SHIPPED, shipping_order_id=order.id, created_at=at(1))
        )
        self.db.flush()

        (loaded,) = load_billing_rows(self.db)
        self.assertEqual(loaded.pallet_positions, 2)
        self.assertEqual(loaded.shipment_type, HAND)
        self.assertEqual(loaded.shipped_at.date(), date(2024, 3, 4))

        report = build_billing_report(self.db, from_date=FROM, to_date=TO, notes={'HD-1': 'ok'})
        self.assertEqual(report.metrics.hand_delivery_pallet_positions, 2)
        self.assertEqual([entry.notes for entry in report.hand_delivery_rows], ['ok'])


if __name__ == '__main__':
    unittest.main()
