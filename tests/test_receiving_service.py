from __future__ import annotations

import unittest

from sqlalchemy import select

from palletflow.errors import (
    ConcurrencyConflictError,
    InvalidStateError,
    MissingDocumentError,
    NothingConfirmedError,
    ValidationError,
)
from palletflow.models import AuditLog, Pallet, PalletStatus, ReceivingOrderStatus
from palletflow.services.receiving_service import (
    attach_receiving_form,
    confirm_pallet,
    create_receiving_order,
    finish_tally,
    list_receiving_lines,
    receiving_summary,
    select_for_unloading,
    tally_rows,
    undo_pallet,
)
from sqlite_support import add_product, build_session_factory, build_sqlite_engine, lines


class ReceivingServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = build_sqlite_engine()
        self.db = build_session_factory(self.engine)()
        add_product(self.db, 'SKU1', units_per_pallet=50)
        add_product(self.db, 'SKU2', units_per_pallet=20)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _unloading_order(self, *pairs):
        order = create_receiving_order(
            self.db,
            container_num='MSCU1234567',
            seal_num='SEAL-1',
            created_by='cse-1',
            lines=lines(*pairs),
        )
        select_for_unloading(self.db, order_id=order.id, actor='wh-1')
        return order, list_receiving_lines(self.db, order_id=order.id)

    def test_scenario_two_full_pallets_then_staged(self) -> None:
        order, (line,) = self._unloading_order(('SKU1', 100))

        confirm_pallet(self.db, line_id=line.id, actual_qty=50, actor='wh-1')
        confirm_pallet(self.db, line_id=line.id, actual_qty=50, actor='wh-1')
        finish_tally(self.db, order_id=order.id, actor='wh-1', terminal_status='Staged')

        self.assertEqual(order.status, ReceivingOrderStatus.STAGED)
        pallets = self.db.execute(select(Pallet).where(Pallet.receiving_order_id == order.id)).scalars().all()
        self.assertEqual([pallet.qty for pallet in pallets], [50, 50])
        self.assertTrue(all(pallet.status == PalletStatus.RECEIVED and not pallet.is_cross_dock for pallet in pallets))

    def test_finish_tally_can_end_in_received(self) -> None:
        order, (line,) = self._unloading_order(('SKU1', 100))
        confirm_pallet(self.db, line_id=line.id, actual_qty=50, actor='wh-1')

        finish_tally(self.db, order_id=order.id, actor='wh-1', terminal_status='Received')

        self.assertEqual(order.status, ReceivingOrderStatus.RECEIVED)

    def test_create_order_reports_row_numbered_problems(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            create_receiving_order(
                self.db,
                container_num='C1',
                seal_num='S1',
                created_by='cse-1',
                lines=lines(('SKU1', 10), ('NOPE', 5), ('SKU2', 0)),
            )
        problems = ctx.exception.problems
        self.assertEqual([(problem['row'], problem['field']) for problem in problems], [(3, 'item_id'), (4, 'qty')])

    def test_select_for_unloading_is_idempotent(self) -> None:
        order, _lines = self._unloading_order(('SKU1', 100))
        audit_count = len(self.db.execute(select(AuditLog)).scalars().all())

        again, changed = select_for_unloading(self.db, order_id=order.id, actor='wh-1')

        self.assertFalse(changed)
        self.assertEqual(again.status, ReceivingOrderStatus.UNLOADING)
        self.assertEqual(len(self.db.execute(select(AuditLog)).scalars().all()), audit_count)

    def test_confirm_requires_unloading(self) -> None:
        order = create_receiving_order(
            self.db, container_num='C1', seal_num='S1', created_by='cse-1', lines=lines(('SKU1', 100))
        )
        (line,) = list_receiving_lines(self.db, order_id=order.id)
        with self.assertRaises(InvalidStateError):
            confirm_pallet(self.db, line_id=line.id, actual_qty=50, actor='wh-1')

    def test_confirm_rejects_non_positive_qty(self) -> None:
        _order, (line,) = self._unloading_order(('SKU1', 100))
        for qty in (0, -5):
            with self.assertRaises(ValidationError):
                confirm_pallet(self.db, line_id=line.id, actual_qty=qty, actor='wh-1')

    def test_confirm_cannot_exceed_line_capacity(self) -> None:
        _order, (line,) = self._unloading_order(('SKU2', 30))
        # Two pallets of 20 cover 30 units; capacity is 40.
        confirm_pallet(self.db, line_id=line.id, actual_qty=20, actor='wh-1')
        confirm_pallet(self.db, line_id=line.id, actual_qty=20, actor='wh-1')
        with self.assertRaises(ValidationError):
            confirm_pallet(self.db, line_id=line.id, actual_qty=1, actor='wh-1')

    def test_confirm_compare_and_swap(self) -> None:
        _order, (line,) = self._unloading_order(('SKU1', 100))
        confirm_pallet(self.db, line_id=line.id, actual_qty=50, actor='wh-1', expected_confirmed_count=0)
        with self.assertRaises(ConcurrencyConflictError):
            confirm_pallet(self.db, line_id=line.id, actual_qty=50, actor='wh-2', expected_confirmed_count=0)

    def test_undo_removes_pallet_while_unloading(self) -> None:
        order, (line,) = self._unloading_order(('SKU1', 100))
        pallet = confirm_pallet(self.db, line_id=line.id, actual_qty=50, actor='wh-1')

        undo_pallet(self.db, pallet_id=pallet.id, actor='wh-1', expected_confirmed_count=1)

        remaining = self.db.execute(select(Pallet).where(Pallet.receiving_order_id == order.id)).scalars().all()
        self.assertEqual(remaining, [])

    def test_undo_after_staged_is_rejected(self) -> None:
        order, (line,) = self._unloading_order(('SKU1', 100))
        pallet = confirm_pallet(self.db, line_id=line.id, actual_qty=50, actor='wh-1')
        finish_tally(self.db, order_id=order.id, actor='wh-1', terminal_status='Staged')

        with self.assertRaises(InvalidStateError):
            undo_pallet(self.db, pallet_id=pallet.id, actor='wh-1')

    def test_finish_tally_without_pallets(self) -> None:
        order, _lines = self._unloading_order(('SKU1', 100))
        with self.assertRaises(NothingConfirmedError):
            finish_tally(self.db, order_id=order.id, actor='wh-1')
        self.assertEqual(order.status, ReceivingOrderStatus.UNLOADING)

    def test_partial_receipt_shows_in_summary(self) -> None:
        order, (line_one, line_two) = self._unloading_order(('SKU1', 100), ('SKU2', 40))
        confirm_pallet(self.db, line_id=line_one.id, actual_qty=50, actor='wh-1')
        confirm_pallet(self.db, line_id=line_two.id, actual_qty=20, actor='wh-1')
        finish_tally(self.db, order_id=order.id, actor='wh-1')

        summary = {row.item_id: row.difference for row in receiving_summary(self.db, order_id=order.id)}
        self.assertEqual(summary, {'SKU1': -50, 'SKU2': -20})

    def test_tally_rows_report_open_quantity(self) -> None:
        order, (line,) = self._unloading_order(('SKU1', 100))
        confirm_pallet(self.db, line_id=line.id, actual_qty=50, actor='wh-1')

        (row,) = tally_rows(self.db, order_id=order.id)
        self.assertEqual(row.expected_pallets, 2)
        self.assertEqual(row.confirmed_qty, 50)
        self.assertEqual(row.cross_dock_qty, 0)
        self.assertEqual(row.open_qty, 50)

    def test_attach_form_requires_reference_and_finished_tally(self) -> None:
        order, (line,) = self._unloading_order(('SKU1', 100))
        confirm_pallet(self.db, line_id=line.id, actual_qty=50, actor='wh-1')

        with self.assertRaises(InvalidStateError):
            attach_receiving_form(self.db, order_id=order.id, signed_form_ref='forms/r1.pdf', actor='wh-1')

        finish_tally(self.db, order_id=order.id, actor='wh-1')
        with self.assertRaises(MissingDocumentError):
            attach_receiving_form(self.db, order_id=order.id, signed_form_ref='  ', actor='wh-1')

        attach_receiving_form(self.db, order_id=order.id, signed_form_ref='forms/r1.pdf', actor='wh-1')
        self.assertEqual(order.signed_form_ref, 'forms/r1.pdf')


if __name__ == '__main__':
    unittest.main()
