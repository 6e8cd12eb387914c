from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from palletflow.config import settings
from palletflow.errors import (
    ConcurrencyConflictError,
    InvalidStateError,
    MissingDocumentError,
    NotFoundError,
    NothingConfirmedError,
    ValidationError,
)
from palletflow.models import (
    Pallet,
    PalletStatus,
    Product,
    ReceivingOrder,
    ReceivingOrderLine,
    ReceivingOrderStatus,
)
from palletflow.services.audit_service import log_audit
from palletflow.services.quantity_ledger_service import (
    DiscrepancyRow,
    confirmed_totals,
    expected_pallet_count,
    line_capacity_qty,
    receiving_discrepancies,
)
from palletflow.services.status_transition_service import (
    RECEIVING_TRANSITIONS,
    ensure_status,
    next_status,
    receiving_terminal_action,
)

logger = logging.getLogger(__name__)

TERMINAL_RECEIVING_STATUSES = (ReceivingOrderStatus.STAGED, ReceivingOrderStatus.RECEIVED)


@dataclass(frozen=True)
class OrderLineInput:
    item_id: str
    qty: int


@dataclass(frozen=True)
class TallyRow:
    line_id: int
    item_id: str
    description: str
    expected_qty: int
    units_per_pallet: int
    expected_pallets: int
    confirmed_pallet_ids: list[int]
    confirmed_qty: int
    cross_dock_qty: int
    open_qty: int


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def require_positive_qty(qty, *, field: str = 'qty') -> int:
    if isinstance(qty, bool) or not isinstance(qty, int):
        raise ValidationError(f'{field} must be an integer')
    if qty <= 0:
        raise ValidationError(f'{field} must be > 0')
    return qty


def validate_order_lines(
    db: Session,
    lines: list[OrderLineInput],
    *,
    qty_field: str,
    require_active: bool,
) -> dict[str, Product]:
    """Row-numbered validation of requested/expected lines; row 1 is the CSV header."""
    if not lines:
        raise ValidationError('At least one line is required')

    item_ids = {line.item_id.strip() for line in lines if line.item_id and line.item_id.strip()}
    products = {
        product.item_id: product
        for product in db.execute(select(Product).where(Product.item_id.in_(item_ids))).scalars().all()
    }

    problems: list[dict] = []
    seen: set[str] = set()
    for index, line in enumerate(lines):
        row = index + 2
        item_id = (line.item_id or '').strip()
        if not item_id:
            problems.append({'row': row, 'field': 'item_id', 'message': 'item_id is required'})
        elif item_id not in products:
            problems.append({'row': row, 'field': 'item_id', 'message': f'item_id "{item_id}" not found in product master'})
        elif require_active and not products[item_id].active:
            problems.append({'row': row, 'field': 'item_id', 'message': f'item_id "{item_id}" is inactive'})
        elif item_id in seen:
            problems.append({'row': row, 'field': 'item_id', 'message': f'item_id "{item_id}" appears more than once'})
        seen.add(item_id)

        if isinstance(line.qty, bool) or not isinstance(line.qty, int):
            problems.append({'row': row, 'field': qty_field, 'message': f'{qty_field} must be an integer'})
        elif line.qty <= 0:
            problems.append({'row': row, 'field': qty_field, 'message': f'{qty_field} must be > 0'})

    if problems:
        raise ValidationError(f'{len(problems)} line error(s)', problems=problems)
    return products


def create_receiving_order(
    db: Session,
    *,
    container_num: str,
    seal_num: str,
    created_by: str,
    lines: list[OrderLineInput],
) -> ReceivingOrder:
    container_num = (container_num or '').strip()
    seal_num = (seal_num or '').strip()
    if not container_num:
        raise ValidationError('Container number is required')
    if not seal_num:
        raise ValidationError('Seal number is required')
    validate_order_lines(db, lines, qty_field='qty', require_active=True)

    order = ReceivingOrder(
        container_num=container_num,
        seal_num=seal_num,
        created_by=created_by,
        status=ReceivingOrderStatus.PENDING,
    )
    db.add(order)
    db.flush()

    db.add_all(
        [
            ReceivingOrderLine(receiving_order_id=order.id, item_id=line.item_id.strip(), expected_qty=line.qty)
            for line in lines
        ]
    )
    db.flush()
    log_audit(
        db,
        actor=created_by,
        action='RECEIVING_ORDER_CREATED',
        entity_type='receiving_order',
        entity_id=order.id,
        metadata={'container_num': container_num, 'lines': len(lines)},
    )
    return order


def get_receiving_order(db: Session, *, order_id: int, for_update: bool = False) -> ReceivingOrder:
    stmt = select(ReceivingOrder).where(ReceivingOrder.id == order_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    order = db.execute(stmt).scalar_one_or_none()
    if not order:
        raise NotFoundError('Receiving order not found')
    return order


def get_receiving_line(db: Session, *, line_id: int, for_update: bool = False) -> ReceivingOrderLine:
    stmt = select(ReceivingOrderLine).where(ReceivingOrderLine.id == line_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    line = db.execute(stmt).scalar_one_or_none()
    if not line:
        raise NotFoundError('Receiving order line not found')
    return line


def list_receiving_lines(db: Session, *, order_id: int) -> list[ReceivingOrderLine]:
    return db.execute(
        select(ReceivingOrderLine)
        .where(ReceivingOrderLine.receiving_order_id == order_id)
        .order_by(ReceivingOrderLine.id.asc())
    ).scalars().all()


def get_product(db: Session, *, item_id: str) -> Product:
    product = db.execute(select(Product).where(Product.item_id == item_id)).scalar_one_or_none()
    if not product:
        raise NotFoundError(f'Product {item_id} not found')
    return product


def pallet_ledger_rows(db: Session, *, receiving_order_id: int, item_id: str | None = None) -> list:
    # Column rows rather than entities so every read reflects the current transaction.
    stmt = select(
        Pallet.id,
        Pallet.item_id,
        Pallet.qty,
        Pallet.status,
        Pallet.receiving_order_id,
        Pallet.shipping_order_id,
        Pallet.is_cross_dock,
    ).where(Pallet.receiving_order_id == receiving_order_id)
    if item_id is not None:
        stmt = stmt.where(Pallet.item_id == item_id)
    return db.execute(stmt.order_by(Pallet.id.asc())).all()


def ensure_line_capacity(
    db: Session,
    *,
    line: ReceivingOrderLine,
    product: Product,
    additional_qty: int,
    expected_confirmed_count: int | None = None,
) -> None:
    rows = pallet_ledger_rows(db, receiving_order_id=line.receiving_order_id, item_id=line.item_id)
    totals = confirmed_totals(rows, receiving_order_id=line.receiving_order_id, item_id=line.item_id)
    if expected_confirmed_count is not None:
        # Compared against the tally view, which lists normal pallets only.
        tallied = confirmed_totals(
            rows, receiving_order_id=line.receiving_order_id, item_id=line.item_id, include_cross_dock=False
        )
        if tallied.confirmed_count != expected_confirmed_count:
            raise ConcurrencyConflictError(
                f'Line {line.id} changed: expected {expected_confirmed_count} confirmed pallet(s), '
                f'found {tallied.confirmed_count}'
            )
    capacity = line_capacity_qty(line.expected_qty, product.units_per_pallet)
    new_total = totals.confirmed_qty + additional_qty
    if new_total > capacity:
        raise ValidationError(
            f'Total qty ({new_total}) would exceed the expected quantity for {line.item_id} '
            f'({capacity}). Only {max(capacity - totals.confirmed_qty, 0)} units remaining.'
        )


def _tally_guard(order: ReceivingOrder, *, action: str) -> None:
    ensure_status(order.status, [ReceivingOrderStatus.UNLOADING], entity='receiving order', action=action)


def select_for_unloading(db: Session, *, order_id: int, actor: str | None) -> tuple[ReceivingOrder, bool]:
    order = get_receiving_order(db, order_id=order_id, for_update=True)
    if order.status == ReceivingOrderStatus.UNLOADING:
        return order, False

    order.status = next_status(RECEIVING_TRANSITIONS, order.status, 'unload', entity='receiving order')
    order.updated_at = _now()
    log_audit(db, actor=actor, action='RECEIVING_UNLOADING_STARTED', entity_type='receiving_order', entity_id=order.id)
    return order, True


def confirm_pallet(
    db: Session,
    *,
    line_id: int,
    actual_qty: int,
    actor: str | None,
    expected_confirmed_count: int | None = None,
) -> Pallet:
    require_positive_qty(actual_qty)
    line = get_receiving_line(db, line_id=line_id, for_update=True)
    order = get_receiving_order(db, order_id=line.receiving_order_id, for_update=True)
    _tally_guard(order, action='confirm pallets for')
    product = get_product(db, item_id=line.item_id)
    ensure_line_capacity(
        db,
        line=line,
        product=product,
        additional_qty=actual_qty,
        expected_confirmed_count=expected_confirmed_count,
    )

    now = _now()
    pallet = Pallet(
        item_id=line.item_id,
        qty=actual_qty,
        status=PalletStatus.RECEIVED,
        receiving_order_id=order.id,
        shipping_order_id=None,
        is_cross_dock=False,
        created_at=now,
        received_at=now,
    )
    db.add(pallet)
    db.flush()
    log_audit(
        db,
        actor=actor,
        action='PALLET_CONFIRMED',
        entity_type='pallet',
        entity_id=pallet.id,
        metadata={'receiving_order_id': order.id, 'item_id': line.item_id, 'qty': actual_qty},
    )
    return pallet


def undo_pallet(
    db: Session,
    *,
    pallet_id: int,
    actor: str | None,
    expected_confirmed_count: int | None = None,
) -> None:
    pallet = db.execute(
        select(Pallet).where(Pallet.id == pallet_id).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not pallet:
        raise NotFoundError('Pallet not found')
    if pallet.receiving_order_id is None:
        raise InvalidStateError('Pallet is not part of a receiving tally')

    order = get_receiving_order(db, order_id=pallet.receiving_order_id, for_update=True)
    if order.status != ReceivingOrderStatus.UNLOADING:
        raise InvalidStateError(
            f'Cannot undo pallet: receiving order {order.id} is {order.status.value} and no longer tallying'
        )
    if pallet.status != PalletStatus.RECEIVED:
        raise InvalidStateError(f'Cannot undo pallet in status {pallet.status.value}')

    if expected_confirmed_count is not None:
        current = db.execute(
            select(func.count(Pallet.id)).where(
                Pallet.receiving_order_id == pallet.receiving_order_id,
                Pallet.item_id == pallet.item_id,
                Pallet.is_cross_dock.is_(False),
            )
        ).scalar_one()
        if current != expected_confirmed_count:
            raise ConcurrencyConflictError(
                f'Tally changed: expected {expected_confirmed_count} confirmed pallet(s), found {current}'
            )

    log_audit(
        db,
        actor=actor,
        action='PALLET_UNDONE',
        entity_type='pallet',
        entity_id=pallet.id,
        metadata={'receiving_order_id': order.id, 'item_id': pallet.item_id, 'qty': pallet.qty},
    )
    db.delete(pallet)
    db.flush()


def finish_tally(
    db: Session,
    *,
    order_id: int,
    actor: str | None,
    terminal_status: str | None = None,
) -> ReceivingOrder:
    order = get_receiving_order(db, order_id=order_id, for_update=True)
    action = receiving_terminal_action(terminal_status or settings.receiving_terminal_status)
    target = next_status(RECEIVING_TRANSITIONS, order.status, action, entity='receiving order')

    pallet_count = db.execute(
        select(func.count(Pallet.id)).where(Pallet.receiving_order_id == order.id)
    ).scalar_one()
    if pallet_count == 0:
        raise NothingConfirmedError('Please confirm at least 1 pallet before finishing the tally')

    order.status = target
    order.updated_at = _now()
    log_audit(
        db,
        actor=actor,
        action='RECEIVING_TALLY_FINISHED',
        entity_type='receiving_order',
        entity_id=order.id,
        metadata={'status': target.value, 'pallets': pallet_count},
    )
    logger.info('Receiving order %s tallied with %s pallet(s) -> %s', order.id, pallet_count, target.value)
    return order


def tally_rows(db: Session, *, order_id: int) -> list[TallyRow]:
    get_receiving_order(db, order_id=order_id)
    lines = list_receiving_lines(db, order_id=order_id)
    products = {
        product.item_id: product
        for product in db.execute(
            select(Product).where(Product.item_id.in_([line.item_id for line in lines]))
        ).scalars().all()
    }
    pallets = pallet_ledger_rows(db, receiving_order_id=order_id)

    rows: list[TallyRow] = []
    for line in lines:
        product = products[line.item_id]
        own = [pallet for pallet in pallets if pallet.item_id == line.item_id]
        normal = [pallet for pallet in own if not pallet.is_cross_dock]
        cross_dock_qty = sum(pallet.qty for pallet in own if pallet.is_cross_dock)
        confirmed_qty = sum(pallet.qty for pallet in normal)
        rows.append(
            TallyRow(
                line_id=line.id,
                item_id=line.item_id,
                description=product.description,
                expected_qty=line.expected_qty,
                units_per_pallet=product.units_per_pallet,
                expected_pallets=expected_pallet_count(line.expected_qty, product.units_per_pallet),
                confirmed_pallet_ids=[pallet.id for pallet in normal],
                confirmed_qty=confirmed_qty,
                cross_dock_qty=cross_dock_qty,
                open_qty=max(line.expected_qty - confirmed_qty - cross_dock_qty, 0),
            )
        )
    return rows


def receiving_summary(db: Session, *, order_id: int) -> list[DiscrepancyRow]:
    get_receiving_order(db, order_id=order_id)
    return receiving_discrepancies(
        list_receiving_lines(db, order_id=order_id),
        pallet_ledger_rows(db, receiving_order_id=order_id),
    )


def attach_receiving_form(db: Session, *, order_id: int, signed_form_ref: str | None, actor: str | None) -> ReceivingOrder:
    if not signed_form_ref or not signed_form_ref.strip():
        raise MissingDocumentError('A signed receiving form is required')
    order = get_receiving_order(db, order_id=order_id, for_update=True)
    ensure_status(order.status, TERMINAL_RECEIVING_STATUSES, entity='receiving order', action='attach a form to')
    order.signed_form_ref = signed_form_ref.strip()
    order.updated_at = _now()
    log_audit(
        db,
        actor=actor,
        action='RECEIVING_FORM_ATTACHED',
        entity_type='receiving_order',
        entity_id=order.id,
        metadata={'signed_form_ref': order.signed_form_ref},
    )
    return order
