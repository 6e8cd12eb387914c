from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from palletflow.config import settings
from palletflow.errors import ConcurrencyConflictError, NoEligibleDemandError
from palletflow.models import (
    Pallet,
    PalletStatus,
    ReceivingOrderStatus,
    ShippingOrder,
    ShippingOrderLine,
    ShippingOrderStatus,
)
from palletflow.services.audit_service import log_audit
from palletflow.services.item_lock_service import ItemLocks, lock_items_for_transaction
from palletflow.services.quantity_ledger_service import remaining_qty_for
from palletflow.services.receiving_service import (
    ensure_line_capacity,
    get_product,
    get_receiving_line,
    get_receiving_order,
    require_positive_qty,
)
from palletflow.services.retry_service import RetryPolicy, run_in_transaction
from palletflow.services.status_transition_service import ensure_status

logger = logging.getLogger(__name__)

SHIP_NOW_ORDER_STATUSES = (ShippingOrderStatus.PENDING, ShippingOrderStatus.PICKING)


@dataclass(frozen=True)
class DemandCandidate:
    shipping_order_id: int
    order_ref: str
    created_at: datetime
    requested_qty: int
    remaining_qty: int


@dataclass(frozen=True)
class CrossDockAllocation:
    pallet: Pallet
    shipping_order_id: int
    order_ref: str
    allocated_qty: int
    excess_qty: int


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _assigned_rows(db: Session, *, shipping_order_ids: list[int], item_id: str) -> list:
    if not shipping_order_ids:
        return []
    return db.execute(
        select(Pallet.item_id, Pallet.qty, Pallet.shipping_order_id, Pallet.receiving_order_id, Pallet.is_cross_dock)
        .where(Pallet.shipping_order_id.in_(shipping_order_ids), Pallet.item_id == item_id)
    ).all()


def eligible_demand(db: Session, *, item_id: str, lock_lines: bool = False) -> list[DemandCandidate]:
    """Open shipping orders still short of `item_id`, earliest first (ties by order id)."""
    stmt = (
        select(ShippingOrder.id, ShippingOrder.order_ref, ShippingOrder.created_at, ShippingOrderLine)
        .join(ShippingOrderLine, ShippingOrderLine.shipping_order_id == ShippingOrder.id)
        .where(
            ShippingOrderLine.item_id == item_id,
            ShippingOrder.status.in_(SHIP_NOW_ORDER_STATUSES),
        )
        .order_by(ShippingOrder.created_at.asc(), ShippingOrder.id.asc())
    )
    if lock_lines:
        stmt = stmt.with_for_update(of=ShippingOrderLine)
    rows = db.execute(stmt).all()

    lines = [row.ShippingOrderLine for row in rows]
    assigned = _assigned_rows(db, shipping_order_ids=[row.id for row in rows], item_id=item_id)

    candidates: list[DemandCandidate] = []
    for row in rows:
        remaining = remaining_qty_for(lines, assigned, shipping_order_id=row.id, item_id=item_id)
        if remaining <= 0:
            continue
        candidates.append(
            DemandCandidate(
                shipping_order_id=row.id,
                order_ref=row.order_ref,
                created_at=row.created_at,
                requested_qty=row.ShippingOrderLine.requested_qty,
                remaining_qty=remaining,
            )
        )
    return candidates


def _verify_budget(db: Session, *, candidate: DemandCandidate, item_id: str) -> None:
    total = db.execute(
        select(func.coalesce(func.sum(Pallet.qty), 0)).where(
            Pallet.shipping_order_id == candidate.shipping_order_id,
            Pallet.item_id == item_id,
        )
    ).scalar_one()
    if total > candidate.requested_qty:
        raise ConcurrencyConflictError(
            f'Shipping order {candidate.order_ref} was allocated concurrently '
            f'({total} assigned of {candidate.requested_qty} requested)'
        )


def _allocate(db: Session, *, line_id: int, tallied_qty: int, actor: str | None) -> CrossDockAllocation:
    line = get_receiving_line(db, line_id=line_id, for_update=True)
    order = get_receiving_order(db, order_id=line.receiving_order_id, for_update=True)
    ensure_status(order.status, [ReceivingOrderStatus.UNLOADING], entity='receiving order', action='ship-now from')
    lock_items_for_transaction(db, [line.item_id])

    candidates = eligible_demand(db, item_id=line.item_id, lock_lines=True)
    if not candidates:
        raise NoEligibleDemandError(f'No eligible shipping orders found for item {line.item_id}')
    chosen = candidates[0]
    allocated_qty = min(tallied_qty, chosen.remaining_qty)

    ensure_line_capacity(db, line=line, product=get_product(db, item_id=line.item_id), additional_qty=allocated_qty)

    now = _now()
    pallet = Pallet(
        item_id=line.item_id,
        qty=allocated_qty,
        status=PalletStatus.RECEIVED,
        receiving_order_id=order.id,
        shipping_order_id=chosen.shipping_order_id,
        is_cross_dock=True,
        created_at=now,
        received_at=now,
    )
    db.add(pallet)
    db.flush()
    _verify_budget(db, candidate=chosen, item_id=line.item_id)

    log_audit(
        db,
        actor=actor,
        action='PALLET_SHIP_NOW',
        entity_type='pallet',
        entity_id=pallet.id,
        metadata={
            'receiving_order_id': order.id,
            'shipping_order_id': chosen.shipping_order_id,
            'item_id': line.item_id,
            'tallied_qty': tallied_qty,
            'allocated_qty': allocated_qty,
        },
    )
    return CrossDockAllocation(
        pallet=pallet,
        shipping_order_id=chosen.shipping_order_id,
        order_ref=chosen.order_ref,
        allocated_qty=allocated_qty,
        excess_qty=tallied_qty - allocated_qty,
    )


def ship_now(
    db: Session,
    *,
    line_id: int,
    tallied_qty: int,
    actor: str | None,
    locks: ItemLocks,
    policy: RetryPolicy | None = None,
    max_attempts: int | None = None,
) -> CrossDockAllocation:
    """Route freshly tallied units straight to the earliest open shipping order for the item.

    The decision and its commit happen under the item's lock. A lost race
    (ConcurrencyConflictError) re-runs the whole eligibility check; store
    timeouts are retried by `policy` without reusing the earlier decision.
    """
    require_positive_qty(tallied_qty)
    # Read outside the lock in its own short transaction so no snapshot is held while waiting.
    item_id = run_in_transaction(db, lambda: get_receiving_line(db, line_id=line_id).item_id, policy=policy)
    attempts = max_attempts or settings.allocator_max_attempts

    with locks.hold(item_id):
        attempt = 1
        while True:
            try:
                allocation = run_in_transaction(
                    db,
                    lambda: _allocate(db, line_id=line_id, tallied_qty=tallied_qty, actor=actor),
                    policy=policy,
                )
            except ConcurrencyConflictError:
                if attempt >= attempts:
                    raise
                logger.warning('SHIP-NOW for item %s lost a race (attempt %s/%s); re-checking demand', item_id, attempt, attempts)
                attempt += 1
                continue
            logger.info(
                'SHIP-NOW item %s: %s unit(s) to shipping order %s, %s left for normal tally',
                item_id,
                allocation.allocated_qty,
                allocation.order_ref,
                allocation.excess_qty,
            )
            return allocation
