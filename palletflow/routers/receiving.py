from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from palletflow.auth import Principal, Role, require_role
from palletflow.db import get_db
from palletflow.dependencies import get_item_locks
from palletflow.schemas import (
    ConfirmPalletIn,
    DiscrepancyOut,
    DocumentIn,
    FinishTallyIn,
    PalletOut,
    ReceivingOrderCreate,
    ReceivingOrderOut,
    ShipNowIn,
    ShipNowOut,
    TallyRowOut,
    UndoPalletIn,
)
from palletflow.services.cross_dock_service import ship_now
from palletflow.services.item_lock_service import ItemLocks
from palletflow.services.receiving_service import (
    OrderLineInput,
    attach_receiving_form,
    confirm_pallet,
    create_receiving_order,
    finish_tally,
    get_receiving_line,
    get_receiving_order,
    receiving_summary,
    select_for_unloading,
    tally_rows,
    undo_pallet,
)
from palletflow.services.retry_service import run_in_transaction

router = APIRouter(prefix='/receiving', tags=['receiving'])

cse_access = require_role(Role.CSE)
warehouse_access = require_role(Role.WAREHOUSE)
order_read_access = require_role(Role.WAREHOUSE, Role.CSE)


@router.post('/orders', response_model=ReceivingOrderOut, status_code=status.HTTP_201_CREATED)
def create_order(
    payload: ReceivingOrderCreate,
    principal: Principal = Depends(cse_access),
    db: Session = Depends(get_db),
):
    lines = [OrderLineInput(item_id=line.item_id, qty=line.qty) for line in payload.lines]
    return run_in_transaction(
        db,
        lambda: create_receiving_order(
            db,
            container_num=payload.container_num,
            seal_num=payload.seal_num,
            created_by=principal.name,
            lines=lines,
        ),
    )


@router.get('/orders/{order_id}', response_model=ReceivingOrderOut)
def read_order(
    order_id: int,
    principal: Principal = Depends(order_read_access),
    db: Session = Depends(get_db),
):
    return get_receiving_order(db, order_id=order_id)


@router.post('/orders/{order_id}/unload', response_model=ReceivingOrderOut)
def start_unloading(
    order_id: int,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    order, _changed = run_in_transaction(db, lambda: select_for_unloading(db, order_id=order_id, actor=principal.id))
    return order


@router.get('/orders/{order_id}/tally', response_model=list[TallyRowOut])
def read_tally(
    order_id: int,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    return tally_rows(db, order_id=order_id)


@router.post('/lines/{line_id}/pallets', response_model=PalletOut, status_code=status.HTTP_201_CREATED)
def confirm_line_pallet(
    line_id: int,
    payload: ConfirmPalletIn,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
    locks: ItemLocks = Depends(get_item_locks),
):
    item_id = run_in_transaction(db, lambda: get_receiving_line(db, line_id=line_id).item_id)
    with locks.hold(item_id):
        return run_in_transaction(
            db,
            lambda: confirm_pallet(
                db,
                line_id=line_id,
                actual_qty=payload.actual_qty,
                actor=principal.id,
                expected_confirmed_count=payload.expected_confirmed_count,
            ),
        )


@router.delete('/pallets/{pallet_id}', status_code=status.HTTP_204_NO_CONTENT)
def undo_line_pallet(
    pallet_id: int,
    payload: UndoPalletIn | None = None,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    expected = payload.expected_confirmed_count if payload else None
    run_in_transaction(
        db,
        lambda: undo_pallet(db, pallet_id=pallet_id, actor=principal.id, expected_confirmed_count=expected),
    )


@router.post('/lines/{line_id}/ship-now', response_model=ShipNowOut, status_code=status.HTTP_201_CREATED)
def ship_now_from_line(
    line_id: int,
    payload: ShipNowIn,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
    locks: ItemLocks = Depends(get_item_locks),
):
    allocation = ship_now(db, line_id=line_id, tallied_qty=payload.tallied_qty, actor=principal.id, locks=locks)
    return ShipNowOut(
        pallet=PalletOut.model_validate(allocation.pallet),
        shipping_order_id=allocation.shipping_order_id,
        order_ref=allocation.order_ref,
        allocated_qty=allocation.allocated_qty,
        excess_qty=allocation.excess_qty,
    )


@router.post('/orders/{order_id}/finish-tally', response_model=ReceivingOrderOut)
def finish_order_tally(
    order_id: int,
    payload: FinishTallyIn | None = None,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    terminal_status = payload.terminal_status.value if payload and payload.terminal_status else None
    return run_in_transaction(
        db,
        lambda: finish_tally(db, order_id=order_id, actor=principal.id, terminal_status=terminal_status),
    )


@router.get('/orders/{order_id}/summary', response_model=list[DiscrepancyOut])
def read_summary(
    order_id: int,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    return receiving_summary(db, order_id=order_id)


@router.post('/orders/{order_id}/form', response_model=ReceivingOrderOut)
def attach_form(
    order_id: int,
    payload: DocumentIn,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    return run_in_transaction(
        db,
        lambda: attach_receiving_form(db, order_id=order_id, signed_form_ref=payload.signed_form_ref, actor=principal.id),
    )
