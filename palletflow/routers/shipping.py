from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.orm import Session

from palletflow.auth import Principal, Role, require_role
from palletflow.db import get_db
from palletflow.dependencies import get_email_dispatcher, get_item_locks
from palletflow.schemas import (
    CloseManifestIn,
    ContainerManifestCreate,
    LoadPalletIn,
    LoadTargetIn,
    ManifestOut,
    PalletOut,
    PickIn,
    ShippingOrderCreate,
    ShippingOrderDetailOut,
    ShippingOrderOut,
)
from palletflow.services.email_dispatcher import EmailDispatcher
from palletflow.services.item_lock_service import ItemLocks
from palletflow.services.notification_service import deliver_shipping_confirmation
from palletflow.services.receiving_service import OrderLineInput
from palletflow.services.retry_service import run_in_transaction
from palletflow.services.shipping_service import (
    cancel_manifest,
    close_manifest,
    create_shipping_order,
    finish_loading,
    finish_picking,
    get_shipping_order,
    load_pallet,
    loaded_items,
    pallet_item_ids,
    pick,
    register_container_manifest,
    remaining_by_item,
    select_load_target,
    unpick,
)

router = APIRouter(prefix='/shipping', tags=['shipping'])

cse_access = require_role(Role.CSE)
warehouse_access = require_role(Role.WAREHOUSE)


@router.post('/orders', response_model=ShippingOrderOut, status_code=status.HTTP_201_CREATED)
def create_order(
    payload: ShippingOrderCreate,
    principal: Principal = Depends(cse_access),
    db: Session = Depends(get_db),
):
    lines = [OrderLineInput(item_id=line.item_id, qty=line.qty) for line in payload.lines]
    return run_in_transaction(
        db,
        lambda: create_shipping_order(
            db,
            order_ref=payload.order_ref,
            shipment_type=payload.shipment_type,
            seal_num=payload.seal_num,
            lines=lines,
            actor=principal.id,
        ),
    )


@router.get('/orders/{order_id}', response_model=ShippingOrderDetailOut)
def read_order(
    order_id: int,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    order = get_shipping_order(db, order_id=order_id)
    return ShippingOrderDetailOut(
        **ShippingOrderOut.model_validate(order).model_dump(),
        remaining_by_item=remaining_by_item(db, order_id=order.id),
        loaded_items=loaded_items(db, order_id=order.id),
    )


@router.post('/orders/{order_id}/pick', response_model=ShippingOrderOut)
def pick_pallets(
    order_id: int,
    payload: PickIn,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
    locks: ItemLocks = Depends(get_item_locks),
):
    item_ids = run_in_transaction(db, lambda: pallet_item_ids(db, pallet_ids=payload.pallet_ids))
    with locks.hold_many(item_ids):
        return run_in_transaction(
            db,
            lambda: pick(db, order_id=order_id, pallet_ids=payload.pallet_ids, actor=principal.id),
        )


@router.delete('/orders/{order_id}/pick/{pallet_id}', response_model=PalletOut)
def unpick_pallet(
    order_id: int,
    pallet_id: int,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    return run_in_transaction(db, lambda: unpick(db, order_id=order_id, pallet_id=pallet_id, actor=principal.id))


@router.post('/orders/{order_id}/finish-picking', response_model=ShippingOrderOut)
def finish_order_picking(
    order_id: int,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    return run_in_transaction(db, lambda: finish_picking(db, order_id=order_id, actor=principal.id))


@router.post('/orders/{order_id}/load-target', response_model=ManifestOut)
def choose_load_target(
    order_id: int,
    payload: LoadTargetIn,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    return run_in_transaction(
        db,
        lambda: select_load_target(db, order_id=order_id, manifest_id=payload.manifest_id, actor=principal.id),
    )


@router.post('/orders/{order_id}/load', response_model=PalletOut)
def toggle_load(
    order_id: int,
    payload: LoadPalletIn,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    return run_in_transaction(
        db,
        lambda: load_pallet(
            db,
            order_id=order_id,
            pallet_id=payload.pallet_id,
            checked=payload.checked,
            actor=principal.id,
        ),
    )


@router.post('/orders/{order_id}/finish-loading', response_model=ShippingOrderOut)
def finish_order_loading(
    order_id: int,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    return run_in_transaction(db, lambda: finish_loading(db, order_id=order_id, actor=principal.id))


@router.post('/orders/{order_id}/close', response_model=ShippingOrderOut)
def close_order_manifest(
    order_id: int,
    payload: CloseManifestIn,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
    dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
):
    order = run_in_transaction(
        db,
        lambda: close_manifest(
            db,
            order_id=order_id,
            signed_form_ref=payload.signed_form_ref,
            actor=principal.id,
            photo_refs=payload.photo_refs,
        ),
    )
    # Runs after the response; the shipped state above is already committed.
    background_tasks.add_task(deliver_shipping_confirmation, order.id, dispatcher, list(payload.photo_refs))
    return order


@router.post('/manifests', response_model=ManifestOut, status_code=status.HTTP_201_CREATED)
def register_manifest(
    payload: ContainerManifestCreate,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    return run_in_transaction(
        db,
        lambda: register_container_manifest(
            db,
            container_num=payload.container_num,
            seal_num=payload.seal_num,
            actor=principal.id,
        ),
    )


@router.post('/manifests/{manifest_id}/cancel', response_model=ManifestOut)
def cancel_open_manifest(
    manifest_id: int,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    return run_in_transaction(db, lambda: cancel_manifest(db, manifest_id=manifest_id, actor=principal.id))
