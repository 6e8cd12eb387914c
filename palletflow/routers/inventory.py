from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from palletflow.auth import Principal, Role, require_role
from palletflow.db import get_db
from palletflow.schemas import LocationIn, PalletOut, PlacementOut, WriteOffIn
from palletflow.services.inventory_service import PlacementResult, move_pallet, put_away, write_off
from palletflow.services.retry_service import run_in_transaction

router = APIRouter(prefix='/inventory', tags=['inventory'])

warehouse_access = require_role(Role.WAREHOUSE)


def _placement_out(result: PlacementResult) -> PlacementOut:
    return PlacementOut(
        pallet=PalletOut.model_validate(result.pallet),
        location_id=result.location_id,
        other_pallets_at_location=result.other_pallets_at_location,
    )


@router.post('/pallets/{pallet_id}/put-away', response_model=PlacementOut)
def put_away_pallet(
    pallet_id: int,
    payload: LocationIn,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    result = run_in_transaction(
        db,
        lambda: put_away(db, pallet_id=pallet_id, location_id=payload.location_id, actor=principal.id),
    )
    return _placement_out(result)


@router.post('/pallets/{pallet_id}/move', response_model=PlacementOut)
def move_stored_pallet(
    pallet_id: int,
    payload: LocationIn,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    result = run_in_transaction(
        db,
        lambda: move_pallet(db, pallet_id=pallet_id, location_id=payload.location_id, actor=principal.id),
    )
    return _placement_out(result)


@router.post('/pallets/{pallet_id}/write-off', response_model=PalletOut)
def write_off_pallet(
    pallet_id: int,
    payload: WriteOffIn,
    principal: Principal = Depends(warehouse_access),
    db: Session = Depends(get_db),
):
    return run_in_transaction(
        db,
        lambda: write_off(db, pallet_id=pallet_id, reason=payload.reason, actor=principal.id),
    )
