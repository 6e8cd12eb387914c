from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from palletflow.auth import Principal, Role, require_role
from palletflow.db import get_db
from palletflow.schemas import CatalogIn
from palletflow.services.catalog_service import ProductRow, reset_and_load_catalog, upsert_products
from palletflow.services.retry_service import run_in_transaction

router = APIRouter(prefix='/catalog', tags=['catalog'])


def _rows(payload: CatalogIn) -> list[ProductRow]:
    return [
        ProductRow(
            item_id=product.item_id,
            units_per_pallet=product.units_per_pallet,
            description=product.description,
            pallet_positions=product.pallet_positions,
            active=product.active,
        )
        for product in payload.products
    ]


@router.post('/products')
def upsert_catalog_products(
    payload: CatalogIn,
    principal: Principal = Depends(require_role(Role.CSE)),
    db: Session = Depends(get_db),
):
    rows = _rows(payload)
    return run_in_transaction(db, lambda: upsert_products(db, rows=rows, actor=principal.id))


@router.post('/reset')
def reset_catalog(
    payload: CatalogIn,
    principal: Principal = Depends(require_role(Role.ADMIN)),
    db: Session = Depends(get_db),
):
    rows = _rows(payload)
    result = run_in_transaction(db, lambda: reset_and_load_catalog(db, rows=rows, actor=principal.id))
    return {'cleared': result.cleared, 'skipped_tables': result.skipped_tables, 'loaded': result.loaded}
