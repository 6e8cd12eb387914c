from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from palletflow.errors import ValidationError
from palletflow.models import Base, Product
from palletflow.services.audit_service import log_audit

logger = logging.getLogger(__name__)

# Children before parents so no foreign key is left dangling mid-reset.
RESET_TABLE_ORDER = (
    'receiving_order_lines',
    'shipping_order_lines',
    'pallets',
    'receiving_orders',
    'email_logs',
    'shipping_orders',
    'manifests',
    'products',
)

UNDEFINED_TABLE_SQLSTATE = '42P01'


@dataclass(frozen=True)
class ProductRow:
    item_id: str
    units_per_pallet: int
    description: str = ''
    pallet_positions: int | None = None
    active: bool = True


@dataclass(frozen=True)
class CatalogResetResult:
    cleared: dict[str, int]
    skipped_tables: list[str]
    loaded: int


def _positive_int(value, *, minimum: int) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number if number >= minimum else None


def validate_product_rows(rows: list[ProductRow]) -> list[Product]:
    """Turn parsed product-master rows into Product objects; row 1 is the CSV header."""
    if not rows:
        raise ValidationError('At least one product row is required')

    problems: list[dict] = []
    seen: set[str] = set()
    products: list[Product] = []
    for index, row in enumerate(rows):
        row_number = index + 2
        item_id = (row.item_id or '').strip()
        if not item_id:
            problems.append({'row': row_number, 'field': 'item_id', 'message': 'item_id is required'})
        elif item_id in seen:
            problems.append({'row': row_number, 'field': 'item_id', 'message': f'item_id "{item_id}" appears more than once'})
        seen.add(item_id)

        units_per_pallet = _positive_int(row.units_per_pallet, minimum=1)
        if units_per_pallet is None:
            problems.append(
                {'row': row_number, 'field': 'units_per_pallet', 'message': 'units_per_pallet must be a positive integer'}
            )

        pallet_positions = 1
        if row.pallet_positions not in (None, ''):
            pallet_positions = _positive_int(row.pallet_positions, minimum=1)
            if pallet_positions is None:
                problems.append(
                    {'row': row_number, 'field': 'pallet_positions', 'message': 'pallet_positions must be an integer >= 1'}
                )

        if item_id and units_per_pallet is not None and pallet_positions is not None:
            products.append(
                Product(
                    item_id=item_id,
                    description=(row.description or '').strip(),
                    units_per_pallet=units_per_pallet,
                    pallet_positions=pallet_positions,
                    active=bool(row.active),
                )
            )

    if problems:
        raise ValidationError(f'{len(problems)} product row error(s)', problems=problems)
    return products


def upsert_products(db: Session, *, rows: list[ProductRow], actor: str | None) -> dict[str, int]:
    incoming = validate_product_rows(rows)
    existing = {
        product.item_id: product
        for product in db.execute(
            select(Product).where(Product.item_id.in_([product.item_id for product in incoming]))
        ).scalars().all()
    }

    created = 0
    updated = 0
    for product in incoming:
        current = existing.get(product.item_id)
        if current is None:
            db.add(product)
            created += 1
            continue
        current.description = product.description
        current.units_per_pallet = product.units_per_pallet
        current.pallet_positions = product.pallet_positions
        current.active = product.active
        updated += 1

    db.flush()
    log_audit(
        db,
        actor=actor,
        action='CATALOG_PRODUCTS_UPSERTED',
        entity_type='product',
        metadata={'created': created, 'updated': updated},
    )
    logger.info('Catalog upsert: %s created, %s updated', created, updated)
    return {'created': created, 'updated': updated}


def is_missing_table_error(exc: DBAPIError) -> bool:
    orig = exc.orig
    if getattr(orig, 'sqlstate', None) == UNDEFINED_TABLE_SQLSTATE:
        return True
    return 'no such table' in str(orig).lower()


def reset_and_load_catalog(db: Session, *, rows: list[ProductRow], actor: str | None) -> CatalogResetResult:
    """Clear orders, pallets and products, then load a fresh product master.

    Everything happens in the caller's transaction. Each delete runs in its own
    savepoint so a table that does not exist yet can be skipped; any other
    failure propagates and the caller rolls the whole reset back.
    """
    products = validate_product_rows(rows)

    cleared: dict[str, int] = {}
    skipped: list[str] = []
    for table_name in RESET_TABLE_ORDER:
        table = Base.metadata.tables[table_name]
        try:
            with db.begin_nested():
                result = db.execute(delete(table))
        except DBAPIError as exc:
            if not is_missing_table_error(exc):
                raise
            logger.warning('Catalog reset: table %s not found, skipping', table_name)
            skipped.append(table_name)
            continue
        cleared[table_name] = result.rowcount or 0
        logger.info('Catalog reset: cleared %s row(s) from %s', cleared[table_name], table_name)

    # Bulk deletes bypass the identity map.
    db.expunge_all()
    db.add_all(products)
    db.flush()
    log_audit(
        db,
        actor=actor,
        action='CATALOG_RESET',
        entity_type='product',
        metadata={'cleared': cleared, 'skipped_tables': skipped, 'loaded': len(products)},
    )
    return CatalogResetResult(cleared=cleared, skipped_tables=skipped, loaded=len(products))
