from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from palletflow.errors import (
    InvalidStateError,
    MissingDocumentError,
    NoOpenManifestError,
    NotFoundError,
    ValidationError,
)
from palletflow.models import (
    Manifest,
    ManifestStatus,
    ManifestType,
    Pallet,
    PalletStatus,
    Product,
    ShipmentType,
    ShippingOrder,
    ShippingOrderLine,
    ShippingOrderStatus,
)
from palletflow.services.audit_service import log_audit
from palletflow.services.item_lock_service import lock_items_for_transaction
from palletflow.services.receiving_service import OrderLineInput, validate_order_lines
from palletflow.services.status_transition_service import (
    MANIFEST_TRANSITIONS,
    PALLET_TRANSITIONS,
    SHIPPING_TRANSITIONS,
    ensure_status,
    next_status,
)

logger = logging.getLogger(__name__)

PICKABLE_ORDER_STATUSES = (ShippingOrderStatus.PENDING, ShippingOrderStatus.PICKING)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def parse_shipment_type(value: ShipmentType | str) -> ShipmentType:
    try:
        return ShipmentType(value)
    except ValueError as exc:
        allowed = ', '.join(member.value for member in ShipmentType)
        raise ValidationError(f'Shipment type must be one of: {allowed}') from exc


def create_shipping_order(
    db: Session,
    *,
    order_ref: str,
    shipment_type: ShipmentType | str,
    seal_num: str | None,
    lines: list[OrderLineInput],
    actor: str | None,
) -> ShippingOrder:
    order_ref = (order_ref or '').strip()
    if not order_ref:
        raise ValidationError('Order reference is required')
    shipment_type = parse_shipment_type(shipment_type)
    seal_num = (seal_num or '').strip() or None
    if shipment_type == ShipmentType.HAND_DELIVERY and not seal_num:
        raise ValidationError('Seal number is required for Hand Delivery')
    validate_order_lines(db, lines, qty_field='qty_ordered', require_active=False)

    order = ShippingOrder(
        order_ref=order_ref,
        shipment_type=shipment_type,
        seal_num=seal_num,
        status=ShippingOrderStatus.PENDING,
        created_at=_now(),
    )
    db.add(order)
    db.flush()
    db.add_all(
        [
            ShippingOrderLine(shipping_order_id=order.id, item_id=line.item_id.strip(), requested_qty=line.qty)
            for line in lines
        ]
    )
    db.flush()
    log_audit(
        db,
        actor=actor,
        action='SHIPPING_ORDER_CREATED',
        entity_type='shipping_order',
        entity_id=order.id,
        metadata={'order_ref': order_ref, 'shipment_type': shipment_type.value, 'lines': len(lines)},
    )
    return order


def get_shipping_order(db: Session, *, order_id: int, for_update: bool = False) -> ShippingOrder:
    stmt = select(ShippingOrder).where(ShippingOrder.id == order_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    order = db.execute(stmt).scalar_one_or_none()
    if not order:
        raise NotFoundError('Shipping order not found')
    return order


def list_shipping_lines(db: Session, *, order_id: int, for_update: bool = False) -> list[ShippingOrderLine]:
    stmt = (
        select(ShippingOrderLine)
        .where(ShippingOrderLine.shipping_order_id == order_id)
        .order_by(ShippingOrderLine.id.asc())
    )
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalars().all()


def get_manifest(db: Session, *, manifest_id: int, for_update: bool = False) -> Manifest:
    stmt = select(Manifest).where(Manifest.id == manifest_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    manifest = db.execute(stmt).scalar_one_or_none()
    if not manifest:
        raise NotFoundError('Manifest not found')
    return manifest


def _get_pallet(db: Session, *, pallet_id: int) -> Pallet:
    pallet = db.execute(
        select(Pallet).where(Pallet.id == pallet_id).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not pallet:
        raise NotFoundError(f'Pallet {pallet_id} not found')
    return pallet


def assigned_qty_by_item(db: Session, *, order_id: int) -> dict[str, int]:
    rows = db.execute(
        select(Pallet.item_id, func.sum(Pallet.qty))
        .where(Pallet.shipping_order_id == order_id)
        .group_by(Pallet.item_id)
    ).all()
    return {item_id: int(total or 0) for item_id, total in rows}


def remaining_by_item(db: Session, *, order_id: int) -> dict[str, int]:
    assigned = assigned_qty_by_item(db, order_id=order_id)
    return {
        line.item_id: max(line.requested_qty - assigned.get(line.item_id, 0), 0)
        for line in list_shipping_lines(db, order_id=order_id)
    }


def pick(db: Session, *, order_id: int, pallet_ids: list[int], actor: str | None) -> ShippingOrder:
    if not pallet_ids:
        raise ValidationError('Select at least one pallet to pick')
    lock_items_for_transaction(db, pallet_item_ids(db, pallet_ids=pallet_ids))
    order = get_shipping_order(db, order_id=order_id, for_update=True)
    target = next_status(SHIPPING_TRANSITIONS, order.status, 'pick', entity='shipping order')
    requested = {line.item_id: line.requested_qty for line in list_shipping_lines(db, order_id=order.id, for_update=True)}
    assigned = assigned_qty_by_item(db, order_id=order.id)

    picked: list[int] = []
    for pallet_id in sorted(set(pallet_ids)):
        pallet = _get_pallet(db, pallet_id=pallet_id)
        if pallet.is_cross_dock and pallet.shipping_order_id == order.id and pallet.status == PalletStatus.RECEIVED:
            # Already reserved for this order by SHIP-NOW; it goes straight to loading.
            continue
        if pallet.status != PalletStatus.STORED or pallet.shipping_order_id is not None:
            raise InvalidStateError(f'Pallet {pallet.id} is not available for picking')
        if pallet.item_id not in requested:
            raise ValidationError(f'Item {pallet.item_id} is not on shipping order {order.order_ref}')

        new_total = assigned.get(pallet.item_id, 0) + pallet.qty
        if new_total > requested[pallet.item_id]:
            remaining = requested[pallet.item_id] - assigned.get(pallet.item_id, 0)
            raise ValidationError(
                f'Cannot pick: Total qty ({new_total}) would exceed ordered qty ({requested[pallet.item_id]}). '
                f'Only {remaining} units remaining for {pallet.item_id}.'
            )

        pallet.status = next_status(PALLET_TRANSITIONS, pallet.status, 'pick', entity='pallet')
        pallet.shipping_order_id = order.id
        assigned[pallet.item_id] = new_total
        picked.append(pallet.id)

    order.status = target
    db.flush()
    log_audit(
        db,
        actor=actor,
        action='SHIPPING_PALLETS_PICKED',
        entity_type='shipping_order',
        entity_id=order.id,
        metadata={'pallet_ids': picked},
    )
    return order


def unpick(db: Session, *, order_id: int, pallet_id: int, actor: str | None) -> Pallet:
    order = get_shipping_order(db, order_id=order_id, for_update=True)
    ensure_status(order.status, PICKABLE_ORDER_STATUSES, entity='shipping order', action='unpick pallets from')
    pallet = _get_pallet(db, pallet_id=pallet_id)
    if pallet.shipping_order_id != order.id:
        raise InvalidStateError(f'Pallet {pallet.id} is not picked for shipping order {order.order_ref}')

    pallet.status = next_status(PALLET_TRANSITIONS, pallet.status, 'unpick', entity='pallet')
    pallet.shipping_order_id = None
    log_audit(
        db,
        actor=actor,
        action='SHIPPING_PALLET_UNPICKED',
        entity_type='pallet',
        entity_id=pallet.id,
        metadata={'shipping_order_id': order.id},
    )
    return pallet


def finish_picking(db: Session, *, order_id: int, actor: str | None) -> ShippingOrder:
    order = get_shipping_order(db, order_id=order_id, for_update=True)
    order.status = next_status(SHIPPING_TRANSITIONS, order.status, 'finish_picking', entity='shipping order')
    log_audit(db, actor=actor, action='SHIPPING_PICKING_FINISHED', entity_type='shipping_order', entity_id=order.id)
    return order


def register_container_manifest(db: Session, *, container_num: str, seal_num: str, actor: str | None) -> Manifest:
    container_num = (container_num or '').strip()
    seal_num = (seal_num or '').strip()
    if not container_num:
        raise ValidationError('Container number is required')
    if not seal_num:
        raise ValidationError('Seal number is required')

    manifest = Manifest(
        type=ManifestType.CONTAINER,
        container_num=container_num,
        seal_num=seal_num,
        status=ManifestStatus.OPEN,
    )
    db.add(manifest)
    db.flush()
    log_audit(
        db,
        actor=actor,
        action='CONTAINER_MANIFEST_REGISTERED',
        entity_type='manifest',
        entity_id=manifest.id,
        metadata={'container_num': container_num},
    )
    return manifest


def list_open_container_manifests(db: Session) -> list[Manifest]:
    return db.execute(
        select(Manifest)
        .where(Manifest.type == ManifestType.CONTAINER, Manifest.status == ManifestStatus.OPEN)
        .order_by(Manifest.created_at.asc(), Manifest.id.asc())
    ).scalars().all()


def _hand_manifest_for(db: Session, *, order: ShippingOrder) -> Manifest:
    if order.manifest_id is not None:
        current = get_manifest(db, manifest_id=order.manifest_id)
        if current.type == ManifestType.HAND and current.status == ManifestStatus.OPEN:
            return current

    manifest = Manifest(type=ManifestType.HAND, seal_num=order.seal_num or '', status=ManifestStatus.OPEN)
    db.add(manifest)
    db.flush()
    return manifest


def select_load_target(
    db: Session,
    *,
    order_id: int,
    manifest_id: int | None,
    actor: str | None,
) -> Manifest:
    order = get_shipping_order(db, order_id=order_id, for_update=True)
    ensure_status(order.status, [ShippingOrderStatus.LOADING], entity='shipping order', action='select a load target for')

    if order.shipment_type == ShipmentType.HAND_DELIVERY:
        manifest = _hand_manifest_for(db, order=order)
    else:
        open_manifests = list_open_container_manifests(db)
        if not open_manifests:
            raise NoOpenManifestError('No open container manifests. Register an empty container first.')
        if manifest_id is None:
            raise ValidationError('Select one of the open container manifests')
        manifest = next((candidate for candidate in open_manifests if candidate.id == manifest_id), None)
        if manifest is None:
            raise NoOpenManifestError(f'Manifest {manifest_id} is not an open container manifest')

    if order.manifest_id is not None and order.manifest_id != manifest.id:
        loaded = db.execute(
            select(func.count(Pallet.id)).where(
                Pallet.shipping_order_id == order.id,
                Pallet.status == PalletStatus.LOADED,
            )
        ).scalar_one()
        if loaded:
            raise InvalidStateError('Unload the pallets already loaded before switching the load target')

    order.manifest_id = manifest.id
    log_audit(
        db,
        actor=actor,
        action='SHIPPING_LOAD_TARGET_SELECTED',
        entity_type='shipping_order',
        entity_id=order.id,
        metadata={'manifest_id': manifest.id, 'manifest_type': manifest.type.value},
    )
    return manifest


def load_pallet(db: Session, *, order_id: int, pallet_id: int, checked: bool, actor: str | None) -> Pallet:
    order = get_shipping_order(db, order_id=order_id, for_update=True)
    ensure_status(order.status, [ShippingOrderStatus.LOADING], entity='shipping order', action='load pallets for')
    if order.manifest_id is None:
        raise InvalidStateError('Select a load target before loading pallets')
    manifest = get_manifest(db, manifest_id=order.manifest_id)
    if manifest.status != ManifestStatus.OPEN:
        raise InvalidStateError(f'Manifest {manifest.id} is {manifest.status.value}')

    pallet = _get_pallet(db, pallet_id=pallet_id)
    if pallet.shipping_order_id != order.id:
        raise InvalidStateError(f'Pallet {pallet.id} is not assigned to shipping order {order.order_ref}')

    if checked:
        if pallet.status == PalletStatus.LOADED:
            return pallet
        if pallet.status == PalletStatus.RECEIVED and not pallet.is_cross_dock:
            raise InvalidStateError(f'Pallet {pallet.id} must be picked before loading')
        target = next_status(PALLET_TRANSITIONS, pallet.status, 'load', entity='pallet')
        pallet.pre_load_status = pallet.status
        pallet.status = target
        pallet.manifest_id = manifest.id
        action = 'PALLET_LOADED'
    else:
        if pallet.status != PalletStatus.LOADED:
            return pallet
        pallet.status = pallet.pre_load_status or (
            PalletStatus.RECEIVED if pallet.is_cross_dock else PalletStatus.STAGED
        )
        pallet.pre_load_status = None
        pallet.manifest_id = None
        action = 'PALLET_UNLOADED'

    db.flush()
    log_audit(
        db,
        actor=actor,
        action=action,
        entity_type='pallet',
        entity_id=pallet.id,
        metadata={'shipping_order_id': order.id, 'manifest_id': manifest.id},
    )
    return pallet


def finish_loading(db: Session, *, order_id: int, actor: str | None) -> ShippingOrder:
    order = get_shipping_order(db, order_id=order_id, for_update=True)
    target = next_status(SHIPPING_TRANSITIONS, order.status, 'finish_loading', entity='shipping order')
    loaded = db.execute(
        select(func.count(Pallet.id)).where(
            Pallet.shipping_order_id == order.id,
            Pallet.status == PalletStatus.LOADED,
        )
    ).scalar_one()
    order.status = target
    log_audit(
        db,
        actor=actor,
        action='SHIPPING_LOADING_FINISHED',
        entity_type='shipping_order',
        entity_id=order.id,
        metadata={'loaded_pallets': loaded},
    )
    return order


def close_manifest(
    db: Session,
    *,
    order_id: int,
    signed_form_ref: str | None,
    actor: str | None,
    photo_refs: list[str] | None = None,
) -> ShippingOrder:
    """Ship every loaded pallet of the order in one unit of work.

    Nothing is written unless all pallets, the order and the manifest can move
    together; the caller's transaction rolls the whole set back otherwise.
    """
    if not signed_form_ref or not signed_form_ref.strip():
        raise MissingDocumentError('A signed customer form is required to close the manifest')

    order = get_shipping_order(db, order_id=order_id, for_update=True)
    target = next_status(SHIPPING_TRANSITIONS, order.status, 'close', entity='shipping order')
    if order.manifest_id is None:
        raise InvalidStateError(f'Shipping order {order.order_ref} has no manifest to close')
    manifest = get_manifest(db, manifest_id=order.manifest_id, for_update=True)
    if manifest.status == ManifestStatus.CANCELLED:
        raise InvalidStateError(f'Manifest {manifest.id} was cancelled')

    loaded = db.execute(
        select(Pallet)
        .where(Pallet.shipping_order_id == order.id, Pallet.status == PalletStatus.LOADED)
        .order_by(Pallet.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()

    now = _now()
    for pallet in loaded:
        pallet.status = next_status(PALLET_TRANSITIONS, pallet.status, 'ship', entity='pallet')
        pallet.pre_load_status = None
        pallet.shipped_at = now

    # Pallets that never reached the truck go back to open stock.
    released = db.execute(
        select(Pallet)
        .where(Pallet.shipping_order_id == order.id, Pallet.status != PalletStatus.SHIPPED)
        .order_by(Pallet.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()
    for pallet in released:
        if pallet.status == PalletStatus.STAGED:
            pallet.status = next_status(PALLET_TRANSITIONS, pallet.status, 'unpick', entity='pallet')
        pallet.shipping_order_id = None
        pallet.manifest_id = None

    order.status = target
    order.shipped_at = now
    manifest.signed_form_ref = signed_form_ref.strip()
    if order.shipment_type == ShipmentType.CONTAINER_LOADING and manifest.status == ManifestStatus.OPEN:
        manifest.status = next_status(MANIFEST_TRANSITIONS, manifest.status, 'close', entity='manifest')
        manifest.closed_at = now

    db.flush()
    log_audit(
        db,
        actor=actor,
        action='MANIFEST_CLOSED',
        entity_type='shipping_order',
        entity_id=order.id,
        metadata={
            'manifest_id': manifest.id,
            'shipped_pallets': [pallet.id for pallet in loaded],
            'released_pallets': [pallet.id for pallet in released],
            'signed_form_ref': manifest.signed_form_ref,
            'photo_refs': list(photo_refs or []),
        },
    )
    logger.info('Shipping order %s shipped with %s pallet(s)', order.order_ref, len(loaded))
    return order


def cancel_manifest(db: Session, *, manifest_id: int, actor: str | None) -> Manifest:
    manifest = get_manifest(db, manifest_id=manifest_id, for_update=True)
    target = next_status(MANIFEST_TRANSITIONS, manifest.status, 'cancel', entity='manifest')

    orders = db.execute(
        select(ShippingOrder).where(ShippingOrder.manifest_id == manifest.id).with_for_update()
    ).scalars().all()
    for order in orders:
        ensure_status(order.status, [ShippingOrderStatus.LOADING], entity='shipping order', action='cancel the manifest of')

    pallets = db.execute(
        select(Pallet).where(Pallet.manifest_id == manifest.id, Pallet.status == PalletStatus.LOADED).with_for_update()
    ).scalars().all()
    for pallet in pallets:
        pallet.status = pallet.pre_load_status or (PalletStatus.RECEIVED if pallet.is_cross_dock else PalletStatus.STAGED)
        pallet.pre_load_status = None
        pallet.manifest_id = None
    for order in orders:
        order.manifest_id = None

    manifest.status = target
    db.flush()
    log_audit(
        db,
        actor=actor,
        action='MANIFEST_CANCELLED',
        entity_type='manifest',
        entity_id=manifest.id,
        metadata={'reverted_pallets': [pallet.id for pallet in pallets], 'orders': [order.id for order in orders]},
    )
    return manifest


def loaded_items(
    db: Session,
    *,
    order_id: int,
    statuses: tuple[PalletStatus, ...] = (PalletStatus.LOADED,),
) -> list[dict]:
    rows = db.execute(
        select(Pallet.item_id, Product.description, func.sum(Pallet.qty))
        .join(Product, Product.item_id == Pallet.item_id)
        .where(Pallet.shipping_order_id == order_id, Pallet.status.in_(statuses))
        .group_by(Pallet.item_id, Product.description)
        .order_by(Pallet.item_id.asc())
    ).all()
    return [{'item_id': item_id, 'description': description, 'qty': int(qty)} for item_id, description, qty in rows]


def pallet_item_ids(db: Session, *, pallet_ids: list[int]) -> list[str]:
    if not pallet_ids:
        return []
    return db.execute(select(Pallet.item_id).where(Pallet.id.in_(pallet_ids)).distinct()).scalars().all()
