from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from palletflow.errors import InvalidStateError, NotFoundError, ValidationError
from palletflow.models import Location, Pallet, PalletStatus, WriteOffReason
from palletflow.services.audit_service import log_audit
from palletflow.services.status_transition_service import PALLET_TRANSITIONS, next_status

RACKS = range(1, 9)
LEVELS = range(1, 5)
POSITIONS = tuple('ABCDEFGHIJKLMNOPQRST')
AISLE = 'AISLE'


@dataclass(frozen=True)
class PlacementResult:
    pallet: Pallet
    location_id: str
    other_pallets_at_location: list[int]


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def location_code(rack: int | str, level: int | None = None, position: str | None = None, *, warehouse_code: str = 'W1') -> str:
    if str(rack).strip().upper() == AISLE:
        return f'{warehouse_code}-{AISLE}'
    try:
        rack_number = int(rack)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f'Invalid rack: {rack}') from exc
    if rack_number not in RACKS:
        raise ValidationError(f'Rack must be between {RACKS.start} and {RACKS.stop - 1}')
    if level not in LEVELS:
        raise ValidationError(f'Level must be between {LEVELS.start} and {LEVELS.stop - 1}')
    normalized_position = (position or '').strip().upper()
    if normalized_position not in POSITIONS:
        raise ValidationError(f'Position must be a letter from {POSITIONS[0]} to {POSITIONS[-1]}')
    return f'{warehouse_code}-{rack_number}-{level}-{normalized_position}'


def seed_locations(db: Session, *, warehouse_code: str = 'W1') -> int:
    existing = set(db.execute(select(Location.location_id)).scalars().all())
    created = 0
    for rack in RACKS:
        for level in LEVELS:
            for position in POSITIONS:
                code = location_code(rack, level, position, warehouse_code=warehouse_code)
                if code in existing:
                    continue
                db.add(Location(location_id=code, warehouse_code=warehouse_code, rack=rack, level=level, position=position))
                created += 1
    aisle = location_code(AISLE, warehouse_code=warehouse_code)
    if aisle not in existing:
        db.add(Location(location_id=aisle, warehouse_code=warehouse_code))
        created += 1
    db.flush()
    return created


def _get_pallet(db: Session, *, pallet_id: int) -> Pallet:
    pallet = db.execute(
        select(Pallet).where(Pallet.id == pallet_id).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not pallet:
        raise NotFoundError('Pallet not found')
    return pallet


def _usable_location(db: Session, *, location_id: str) -> Location:
    location = db.execute(select(Location).where(Location.location_id == location_id)).scalar_one_or_none()
    if not location:
        raise NotFoundError(f'Location {location_id} not found')
    if not location.is_active or location.is_blocked:
        raise ValidationError(f'Location {location_id} is not available')
    return location


def _occupants(db: Session, *, location_id: str, exclude_pallet_id: int) -> list[int]:
    return db.execute(
        select(Pallet.id).where(
            Pallet.location_id == location_id,
            Pallet.status == PalletStatus.STORED,
            Pallet.id != exclude_pallet_id,
        )
    ).scalars().all()


def put_away(db: Session, *, pallet_id: int, location_id: str, actor: str | None) -> PlacementResult:
    pallet = _get_pallet(db, pallet_id=pallet_id)
    if pallet.is_cross_dock or pallet.shipping_order_id is not None:
        raise InvalidStateError('Cross-dock pallets go straight to loading and are never put away')
    target = next_status(PALLET_TRANSITIONS, pallet.status, 'put_away', entity='pallet')
    location = _usable_location(db, location_id=location_id)
    # Sharing a location is allowed; the caller decides whether to warn.
    occupants = _occupants(db, location_id=location.location_id, exclude_pallet_id=pallet.id)

    pallet.status = target
    pallet.location_id = location.location_id
    log_audit(
        db,
        actor=actor,
        action='PALLET_PUT_AWAY',
        entity_type='pallet',
        entity_id=pallet.id,
        metadata={'location_id': location.location_id},
    )
    return PlacementResult(pallet=pallet, location_id=location.location_id, other_pallets_at_location=occupants)


def move_pallet(db: Session, *, pallet_id: int, location_id: str, actor: str | None) -> PlacementResult:
    pallet = _get_pallet(db, pallet_id=pallet_id)
    next_status(PALLET_TRANSITIONS, pallet.status, 'move', entity='pallet')
    location = _usable_location(db, location_id=location_id)
    occupants = _occupants(db, location_id=location.location_id, exclude_pallet_id=pallet.id)

    previous = pallet.location_id
    pallet.location_id = location.location_id
    log_audit(
        db,
        actor=actor,
        action='PALLET_MOVED',
        entity_type='pallet',
        entity_id=pallet.id,
        metadata={'from_location_id': previous, 'to_location_id': location.location_id},
    )
    return PlacementResult(pallet=pallet, location_id=location.location_id, other_pallets_at_location=occupants)


def write_off(db: Session, *, pallet_id: int, reason: WriteOffReason | str, actor: str | None) -> Pallet:
    try:
        reason = WriteOffReason(reason)
    except ValueError as exc:
        allowed = ', '.join(member.value for member in WriteOffReason)
        raise ValidationError(f'Write-off reason must be one of: {allowed}') from exc

    pallet = _get_pallet(db, pallet_id=pallet_id)
    if pallet.status == PalletStatus.SHIPPED:
        raise InvalidStateError('Shipped pallets cannot be written off')
    previous = pallet.status
    released_order_id = pallet.shipping_order_id
    pallet.status = next_status(PALLET_TRANSITIONS, pallet.status, 'write_off', entity='pallet')
    # A written-off cross-dock pallet no longer counts toward its order's demand.
    pallet.shipping_order_id = None
    log_audit(
        db,
        actor=actor,
        action='PALLET_WRITE_OFF',
        entity_type='pallet',
        entity_id=pallet.id,
        metadata={
            'reason': reason.value,
            'previous_status': previous.value,
            'item_id': pallet.item_id,
            'qty': pallet.qty,
            'location_id': pallet.location_id,
            'released_shipping_order_id': released_order_id,
            'written_off_at': _now().isoformat(),
        },
    )
    return pallet
