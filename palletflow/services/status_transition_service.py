from __future__ import annotations

from collections.abc import Iterable
from enum import Enum

from palletflow.errors import InvalidStateError, ValidationError
from palletflow.models import (
    ManifestStatus,
    PalletStatus,
    ReceivingOrderStatus,
    ShippingOrderStatus,
)

# {action: {from_status: to_status}}
RECEIVING_TRANSITIONS: dict[str, dict[ReceivingOrderStatus, ReceivingOrderStatus]] = {
    'unload': {ReceivingOrderStatus.PENDING: ReceivingOrderStatus.UNLOADING},
    'stage': {ReceivingOrderStatus.UNLOADING: ReceivingOrderStatus.STAGED},
    'receive': {ReceivingOrderStatus.UNLOADING: ReceivingOrderStatus.RECEIVED},
}

SHIPPING_TRANSITIONS: dict[str, dict[ShippingOrderStatus, ShippingOrderStatus]] = {
    'pick': {
        ShippingOrderStatus.PENDING: ShippingOrderStatus.PICKING,
        ShippingOrderStatus.PICKING: ShippingOrderStatus.PICKING,
    },
    'finish_picking': {
        ShippingOrderStatus.PENDING: ShippingOrderStatus.LOADING,
        ShippingOrderStatus.PICKING: ShippingOrderStatus.LOADING,
    },
    'finish_loading': {ShippingOrderStatus.LOADING: ShippingOrderStatus.COMPLETED},
    'close': {ShippingOrderStatus.COMPLETED: ShippingOrderStatus.SHIPPED},
}

PALLET_TRANSITIONS: dict[str, dict[PalletStatus, PalletStatus]] = {
    'put_away': {PalletStatus.RECEIVED: PalletStatus.STORED},
    'move': {PalletStatus.STORED: PalletStatus.STORED},
    'pick': {PalletStatus.STORED: PalletStatus.STAGED},
    'unpick': {PalletStatus.STAGED: PalletStatus.STORED},
    'load': {
        PalletStatus.STAGED: PalletStatus.LOADED,
        PalletStatus.RECEIVED: PalletStatus.LOADED,
    },
    'ship': {PalletStatus.LOADED: PalletStatus.SHIPPED},
    'write_off': {
        PalletStatus.RECEIVED: PalletStatus.WRITE_OFF,
        PalletStatus.STORED: PalletStatus.WRITE_OFF,
    },
}

MANIFEST_TRANSITIONS: dict[str, dict[ManifestStatus, ManifestStatus]] = {
    'close': {ManifestStatus.OPEN: ManifestStatus.CLOSED},
    'cancel': {ManifestStatus.OPEN: ManifestStatus.CANCELLED},
}

RECEIVING_ORDER_RANK = {
    ReceivingOrderStatus.PENDING: 0,
    ReceivingOrderStatus.UNLOADING: 1,
    ReceivingOrderStatus.STAGED: 2,
    ReceivingOrderStatus.RECEIVED: 2,
}

SHIPPING_ORDER_RANK = {
    ShippingOrderStatus.PENDING: 0,
    ShippingOrderStatus.PICKING: 1,
    ShippingOrderStatus.LOADING: 2,
    ShippingOrderStatus.COMPLETED: 3,
    ShippingOrderStatus.SHIPPED: 4,
}


def _label(status: Enum | str) -> str:
    return status.value if isinstance(status, Enum) else str(status)


def next_status(table: dict, current: Enum, action: str, *, entity: str):
    """Resolve the target status for `action`, rejecting anything the table does not allow."""
    allowed = table.get(action)
    if allowed is None:
        raise InvalidStateError(f'Unknown {entity} action: {action}')
    target = allowed.get(current)
    if target is None:
        expected = ', '.join(_label(status) for status in allowed)
        raise InvalidStateError(
            f'Cannot {action.replace("_", " ")} {entity} in status {_label(current)} (allowed from: {expected})'
        )
    return target


def ensure_status(current: Enum, allowed: Iterable[Enum], *, entity: str, action: str) -> None:
    allowed = tuple(allowed)
    if current not in allowed:
        expected = ', '.join(_label(status) for status in allowed)
        raise InvalidStateError(f'Cannot {action} {entity} in status {_label(current)} (requires: {expected})')


def receiving_terminal_action(terminal_status: str) -> str:
    normalized = (terminal_status or '').strip().lower()
    if normalized == ReceivingOrderStatus.RECEIVED.value.lower():
        return 'receive'
    if normalized == ReceivingOrderStatus.STAGED.value.lower():
        return 'stage'
    raise ValidationError(f'Unsupported receiving terminal status: {terminal_status}')


def is_forward(rank: dict, previous: Enum, current: Enum) -> bool:
    return rank[current] >= rank[previous]
