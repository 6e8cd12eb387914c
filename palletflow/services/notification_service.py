from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from palletflow.config import settings
from palletflow.db import SessionLocal
from palletflow.models import EmailLog, EmailStatus, PalletStatus, ShipmentType
from palletflow.services.email_dispatcher import EmailDispatcher
from palletflow.services.retry_service import RetryPolicy, email_policy
from palletflow.services.shipping_service import get_manifest, get_shipping_order, loaded_items

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShippingEmailItem:
    item_id: str
    description: str
    qty_shipped: int


def compose_shipping_email_body(
    *,
    order_ref: str,
    shipment_type: ShipmentType,
    items: list[ShippingEmailItem],
    container_num: str | None = None,
    seal_num: str | None = None,
    form_ref: str | None = None,
    photo_refs: list[str] | None = None,
) -> str:
    type_label = 'Hand Delivery' if shipment_type == ShipmentType.HAND_DELIVERY else 'Container Loading'
    lines = [
        'Shipping Confirmation',
        '',
        f'Order Reference: {order_ref}',
        f'Shipment Type: {type_label}',
    ]
    if shipment_type == ShipmentType.CONTAINER_LOADING and container_num:
        lines.append(f'Container #: {container_num}')
    if seal_num:
        lines.append(f'Seal #: {seal_num}')

    lines += ['', 'Items Shipped:']
    lines += [f'- {item.item_id}: {item.description} ({item.qty_shipped} units)' for item in items]
    lines += ['', f'Total Items: {len(items)}']

    if form_ref:
        lines += ['', f'Shipping Form: {form_ref}']
    if photo_refs:
        lines += ['', f'Outbound Photos ({len(photo_refs)}):']
        lines += [f'{index}. {ref}' for index, ref in enumerate(photo_refs, start=1)]

    lines += ['', 'Thank you!']
    return '\n'.join(lines)


def send_shipping_confirmation(
    db: Session,
    *,
    order_id: int,
    dispatcher: EmailDispatcher,
    photo_refs: list[str] | None = None,
    policy: RetryPolicy | None = None,
) -> EmailLog:
    """Mail the shipping confirmation for an order that is already Shipped.

    Delivery is best-effort: dispatch failures are retried by `policy`, then
    recorded as a Failed EmailLog row. Nothing here touches the shipped state.
    """
    order = get_shipping_order(db, order_id=order_id)
    manifest = get_manifest(db, manifest_id=order.manifest_id) if order.manifest_id else None
    items = [
        ShippingEmailItem(item_id=row['item_id'], description=row['description'], qty_shipped=row['qty'])
        for row in loaded_items(db, order_id=order.id, statuses=(PalletStatus.SHIPPED,))
    ]
    form_ref = manifest.signed_form_ref if manifest else None
    body = compose_shipping_email_body(
        order_ref=order.order_ref,
        shipment_type=order.shipment_type,
        items=items,
        container_num=manifest.container_num if manifest else None,
        seal_num=(manifest.seal_num if manifest else None) or order.seal_num,
        form_ref=form_ref,
        photo_refs=photo_refs,
    )
    subject = f'Shipping Confirmation - {order.order_ref}'
    recipient = settings.email_to_shipping
    attachments = [ref for ref in [form_ref, *(photo_refs or [])] if ref]

    attempts = 0

    def _dispatch() -> None:
        nonlocal attempts
        attempts += 1
        dispatcher.send(to=[recipient], subject=subject, body=body, attachments=attachments)

    policy = policy or email_policy()
    status = EmailStatus.SENT
    error_message = None
    try:
        policy.call(_dispatch)
    except Exception as exc:
        status = EmailStatus.FAILED
        error_message = str(exc)
        logger.error('Shipping email for order %s failed after %s attempt(s): %s', order.order_ref, attempts, exc)
    else:
        logger.info('Shipping email for order %s sent to %s', order.order_ref, recipient)

    email_log = EmailLog(
        shipping_order_id=order.id,
        recipient=recipient,
        subject=subject,
        status=status,
        attempts=attempts,
        error_message=error_message,
    )
    db.add(email_log)
    db.flush()
    return email_log


def deliver_shipping_confirmation(
    order_id: int,
    dispatcher: EmailDispatcher,
    photo_refs: list[str] | None = None,
) -> None:
    """Background entry point: own session, own commit, never raises."""
    db = SessionLocal()
    try:
        send_shipping_confirmation(db, order_id=order_id, dispatcher=dispatcher, photo_refs=photo_refs)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception('Could not record shipping email for order %s', order_id)
    finally:
        db.close()
