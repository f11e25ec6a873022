"""Bring local orders in line with the provider's view of their payment.

Reconciliation is triggered by a provider notification (tracking id) or by
the storefront polling for an order (order id). Either way the provider is
asked for the current status, and the result is written onto the order.
Applying the same provider status twice leaves the order exactly as the first
application did, and an unchanged order is not written at all.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select

from database import transaction
from errors import OrderNotFound
from gateways.base import COMPLETED, FAILED, INVALID, PENDING, REVERSED, TransactionStatus
from models import Order, OrderStatus

logger = logging.getLogger(__name__)

# Provider-neutral code -> (local status, is_paid). INVALID and anything
# unrecognised are resolved by ``map_status``'s fallback.
STATUS_TABLE_VERSION = 2
STATUS_TABLE = {
    COMPLETED: (OrderStatus.COMPLETED, True),
    FAILED: (OrderStatus.FAILED, False),
    REVERSED: (OrderStatus.REVERSED, False),
    PENDING: (OrderStatus.PROCESSING, False),
}

IPN_NOTIFICATION_TYPE = "IPNCHANGE"


def map_status(code, fallback=OrderStatus.PROCESSING):
    """Return ``(OrderStatus, is_paid)`` for a provider-neutral status code."""
    entry = STATUS_TABLE.get(str(code or INVALID).upper())
    if entry is None:
        if code not in (None, INVALID):
            logger.warning("Unrecognised provider status %r, using %s", code, fallback.value)
        return OrderStatus(fallback), False
    return entry


@dataclass
class ReconcileResult:
    order_id: str
    tracking_id: Optional[str]
    status: OrderStatus
    is_paid: bool
    changed: bool
    details: Optional[TransactionStatus] = None

    def poll_response(self):
        return {
            "status": self.status.value,
            "isPaid": self.is_paid,
            "details": self.details.as_dict() if self.details else None,
        }


def ipn_acknowledgment(tracking_id, merchant_reference, ok, notification_type=None):
    """Body Pesapal expects back from an IPN call; ``status`` 200 or 500."""
    return {
        "orderNotificationType": notification_type or IPN_NOTIFICATION_TYPE,
        "orderTrackingId": tracking_id,
        "orderMerchantReference": merchant_reference,
        "status": 200 if ok else 500,
    }


def apply_status(order, txn, fallback=OrderStatus.PROCESSING):
    """Copy a provider status onto ``order``; return True if anything changed."""
    status, is_paid = map_status(txn.status, fallback)
    updates = {
        "status": status,
        "is_paid": is_paid,
        "payment_method": txn.payment_method,
        "payment_confirmation_code": txn.confirmation_code,
        "payment_description": txn.description,
        "payment_account": txn.payment_account,
        "payment_date": txn.created_date,
    }
    changed = False
    for attr, value in updates.items():
        # keep what we already know when the provider omits a detail
        if value is None and attr not in ("status", "is_paid"):
            continue
        if getattr(order, attr) != value:
            setattr(order, attr, value)
            changed = True
    return changed


def _find_order(db, tracking_id=None, order_id=None):
    if tracking_id:
        return db.execute(
            select(Order).where(Order.payment_tracking_id == tracking_id)
        ).scalar_one_or_none()
    if order_id:
        return db.get(Order, order_id)
    return None


def reconcile(session_factory, gateways, tracking_id=None, order_id=None, store_id=None,
              fallback=OrderStatus.PROCESSING):
    """Fetch the provider status for one order and persist it.

    The order is looked up by ``tracking_id`` when given, otherwise by
    ``order_id``. Raises :class:`errors.OrderNotFound` when neither matches
    (or the order belongs to another store). The provider call happens
    outside any database transaction.
    """
    with transaction(session_factory) as db:
        order = _find_order(db, tracking_id, order_id)
        if order is None or (store_id is not None and order.store_id != store_id):
            raise OrderNotFound()
        order_id = order.id
        tracking_id = order.payment_tracking_id
        gateway_name = order.payment_gateway
        if not tracking_id:
            # never reached a provider, nothing to ask about
            return ReconcileResult(order_id, None, order.status, order.is_paid, changed=False)

    txn = gateways.get(gateway_name).get_transaction_status(tracking_id)

    with transaction(session_factory) as db:
        order = db.get(Order, order_id, with_for_update=True)
        if order is None:
            raise OrderNotFound()
        changed = apply_status(order, txn, fallback)
        result = ReconcileResult(order_id, tracking_id, order.status, order.is_paid, changed, txn)

    if changed:
        logger.info(
            "Order %s reconciled to %s (provider %s)",
            order_id, result.status.value, txn.status,
            extra={"component": "RECONCILER"},
        )
    else:
        logger.debug("Order %s unchanged after reconciliation", order_id)
    return result
