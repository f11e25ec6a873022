"""Checkout: turn a cart into a pending order and a provider payment page.

The flow runs as a small saga:

1. one transaction reserves stock and creates the order with its items;
2. the order is submitted to the payment gateway (no transaction open);
3. a second transaction records the provider's tracking id.

If step 2 or 3 fails for any reason the order is cancelled and its stock is put
back before the error propagates, so a failed checkout never leaves an
unpaid order holding inventory.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from currency import resolve_currency
from database import transaction
from errors import OrderNotFound, StoreNotFound, ValidationError
from gateways import OrderRequest
from models import Order, Store
from orders import build_order, cancel_order

logger = logging.getLogger(__name__)

SHIPPING_FIELDS = {
    "addressLine1": "address_line1",
    "addressLine2": "address_line2",
    "city": "city",
    "state": "state",
    "zipCode": "zip_code",
    "country": "country",
    "phoneNumber": "phone_number",
}
REQUIRED_SHIPPING = ("addressLine1", "city", "country", "phoneNumber")


@dataclass
class CheckoutRequest:
    store_id: str
    items: list
    shipping: dict = field(default_factory=dict)
    location: Optional[str] = None
    gateway: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @classmethod
    def from_json(cls, store_id, body):
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")

        products = body.get("products")
        if not products or not isinstance(products, list):
            raise ValidationError("Products are required")
        items = []
        for entry in products:
            if not isinstance(entry, dict) or not entry.get("productId"):
                raise ValidationError("Each product needs a productId")
            quantity = entry.get("quantity", 1)
            try:
                if isinstance(quantity, bool) or int(quantity) != float(quantity):
                    raise ValueError(quantity)
                quantity = int(quantity)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid quantity for product {entry['productId']}")
            if quantity <= 0:
                raise ValidationError(f"Invalid quantity for product {entry['productId']}")
            items.append((str(entry["productId"]), quantity))

        details = body.get("shippingDetails")
        if not isinstance(details, dict):
            raise ValidationError("Shipping details are required")
        missing = [name for name in REQUIRED_SHIPPING if not details.get(name)]
        if missing:
            raise ValidationError("Missing shipping details: " + ", ".join(missing))
        shipping = {
            column: str(details[key]).strip()
            for key, column in SHIPPING_FIELDS.items()
            if details.get(key) not in (None, "")
        }

        return cls(
            store_id=store_id,
            items=items,
            shipping=shipping,
            location=body.get("location"),
            gateway=body.get("gateway"),
            email=body.get("email"),
            first_name=body.get("firstName"),
            last_name=body.get("lastName"),
        )


@dataclass
class CheckoutResult:
    order_id: str
    url: str
    tracking_id: str
    total: Decimal
    currency: str


def _order_request(order, checkout, settings, currency):
    base = settings.frontend_store_url.rstrip("/")
    shipping = checkout.shipping
    return OrderRequest(
        order_id=order.id,
        store_id=order.store_id,
        amount=order.total,
        currency=order.currency,
        description=f"Order {order.id}",
        callback_url=f"{base}/cart?success=1&orderId={order.id}",
        cancellation_url=f"{base}/cart?canceled=1&orderId={order.id}",
        email=checkout.email,
        phone_number=shipping.get("phone_number"),
        country_code=currency.country_code,
        first_name=checkout.first_name,
        last_name=checkout.last_name,
        address_line1=shipping.get("address_line1"),
        address_line2=shipping.get("address_line2"),
        city=shipping.get("city"),
        state=shipping.get("state"),
        postal_code=shipping.get("zip_code"),
    )


def compensate(session_factory, order_id, reason):
    with transaction(session_factory) as db:
        order = db.get(Order, order_id, with_for_update=True)
        if order is not None:
            cancel_order(db, order, reason)


def place_order(session_factory, gateways, checkout, settings):
    """Create the order, submit it to the gateway and return the payment URL."""
    gateway = gateways.get(checkout.gateway)
    currency = resolve_currency(checkout.location or checkout.shipping.get("country"))

    with transaction(session_factory) as db:
        if db.get(Store, checkout.store_id) is None:
            raise StoreNotFound()
        order = build_order(
            db,
            checkout.store_id,
            checkout.items,
            shipping=checkout.shipping,
            currency=currency,
        )
        order_request = _order_request(order, checkout, settings, currency)
    order_id = order_request.order_id

    try:
        submission = gateway.submit_order(order_request, checkout.store_id)
    except Exception as exc:
        logger.error(
            "Submitting order %s to %s failed: %s", order_id, gateway.name, exc,
            extra={"component": "CHECKOUT"},
        )
        compensate(session_factory, order_id, f"{gateway.name} submission failed")
        raise

    try:
        with transaction(session_factory) as db:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFound()
            order.payment_gateway = gateway.name
            order.payment_tracking_id = submission.tracking_id
    except Exception as exc:
        logger.error(
            "Recording tracking id %s for order %s failed: %s", submission.tracking_id, order_id, exc,
            extra={"component": "CHECKOUT"},
        )
        compensate(session_factory, order_id, f"{gateway.name} tracking id not recorded")
        raise

    logger.info(
        "Checkout for order %s handed to %s (%s)", order_id, gateway.name, submission.tracking_id,
        extra={"component": "CHECKOUT"},
    )
    return CheckoutResult(
        order_id=order_id,
        url=submission.redirect_url,
        tracking_id=submission.tracking_id,
        total=order_request.amount,
        currency=order_request.currency,
    )
