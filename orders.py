import logging
from decimal import ROUND_HALF_UP, Decimal

from currency import DEFAULT_CURRENCY
from errors import EmptyCart
from models import Order, OrderItem, OrderStatus, ShippingDetails
from stock import merge_quantities, release_stock, reserve_stock

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def compute_total(lines, multiplier=Decimal("1")):
    """Sum ``unit_price * quantity`` over ``lines`` and scale by ``multiplier``."""
    subtotal = sum(
        (Decimal(str(price)) * quantity for price, quantity in lines),
        Decimal("0"),
    )
    return (subtotal * Decimal(str(multiplier))).quantize(CENTS, rounding=ROUND_HALF_UP)


def build_order(session, store_id, items, shipping=None, currency=None):
    """Create an order and its items, decrementing stock in the same transaction.

    ``items`` is a list of ``(product_id, quantity)``; ``shipping`` an optional
    dict of ShippingDetails columns; ``currency`` a :class:`CurrencyInfo`.
    The caller owns the transaction.
    """
    if not items:
        raise EmptyCart()
    currency = currency or DEFAULT_CURRENCY

    products = reserve_stock(session, store_id, items)
    wanted = merge_quantities(items)

    order = Order(
        store_id=store_id,
        is_paid=False,
        status=OrderStatus.PENDING,
        currency=currency.code,
    )
    for product_id, quantity in wanted.items():
        order.items.append(
            OrderItem(
                product_id=product_id,
                quantity=quantity,
                unit_price=products[product_id].price,
            )
        )
    order.total = compute_total(
        [(item.unit_price, item.quantity) for item in order.items],
        currency.multiplier,
    )

    if shipping:
        details = ShippingDetails(**shipping)
        order.shipping_details = details
        order.phone = details.phone_number
        order.address = details.one_line()

    session.add(order)
    session.flush()
    logger.info(
        "Created order %s with %d items, total %s %s",
        order.id, len(order.items), order.total, order.currency,
    )
    return order


def cancel_order(session, order, reason):
    """Cancel an order that never reached the provider and restock its items.

    Only PENDING orders are touched, so running it twice releases stock once.
    """
    if order.status != OrderStatus.PENDING:
        return False
    release_stock(session, [(item.product_id, item.quantity) for item in order.items])
    order.status = OrderStatus.CANCELLED
    order.is_paid = False
    order.payment_description = (reason or "")[:255]
    logger.warning("Cancelled order %s: %s", order.id, reason)
    return True


def _money(value):
    return None if value is None else str(Decimal(value).quantize(CENTS))


def serialize_order(order):
    shipping = order.shipping_details
    return {
        "id": order.id,
        "storeId": order.store_id,
        "isPaid": order.is_paid,
        "status": order.status.value,
        "phone": order.phone,
        "address": order.address,
        "total": _money(order.total),
        "currency": order.currency,
        "paymentGateway": order.payment_gateway,
        "paymentTrackingId": order.payment_tracking_id,
        "paymentMethod": order.payment_method,
        "paymentConfirmationCode": order.payment_confirmation_code,
        "paymentDescription": order.payment_description,
        "paymentAccount": order.payment_account,
        "paymentDate": order.payment_date.isoformat() if order.payment_date else None,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "orderItems": [
            {
                "id": item.id,
                "productId": item.product_id,
                "quantity": item.quantity,
                "unitPrice": _money(item.unit_price),
            }
            for item in order.items
        ],
        "shippingDetails": None if shipping is None else {
            "addressLine1": shipping.address_line1,
            "addressLine2": shipping.address_line2,
            "city": shipping.city,
            "state": shipping.state,
            "zipCode": shipping.zip_code,
            "country": shipping.country,
            "phoneNumber": shipping.phone_number,
        },
    }
