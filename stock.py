"""Stock ledger.

All functions take an open session and run inside the caller's transaction,
so a failure anywhere in a checkout rolls back every decrement it made.
"""

import logging
from collections import OrderedDict

from sqlalchemy import func, select, update

from errors import InsufficientStock, ProductNotFound, ValidationError
from models import Product

logger = logging.getLogger(__name__)


def merge_quantities(items):
    """Collapse ``(product_id, quantity)`` pairs into one quantity per product.

    Keeps first-seen order so order items come out in request order.
    """
    merged = OrderedDict()
    for product_id, quantity in items:
        if not product_id:
            raise ValidationError("Product id is required")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(f"Quantity for product {product_id} must be a positive integer")
        merged[product_id] = merged.get(product_id, 0) + quantity
    return merged


def reserve_stock(session, store_id, items):
    """Check and decrement stock for every requested product.

    Rows are locked in id order to keep concurrent checkouts from
    deadlocking each other. The decrement itself is conditional on
    ``stock >= quantity`` so stock can never go negative.

    Returns a dict of product id -> locked :class:`Product` rows.
    """
    wanted = merge_quantities(items)
    ids = sorted(wanted)

    rows = session.execute(
        select(Product)
        .where(Product.id.in_(ids))
        .order_by(Product.id)
        .with_for_update()
    ).scalars().all()
    products = {p.id: p for p in rows}

    for product_id in wanted:
        product = products.get(product_id)
        if product is None or product.store_id != store_id or product.is_archived:
            raise ProductNotFound(product_id)

    for product_id in ids:
        quantity = wanted[product_id]
        product = products[product_id]
        if quantity > product.stock:
            raise InsufficientStock(product_id, quantity, product.stock)
        result = session.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientStock(product_id, quantity)
        session.refresh(product, attribute_names=["stock"])

    logger.debug("Reserved stock for %d products in store %s", len(ids), store_id)
    return products


def release_stock(session, items):
    """Put quantities back on the shelf (compensation for a failed checkout)."""
    for product_id, quantity in merge_quantities(items).items():
        session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + quantity)
            .execution_options(synchronize_session=False)
        )


def get_stock_count(session, store_id):
    """Total units on hand across a store's non-archived products."""
    total = session.execute(
        select(func.coalesce(func.sum(Product.stock), 0)).where(
            Product.store_id == store_id,
            Product.is_archived.is_(False),
        )
    ).scalar_one()
    return int(total)
