import logging

from flask import Blueprint, Flask, current_app, jsonify, request, session
from sqlalchemy import select
from sqlalchemy.orm import selectinload
from werkzeug.exceptions import HTTPException

from checkout import CheckoutRequest, place_order
from config import Settings
from database import init_db, transaction
from errors import (
    CheckoutError,
    GatewayError,
    OrderNotFound,
    StoreNotFound,
    Unauthenticated,
    Unauthorized,
    ValidationError,
)
from gateways import GatewayRegistry
from logging_config import configure_logging
from models import Order, OrderStatus, Store
from orders import serialize_order
from reconciler import ipn_acknowledgment, reconcile
from stock import get_stock_count

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__)

# Log tags per endpoint, used when a request fails
COMPONENTS = {
    "api.checkout": "CHECKOUT_POST",
    "api.order_status": "PESAPAL_IPN",
    "api.stripe_webhook": "STRIPE_WEBHOOK",
    "api.flutterwave_webhook": "FLUTTERWAVE_WEBHOOK",
    "api.list_orders": "ORDERS_GET",
    "api.get_order": "ORDER_GET",
    "api.update_order": "ORDER_PATCH",
    "api.delete_order": "ORDER_DELETE",
    "api.stock_count": "STOCK_GET",
}

CORS_METHODS = "GET,HEAD,PUT,PATCH,POST,DELETE,OPTIONS"
CORS_HEADERS = "Content-Type, Authorization, X-Requested-With, Accept"


def _settings():
    return current_app.config["SETTINGS"]


def _session_factory():
    return current_app.extensions["session_factory"]


def _gateways():
    return current_app.extensions["gateways"]


def _component():
    return COMPONENTS.get(request.endpoint, "API")


def _fallback_status():
    return OrderStatus(_settings().unrecognized_payment_status.upper())


def _require_store_owner(db, store_id):
    user_id = session.get("user_id")
    if not user_id:
        raise Unauthenticated()
    store = db.execute(
        select(Store).where(Store.id == store_id, Store.user_id == str(user_id))
    ).scalar_one_or_none()
    if store is None:
        raise Unauthorized()
    return store


def _load_order(db, store_id, order_id):
    order = db.execute(
        select(Order)
        .options(selectinload(Order.items), selectinload(Order.shipping_details))
        .where(Order.id == order_id, Order.store_id == store_id)
    ).scalar_one_or_none()
    if order is None:
        raise OrderNotFound()
    return order


# ---------- checkout ----------
@api.route("/<store_id>/checkout", methods=["POST"])
def checkout(store_id):
    body = request.get_json(silent=True)
    if body is None:
        raise ValidationError("Request body must be JSON")
    checkout_request = CheckoutRequest.from_json(store_id, body)
    result = place_order(_session_factory(), _gateways(), checkout_request, _settings())
    return jsonify({"orderId": result.order_id, "url": result.url})


# ---------- payment status: provider IPN and storefront polling ----------
@api.route("/<store_id>/ipn", methods=["GET"])
@api.route("/<store_id>/order-status", methods=["GET"])
def order_status(store_id):
    tracking_id = request.args.get("OrderTrackingId")
    merchant_reference = request.args.get("OrderMerchantReference")
    notification_type = request.args.get("OrderNotificationType")
    order_id = request.args.get("orderId")

    if tracking_id:
        try:
            reconcile(
                _session_factory(), _gateways(),
                tracking_id=tracking_id, store_id=store_id, fallback=_fallback_status(),
            )
            ok = True
        except OrderNotFound:
            logger.warning("IPN for unknown tracking id %s", tracking_id, extra={"component": "PESAPAL_IPN"})
            ok = False
        except CheckoutError as exc:
            logger.error("IPN processing failed for %s: %s", tracking_id, exc, extra={"component": "PESAPAL_IPN"})
            ok = False
        return jsonify(ipn_acknowledgment(tracking_id, merchant_reference, ok, notification_type))

    if not order_id:
        raise ValidationError("OrderTrackingId or orderId is required")

    result = reconcile(
        _session_factory(), _gateways(),
        order_id=order_id, store_id=store_id, fallback=_fallback_status(),
    )
    return jsonify(result.poll_response())


# ---------- provider webhooks ----------
def _handle_webhook(gateway_name, store_id):
    gateway = _gateways().get(gateway_name)
    tracking_id = gateway.parse_webhook(request.get_data(), request.headers)
    if tracking_id:
        try:
            reconcile(
                _session_factory(), _gateways(),
                tracking_id=tracking_id, store_id=store_id, fallback=_fallback_status(),
            )
        except OrderNotFound:
            logger.warning(
                "%s webhook for unknown tracking id %s", gateway_name, tracking_id,
                extra={"component": _component()},
            )
    return jsonify({"received": True})


@api.route("/<store_id>/webhooks/stripe", methods=["POST"])
def stripe_webhook(store_id):
    return _handle_webhook("stripe", store_id)


@api.route("/<store_id>/webhooks/flutterwave", methods=["POST"])
def flutterwave_webhook(store_id):
    return _handle_webhook("flutterwave", store_id)


# ---------- order admin ----------
@api.route("/<store_id>/orders", methods=["GET"])
def list_orders(store_id):
    with transaction(_session_factory()) as db:
        orders = db.execute(
            select(Order)
            .options(selectinload(Order.items), selectinload(Order.shipping_details))
            .where(Order.store_id == store_id)
            .order_by(Order.created_at.desc())
        ).scalars().all()
        return jsonify([serialize_order(o) for o in orders])


@api.route("/<store_id>/orders/<order_id>", methods=["GET"])
def get_order(store_id, order_id):
    with transaction(_session_factory()) as db:
        return jsonify(serialize_order(_load_order(db, store_id, order_id)))


@api.route("/<store_id>/orders/<order_id>", methods=["PATCH"])
def update_order(store_id, order_id):
    body = request.get_json(silent=True) or {}
    with transaction(_session_factory()) as db:
        _require_store_owner(db, store_id)
        order = _load_order(db, store_id, order_id)

        is_paid = body.get("isPaid")
        if is_paid is not None and not isinstance(is_paid, bool):
            raise ValidationError("isPaid must be a boolean")
        status = body.get("status")
        if status:
            try:
                status = OrderStatus(str(status).upper())
            except ValueError:
                raise ValidationError(f"Unknown order status '{body['status']}'")

        if is_paid is not None:
            order.is_paid = is_paid
        if status:
            order.status = status
        db.flush()
        return jsonify(serialize_order(order))


@api.route("/<store_id>/orders/<order_id>", methods=["DELETE"])
def delete_order(store_id, order_id):
    with transaction(_session_factory()) as db:
        _require_store_owner(db, store_id)
        order = _load_order(db, store_id, order_id)
        payload = serialize_order(order)
        db.delete(order)
    logger.info("Deleted order %s of store %s", order_id, store_id, extra={"component": "ORDER_DELETE"})
    return jsonify(payload)


@api.route("/<store_id>/stock", methods=["GET"])
def stock_count(store_id):
    with transaction(_session_factory()) as db:
        if db.get(Store, store_id) is None:
            raise StoreNotFound()
        return jsonify({"stockCount": get_stock_count(db, store_id)})


# ---------- error handling ----------
def handle_checkout_error(exc):
    extra = {"component": _component()}
    if isinstance(exc, GatewayError) or exc.status_code >= 500:
        logger.error("[%s] %s", extra["component"], exc, exc_info=exc, extra=extra)
    else:
        logger.info("[%s] %s", extra["component"], exc, extra=extra)
    return jsonify({"error": exc.client_message}), exc.status_code


def handle_unexpected_error(exc):
    if isinstance(exc, HTTPException):
        return exc
    logger.exception("[%s] Unhandled error", _component(), extra={"component": _component()})
    return jsonify({"error": "Internal error"}), 500


def add_cors_headers(response):
    response.headers["Access-Control-Allow-Origin"] = _settings().cors_origin
    response.headers["Access-Control-Allow-Methods"] = CORS_METHODS
    response.headers["Access-Control-Allow-Headers"] = CORS_HEADERS
    response.headers["Access-Control-Allow-Credentials"] = "true"
    return response


def create_app(settings=None):
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_dir)

    app = Flask(__name__)
    app.secret_key = settings.secret_key
    app.config["SETTINGS"] = settings

    # Setup DB
    session_factory = init_db(settings.database_url)
    app.extensions["session_factory"] = session_factory
    app.extensions["gateways"] = GatewayRegistry(settings, session_factory)

    app.register_blueprint(api)
    app.register_error_handler(CheckoutError, handle_checkout_error)
    app.register_error_handler(Exception, handle_unexpected_error)
    app.after_request(add_cors_headers)
    return app


if __name__ == "__main__":
    create_app().run(port=4242, debug=True)
