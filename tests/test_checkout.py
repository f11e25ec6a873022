import threading
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from checkout import CheckoutRequest, place_order
from conftest import SHIPPING
from database import transaction
from errors import GatewayTimeout, InsufficientStock, StoreNotFound, SubmissionFailed, ValidationError
from models import Order, OrderStatus


def checkout_for(store_id="store-1", **body):
    payload = {
        "products": [{"productId": "p1", "quantity": 2}, {"productId": "p2"}],
        "shippingDetails": dict(SHIPPING),
    }
    payload.update(body)
    return CheckoutRequest.from_json(store_id, payload)


def _only_order(session_factory):
    with transaction(session_factory) as db:
        orders = db.query(Order).all()
        assert len(orders) == 1
        return orders[0]


def test_place_order_hands_the_order_to_the_gateway(seeded, gateways, fake_gateway, settings, stock_of):
    result = place_order(seeded, gateways, checkout_for(), settings)

    assert result.url == f"https://pay.example/{result.order_id}"
    assert result.tracking_id == f"TRK-{result.order_id}"
    # Rwanda shipping address prices the order in RWF
    assert (result.total, result.currency) == (Decimal("25500.00"), "RWF")

    sent = fake_gateway.submitted[0]
    assert sent.order_id == result.order_id
    assert sent.country_code == "RW"
    assert sent.callback_url == f"http://shop.test/cart?success=1&orderId={result.order_id}"
    assert sent.cancellation_url == f"http://shop.test/cart?canceled=1&orderId={result.order_id}"
    assert sent.phone_number == "+250788000000"

    order = _only_order(seeded)
    assert order.status == OrderStatus.PENDING
    assert order.payment_gateway == "fake"
    assert order.payment_tracking_id == result.tracking_id
    assert (stock_of("p1"), stock_of("p2")) == (3, 2)


def test_location_overrides_shipping_country(seeded, gateways, settings):
    result = place_order(seeded, gateways, checkout_for(location="Nairobi, Kenya"), settings)
    assert result.currency == "KES"
    assert result.total == Decimal("3315.00")


@pytest.mark.parametrize("error", [SubmissionFailed("refused"), GatewayTimeout("slow"), RuntimeError("boom")])
def test_failed_submission_cancels_and_restocks(seeded, gateways, fake_gateway, settings, stock_of, error):
    fake_gateway.fail_with = error

    with pytest.raises(type(error)):
        place_order(seeded, gateways, checkout_for(), settings)

    order = _only_order(seeded)
    assert order.status == OrderStatus.CANCELLED
    assert order.is_paid is False
    assert order.payment_tracking_id is None
    assert order.payment_description == "fake submission failed"
    assert (stock_of("p1"), stock_of("p2")) == (5, 3)


def test_unknown_store_is_rejected(seeded, gateways, fake_gateway, settings):
    with pytest.raises(StoreNotFound):
        place_order(seeded, gateways, checkout_for(store_id="store-9"), settings)
    assert fake_gateway.submitted == []


def test_unknown_gateway_leaves_stock_alone(seeded, gateways, settings, stock_of):
    with pytest.raises(ValidationError):
        place_order(seeded, gateways, checkout_for(gateway="paypal"), settings)
    assert stock_of("p1") == 5
    with transaction(seeded) as db:
        assert db.query(Order).count() == 0


def test_from_json_maps_fields():
    request = checkout_for(email="a@b.test", firstName="Ada", lastName="Byron", gateway="stripe")

    assert request.items == [("p1", 2), ("p2", 1)]
    assert request.shipping["address_line1"] == "KG 7 Ave"
    assert request.shipping["zip_code"] == "00000"
    assert "address_line2" not in request.shipping
    assert (request.email, request.first_name, request.last_name) == ("a@b.test", "Ada", "Byron")
    assert request.gateway == "stripe"


@pytest.mark.parametrize("body", [
    {"products": []},
    {"products": [{"quantity": 1}]},
    {"products": [{"productId": "p1", "quantity": 0}]},
    {"products": [{"productId": "p1", "quantity": -2}]},
    {"products": [{"productId": "p1", "quantity": 1.5}]},
    {"products": [{"productId": "p1", "quantity": "lots"}]},
    {"products": [{"productId": "p1", "quantity": True}]},
    {"shippingDetails": None},
    {"shippingDetails": {"addressLine1": "KG 7 Ave", "city": "Kigali"}},
])
def test_from_json_rejects_bad_bodies(body):
    with pytest.raises(ValidationError):
        checkout_for(**body)


def test_failure_recording_tracking_id_cancels_and_restocks(seeded, gateways, fake_gateway, settings, stock_of):
    fake_gateway.tracking_id = "TRK-SHARED"
    first = place_order(seeded, gateways, checkout_for(), settings)

    # tracking ids are unique, so the second order cannot be linked
    with pytest.raises(IntegrityError):
        place_order(seeded, gateways, checkout_for(), settings)

    with transaction(seeded) as db:
        orders = {o.id: o for o in db.query(Order).all()}
    assert orders.pop(first.order_id).payment_tracking_id == "TRK-SHARED"
    (second,) = orders.values()
    assert second.status == OrderStatus.CANCELLED
    assert second.payment_tracking_id is None
    assert second.payment_description == "fake tracking id not recorded"
    assert (stock_of("p1"), stock_of("p2")) == (3, 2)


def test_concurrent_checkouts_never_oversell(seeded, gateways, settings, stock_of):
    buyers = 6
    barrier = threading.Barrier(buyers)
    outcomes = []

    def buy():
        request = checkout_for(products=[{"productId": "p2", "quantity": 1}])
        barrier.wait()
        try:
            place_order(seeded, gateways, request, settings)
            outcomes.append("ok")
        except InsufficientStock:
            outcomes.append("sold out")

    threads = [threading.Thread(target=buy) for _ in range(buyers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ["ok"] * 3 + ["sold out"] * 3
    assert stock_of("p2") == 0
    with transaction(seeded) as db:
        assert db.query(Order).count() == 3
