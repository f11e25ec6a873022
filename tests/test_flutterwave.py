import json
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from conftest import make_response
from errors import ConfigurationError, SubmissionFailed, ValidationError
from gateways.base import COMPLETED, FAILED, INVALID, PENDING, OrderRequest
from gateways.flutterwave import FlutterwaveGateway

VERIFIED = {
    "status": "success",
    "message": "Transaction fetched successfully",
    "data": {
        "id": 4975363,
        "tx_ref": "order-1",
        "flw_ref": "FLW-MOCK-9d9a3e1b",
        "amount": 3315,
        "currency": "KES",
        "processor_response": "Approved. Successful",
        "payment_type": "card",
        "created_at": "2024-05-01T12:30:00.000Z",
        "status": "successful",
        "customer": {"email": "buyer@example.com", "phone_number": "+254700000000"},
    },
}


@pytest.fixture
def http():
    return Mock()


@pytest.fixture
def gateway(settings, http):
    configured = replace(settings, flutterwave_secret_key="FLWSECK_TEST-1", flutterwave_secret_hash="s3cret")
    return FlutterwaveGateway(configured, http=http)


def order_request():
    return OrderRequest(
        order_id="order-1",
        store_id="store-1",
        amount=Decimal("3315.00"),
        currency="KES",
        description="Order order-1",
        callback_url="http://shop.test/cart?success=1&orderId=order-1",
        cancellation_url="http://shop.test/cart?canceled=1&orderId=order-1",
        email="buyer@example.com",
        phone_number="+254700000000",
        first_name="Wanjiru",
    )


def test_submit_returns_hosted_link(gateway, http):
    http.request.return_value = make_response({
        "status": "success",
        "message": "Hosted Link",
        "data": {"link": "https://checkout.flutterwave.com/v3/hosted/pay/abc"},
    })

    result = gateway.submit_order(order_request(), "store-1")

    assert result.tracking_id == "order-1"
    assert result.redirect_url == "https://checkout.flutterwave.com/v3/hosted/pay/abc"
    method, url = http.request.call_args.args
    assert (method, url) == ("POST", "https://api.flutterwave.com/v3/payments")
    kwargs = http.request.call_args.kwargs
    assert kwargs["headers"]["Authorization"] == "Bearer FLWSECK_TEST-1"
    assert kwargs["json"]["tx_ref"] == "order-1"
    assert kwargs["json"]["amount"] == "3315.00"
    assert kwargs["json"]["customer"]["name"] == "Wanjiru"


def test_refused_payment_fails_submission(gateway, http):
    http.request.return_value = make_response({"status": "error", "message": "Invalid currency", "data": None})
    with pytest.raises(SubmissionFailed):
        gateway.submit_order(order_request(), "store-1")


def test_missing_secret_key(settings, http):
    with pytest.raises(ConfigurationError):
        FlutterwaveGateway(settings, http=http).submit_order(order_request(), "store-1")
    http.request.assert_not_called()


def test_verify_by_reference(gateway, http):
    http.request.return_value = make_response(VERIFIED)

    txn = gateway.get_transaction_status("order-1")

    assert http.request.call_args.kwargs["params"] == {"tx_ref": "order-1"}
    assert txn.status == COMPLETED
    assert txn.amount == Decimal("3315")
    assert txn.confirmation_code == "FLW-MOCK-9d9a3e1b"
    assert txn.payment_method == "card"
    assert txn.payment_account == "buyer@example.com"
    assert txn.created_date == datetime(2024, 5, 1, 12, 30)


@pytest.mark.parametrize("status, expected", [
    ("successful", COMPLETED),
    ("failed", FAILED),
    ("cancelled", FAILED),
    ("pending", PENDING),
    ("weird", INVALID),
    (None, INVALID),
])
def test_status_mapping(status, expected):
    assert FlutterwaveGateway.parse_status("order-1", {"status": status}).status == expected


def test_webhook_with_matching_hash(gateway):
    payload = json.dumps({"event": "charge.completed", "data": {"tx_ref": "order-1"}}).encode()
    assert gateway.parse_webhook(payload, {"verif-hash": "s3cret"}) == "order-1"


@pytest.mark.parametrize("headers", [{}, {"verif-hash": "nope"}])
def test_webhook_with_wrong_hash(gateway, headers):
    with pytest.raises(ValidationError):
        gateway.parse_webhook(b'{"data": {"tx_ref": "order-1"}}', headers)


def test_webhook_with_garbage_body(gateway):
    with pytest.raises(ValidationError):
        gateway.parse_webhook(b"not json", {"verif-hash": "s3cret"})


def test_webhook_with_non_ascii_hash_is_rejected(gateway):
    with pytest.raises(ValidationError):
        gateway.parse_webhook(b'{"data": {"tx_ref": "order-1"}}', {"verif-hash": "s3crét"})
