from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from app import create_app
from config import Settings
from database import transaction
from gateways.base import COMPLETED, PaymentGateway, SubmissionResult, TransactionStatus
from models import Product, Store


class FakeGateway(PaymentGateway):
    """In-memory gateway: records submissions and answers with a settable status."""

    name = "fake"

    def __init__(self, settings):
        super().__init__(settings)
        self.submitted = []
        self.status_calls = []
        self.status = COMPLETED
        self.fail_with = None
        self.tracking_id = None  # fixed tracking id instead of one per order

    def submit_order(self, request, store_id):
        if self.fail_with is not None:
            raise self.fail_with
        self.submitted.append(request)
        return SubmissionResult(
            tracking_id=self.tracking_id or f"TRK-{request.order_id}",
            redirect_url=f"https://pay.example/{request.order_id}",
        )

    def get_transaction_status(self, tracking_id):
        self.status_calls.append(tracking_id)
        return TransactionStatus(
            tracking_id=tracking_id,
            status=self.status,
            description=self.status.title(),
            payment_method="Visa",
            amount=Decimal("25.50"),
            currency="USD",
            confirmation_code="CONF-123",
            payment_account="444433xxxxxx1111",
            created_date=datetime(2024, 5, 1, 12, 30, 0),
        )


def make_response(payload, status=200):
    response = Mock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.reason = "OK" if response.ok else "Bad Request"
    response.json.return_value = payload
    return response


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'checkout.db'}",
        secret_key="test-secret",
        frontend_store_url="http://shop.test",
        api_base_url="http://api.test",
        cors_origin="http://shop.test",
        default_gateway="fake",
        gateway_timeout=5.0,
    )


@pytest.fixture
def pesapal_settings(settings):
    return replace(
        settings,
        pesapal_consumer_key="consumer-key",
        pesapal_consumer_secret="consumer-secret",
    )


@pytest.fixture
def app(settings):
    app = create_app(settings)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def fake_gateway(app, settings):
    gateway = FakeGateway(settings)
    app.extensions["gateways"].register("fake", gateway)
    return gateway


@pytest.fixture
def gateways(app, fake_gateway):
    return app.extensions["gateways"]


@pytest.fixture
def client(app, fake_gateway):
    return app.test_client()


@pytest.fixture
def session_factory(app):
    return app.extensions["session_factory"]


@pytest.fixture
def seeded(session_factory):
    with transaction(session_factory) as db:
        db.add_all([
            Store(id="store-1", name="Kigali Goods", user_id="user-1"),
            Store(id="store-2", name="Other Shop", user_id="user-2"),
        ])
        db.flush()
        db.add_all([
            Product(id="p1", store_id="store-1", name="Tee", price=Decimal("10.00"), stock=5),
            Product(id="p2", store_id="store-1", name="Cap", price=Decimal("5.50"), stock=3),
            Product(id="p3", store_id="store-2", name="Mug", price=Decimal("4.00"), stock=4),
            Product(id="p4", store_id="store-1", name="Old Tee", price=Decimal("8.00"), stock=7,
                    is_archived=True),
        ])
    return session_factory


@pytest.fixture
def stock_of(session_factory):
    def _stock_of(product_id):
        with transaction(session_factory) as db:
            return db.get(Product, product_id).stock
    return _stock_of


SHIPPING = {
    "addressLine1": "KG 7 Ave",
    "city": "Kigali",
    "state": "Kigali City",
    "zipCode": "00000",
    "country": "Rwanda",
    "phoneNumber": "+250788000000",
}
