"""Pesapal API 3.0 adapter."""

import logging
import threading
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from database import transaction
from errors import AuthenticationFailed, GatewayError, StoreNotFound, SubmissionFailed
from models import Store

from .base import (
    COMPLETED,
    FAILED,
    INVALID,
    REVERSED,
    CachedToken,
    PaymentGateway,
    TokenCache,
    TransactionStatus,
    has_error,
    normalize_submission,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

BASE_URLS = {
    "sandbox": "https://cybqa.pesapal.com/pesapalv3/api",
    "production": "https://pay.pesapal.com/v3/api",
}

# Pesapal tokens live for five minutes
DEFAULT_TOKEN_LIFETIME = timedelta(minutes=5)

# GetTransactionStatus ``status_code``
STATUS_CODES = {
    0: INVALID,
    1: COMPLETED,
    2: FAILED,
    3: REVERSED,
}

TRACKING_KEYS = ("order_tracking_id", "orderTrackingId", "OrderTrackingId")
REDIRECT_KEYS = ("redirect_url", "redirectUrl", "RedirectUrl")

JSON_HEADERS = {"Accept": "application/json", "Content-Type": "application/json"}


class PesapalGateway(PaymentGateway):
    name = "pesapal"

    def __init__(self, settings, session_factory=None, http=None, **kwargs):
        super().__init__(settings, session_factory=session_factory, http=http, **kwargs)
        environment = (settings.pesapal_environment or "sandbox").lower()
        self.base_url = BASE_URLS.get(environment, BASE_URLS["sandbox"])
        self.tokens = TokenCache(self._request_token, clock=self.clock)
        self._registration_locks = {}
        self._registration_locks_guard = threading.Lock()

    # ---------- auth ----------
    def _request_token(self):
        consumer_key, consumer_secret = self.settings.require(
            "pesapal_consumer_key", "pesapal_consumer_secret"
        )
        data = self._request(
            "POST",
            f"{self.base_url}/Auth/RequestToken",
            error_cls=AuthenticationFailed,
            what="authentication",
            headers=JSON_HEADERS,
            json={"consumer_key": consumer_key, "consumer_secret": consumer_secret},
        )
        if has_error(data) or not data.get("token"):
            logger.error("Pesapal authentication rejected: %s", data.get("error") or data.get("message"))
            raise AuthenticationFailed("Pesapal rejected the consumer credentials")

        expiry = parse_timestamp(data.get("expiryDate")) or self.clock() + DEFAULT_TOKEN_LIFETIME
        logger.info("Obtained Pesapal token valid until %s", expiry.isoformat())
        return CachedToken(value=data["token"], expiry=expiry)

    def authenticate(self):
        return self.tokens.get()

    def _auth_headers(self):
        return {**JSON_HEADERS, "Authorization": f"Bearer {self.authenticate()}"}

    # ---------- IPN registration ----------
    def _lock_for(self, store_id):
        with self._registration_locks_guard:
            return self._registration_locks.setdefault(store_id, threading.Lock())

    def ipn_url(self, store_id):
        return f"{self.settings.api_base_url.rstrip('/')}/{store_id}/ipn"

    def register_ipn(self, ipn_url):
        data = self._request(
            "POST",
            f"{self.base_url}/URLSetup/RegisterIPN",
            what="IPN registration",
            headers=self._auth_headers(),
            json={"url": ipn_url, "ipn_notification_type": "GET"},
        )
        if has_error(data) or not data.get("ipn_id"):
            raise GatewayError(f"Pesapal IPN registration failed: {data.get('error')!r}")
        return data["ipn_id"]

    def ensure_callback_registered(self, store_id):
        """Return the store's IPN id, registering one with Pesapal the first time."""
        with transaction(self.session_factory) as db:
            store = db.get(Store, store_id)
            if store is None:
                raise StoreNotFound()
            if store.pesapal_ipn_id:
                return store.pesapal_ipn_id

        with self._lock_for(store_id):
            with transaction(self.session_factory) as db:
                store = db.get(Store, store_id, with_for_update=True)
                if store.pesapal_ipn_id:
                    return store.pesapal_ipn_id
                ipn_url = self.ipn_url(store_id)
                ipn_id = self.register_ipn(ipn_url)
                store.pesapal_ipn_id = ipn_id
                store.pesapal_ipn_url = ipn_url
        logger.info("Registered Pesapal IPN %s for store %s", ipn_id, store_id)
        return ipn_id

    # ---------- orders ----------
    def build_payload(self, request, notification_id):
        return {
            "id": request.order_id,
            "currency": request.currency,
            "amount": float(request.amount),
            "description": request.description[:100],
            "callback_url": request.callback_url,
            "cancellation_url": request.cancellation_url,
            "notification_id": notification_id,
            "billing_address": {
                "email_address": request.email or "",
                "phone_number": request.phone_number or "",
                "country_code": request.country_code or "",
                "first_name": request.first_name or "",
                "last_name": request.last_name or "",
                "line_1": request.address_line1 or "",
                "line_2": request.address_line2 or "",
                "city": request.city or "",
                "state": request.state or "",
                "postal_code": request.postal_code or "",
                "zip_code": request.postal_code or "",
            },
        }

    def submit_order(self, request, store_id):
        notification_id = self.ensure_callback_registered(store_id)
        data = self._request(
            "POST",
            f"{self.base_url}/Transactions/SubmitOrderRequest",
            error_cls=SubmissionFailed,
            what="order submission",
            headers=self._auth_headers(),
            json=self.build_payload(request, notification_id),
        )
        if has_error(data):
            raise SubmissionFailed(f"Pesapal refused order {request.order_id}: {data.get('error')!r}")
        result = normalize_submission(data, TRACKING_KEYS, REDIRECT_KEYS, provider="Pesapal")
        logger.info("Submitted order %s to Pesapal as %s", request.order_id, result.tracking_id)
        return result

    def get_transaction_status(self, tracking_id):
        data = self._request(
            "GET",
            f"{self.base_url}/Transactions/GetTransactionStatus",
            what="transaction status",
            headers=self._auth_headers(),
            params={"orderTrackingId": tracking_id},
        )
        return self.parse_status(tracking_id, data)

    @staticmethod
    def parse_status(tracking_id, data):
        code = data.get("status_code")
        try:
            status = STATUS_CODES.get(int(code), INVALID)
        except (TypeError, ValueError):
            status = str(data.get("payment_status_description") or INVALID).upper()

        amount = data.get("amount")
        try:
            amount = None if amount is None else Decimal(str(amount))
        except InvalidOperation:
            amount = None

        return TransactionStatus(
            tracking_id=tracking_id,
            status=status,
            description=data.get("payment_status_description") or data.get("description"),
            payment_method=data.get("payment_method") or None,
            amount=amount,
            currency=data.get("currency") or None,
            confirmation_code=data.get("confirmation_code") or None,
            payment_account=data.get("payment_account") or None,
            created_date=parse_timestamp(data.get("created_date")),
            merchant_reference=data.get("merchant_reference") or None,
            raw=data,
        )
