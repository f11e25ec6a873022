"""Flutterwave Standard (v3) adapter.

Our order id doubles as Flutterwave's ``tx_ref`` and is the tracking id.
"""

import hmac
import json
import logging
from decimal import Decimal, InvalidOperation

from errors import SubmissionFailed, ValidationError

from .base import COMPLETED, FAILED, INVALID, PENDING, PaymentGateway, TransactionStatus, normalize_submission, parse_timestamp

logger = logging.getLogger(__name__)

BASE_URL = "https://api.flutterwave.com/v3"

STATUSES = {
    "successful": COMPLETED,
    "failed": FAILED,
    "cancelled": FAILED,
    "pending": PENDING,
}


class FlutterwaveGateway(PaymentGateway):
    name = "flutterwave"

    def _headers(self):
        secret_key = self.settings.require("flutterwave_secret_key")
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Bearer {secret_key}",
        }

    def submit_order(self, request, store_id):
        name = " ".join(p for p in (request.first_name, request.last_name) if p) or None
        payload = {
            "tx_ref": request.order_id,
            "amount": str(request.amount),
            "currency": request.currency,
            "redirect_url": request.callback_url,
            "customer": {
                "email": request.email or "",
                "phonenumber": request.phone_number or "",
                "name": name or "",
            },
            "customizations": {"title": request.description},
            "meta": {"store_id": store_id},
        }
        data = self._request(
            "POST",
            f"{BASE_URL}/payments",
            error_cls=SubmissionFailed,
            what="payment creation",
            headers=self._headers(),
            json=payload,
        )
        if data.get("status") != "success":
            raise SubmissionFailed(f"Flutterwave refused order {request.order_id}: {data.get('message')}")
        return normalize_submission(
            {"tx_ref": request.order_id, **data},
            ("data.tx_ref", "tx_ref"),
            ("data.link", "link"),
            provider="Flutterwave",
        )

    def get_transaction_status(self, tracking_id):
        data = self._request(
            "GET",
            f"{BASE_URL}/transactions/verify_by_reference",
            what="transaction verification",
            headers=self._headers(),
            params={"tx_ref": tracking_id},
        )
        return self.parse_status(tracking_id, data.get("data") or {})

    @staticmethod
    def parse_status(tracking_id, data):
        try:
            amount = None if data.get("amount") is None else Decimal(str(data["amount"]))
        except InvalidOperation:
            amount = None
        customer = data.get("customer") or {}
        return TransactionStatus(
            tracking_id=tracking_id,
            status=STATUSES.get(str(data.get("status") or "").lower(), INVALID),
            description=data.get("processor_response") or data.get("status"),
            payment_method=data.get("payment_type"),
            amount=amount,
            currency=data.get("currency"),
            confirmation_code=data.get("flw_ref"),
            payment_account=customer.get("email") or customer.get("phone_number"),
            created_date=parse_timestamp(data.get("created_at")),
            merchant_reference=data.get("tx_ref") or tracking_id,
        )

    def parse_webhook(self, payload, headers):
        secret_hash = self.settings.require("flutterwave_secret_hash")
        signature = headers.get("verif-hash") or ""
        if not hmac.compare_digest(signature.encode(), secret_hash.encode()):
            raise ValidationError("Invalid Flutterwave webhook")
        try:
            body = json.loads(payload or b"{}")
        except ValueError as exc:
            raise ValidationError("Invalid Flutterwave webhook") from exc
        return (body.get("data") or {}).get("tx_ref") or body.get("txRef")
