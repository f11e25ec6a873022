"""Stripe Checkout adapter.

Orders are paid through a hosted Checkout Session. The session id is the
tracking identifier; Stripe pushes ``checkout.session.*`` events to the
webhook, and the session itself is the authoritative status.
"""

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

import stripe

from errors import GatewayError, SubmissionFailed, ValidationError

from .base import COMPLETED, FAILED, PENDING, PaymentGateway, TransactionStatus, normalize_submission

logger = logging.getLogger(__name__)

# Currencies Stripe expects in whole units rather than cents
ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}

WEBHOOK_EVENTS = {
    "checkout.session.completed",
    "checkout.session.expired",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
}


def to_minor_units(amount, currency):
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount, currency):
    if amount is None:
        return None
    if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


class StripeGateway(PaymentGateway):
    name = "stripe"

    def _configure(self):
        stripe.api_key = self.settings.require("stripe_secret_key")
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)

    def submit_order(self, request, store_id):
        self._configure()
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": request.currency.lower(),
                        "product_data": {"name": request.description},
                        "unit_amount": to_minor_units(request.amount, request.currency),
                    },
                    "quantity": 1,
                }],
                success_url=request.callback_url,
                cancel_url=request.cancellation_url,
                client_reference_id=request.order_id,  # link the session to our order
                customer_email=request.email or None,
                metadata={"order_id": request.order_id, "store_id": store_id},
            )
        except stripe.StripeError as exc:
            raise SubmissionFailed(f"Stripe refused order {request.order_id}: {exc}") from exc

        return normalize_submission(
            {"id": getattr(session, "id", None), "url": getattr(session, "url", None)},
            ("id",),
            ("url",),
            provider="Stripe",
        )

    def get_transaction_status(self, tracking_id):
        self._configure()
        try:
            session = stripe.checkout.Session.retrieve(tracking_id)
        except stripe.StripeError as exc:
            raise GatewayError(f"Stripe session lookup failed for {tracking_id}: {exc}") from exc
        return self.parse_status(session)

    @staticmethod
    def parse_status(session):
        payment_status = getattr(session, "payment_status", None)
        session_status = getattr(session, "status", None)
        if payment_status in ("paid", "no_payment_required"):
            status = COMPLETED
        elif session_status == "expired":
            status = FAILED
        else:
            status = PENDING

        currency = getattr(session, "currency", None)
        methods = getattr(session, "payment_method_types", None) or []
        customer = getattr(session, "customer_details", None)
        created = getattr(session, "created", None)
        payment_intent = getattr(session, "payment_intent", None)
        if payment_intent is not None and not isinstance(payment_intent, str):
            payment_intent = getattr(payment_intent, "id", None)

        return TransactionStatus(
            tracking_id=session.id,
            status=status,
            description=f"{session_status}/{payment_status}",
            payment_method=methods[0] if methods else None,
            amount=from_minor_units(getattr(session, "amount_total", None), currency),
            currency=currency.upper() if currency else None,
            confirmation_code=payment_intent,
            payment_account=getattr(customer, "email", None) if customer else None,
            created_date=(
                datetime.fromtimestamp(created, tz=timezone.utc).replace(tzinfo=None)
                if created else None
            ),
            merchant_reference=getattr(session, "client_reference_id", None),
        )

    def parse_webhook(self, payload, headers):
        secret = self.settings.require("stripe_webhook_secret")
        try:
            event = stripe.Webhook.construct_event(payload, headers.get("Stripe-Signature"), secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise ValidationError("Invalid Stripe webhook") from exc

        if event["type"] not in WEBHOOK_EVENTS:
            logger.debug("Ignoring Stripe event %s", event["type"])
            return None
        return event["data"]["object"]["id"]
