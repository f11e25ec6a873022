"""Payment gateway adapters and the registry that hands them out.

One adapter instance is kept per gateway name, so cached tokens and IPN
registration locks are shared by every request the app serves.
"""

import threading

from errors import ValidationError

from .base import OrderRequest, PaymentGateway, SubmissionResult, TransactionStatus
from .flutterwave import FlutterwaveGateway
from .pesapal import PesapalGateway
from .stripe_gateway import StripeGateway

GATEWAY_CLASSES = {
    PesapalGateway.name: PesapalGateway,
    StripeGateway.name: StripeGateway,
    FlutterwaveGateway.name: FlutterwaveGateway,
}


class GatewayRegistry:
    def __init__(self, settings, session_factory, http=None):
        self.settings = settings
        self.session_factory = session_factory
        self.http = http
        self._adapters = {}
        self._lock = threading.Lock()

    def register(self, name, adapter):
        with self._lock:
            self._adapters[name.strip().lower()] = adapter

    def get(self, name=None):
        key = (name or self.settings.default_gateway).strip().lower()
        with self._lock:
            adapter = self._adapters.get(key)
            if adapter is None:
                cls = GATEWAY_CLASSES.get(key)
                if cls is None:
                    raise ValidationError(f"Unsupported payment gateway '{name}'")
                adapter = cls(self.settings, session_factory=self.session_factory, http=self.http)
                self._adapters[key] = adapter
        return adapter


__all__ = [
    "GATEWAY_CLASSES",
    "GatewayRegistry",
    "OrderRequest",
    "PaymentGateway",
    "SubmissionResult",
    "TransactionStatus",
]
