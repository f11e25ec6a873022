"""Shared plumbing for the payment gateway adapters.

Every adapter speaks the same small interface so checkout and reconciliation
never need to know which provider an order went to:

* ``authenticate()`` returns a usable access token (token providers only)
* ``ensure_callback_registered(store_id)`` makes sure the provider knows where
  to send notifications for the store
* ``submit_order(request, store_id)`` returns a :class:`SubmissionResult`
* ``get_transaction_status(tracking_id)`` returns a :class:`TransactionStatus`

HTTP goes through a ``requests.Session`` with a bounded timeout. Nothing is
retried: a failed call raises a :class:`errors.GatewayError` and the caller
decides what to do.
"""

import logging
import re
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import requests

from errors import GatewayError, GatewayTimeout, RedirectMissing, TrackingMissing

logger = logging.getLogger(__name__)

# Provider-neutral payment status codes. Each adapter maps its own codes onto
# these; the reconciler maps these onto local order statuses.
COMPLETED = "COMPLETED"
FAILED = "FAILED"
REVERSED = "REVERSED"
PENDING = "PENDING"
INVALID = "INVALID"


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


_LONG_FRACTION = re.compile(r"(\.\d{6})\d+")


def parse_timestamp(value):
    """Parse a provider timestamp into a naive UTC datetime.

    Accepts ISO 8601 strings (trailing ``Z``, offsets, and the 7-digit
    fractions .NET APIs emit), epoch seconds, or datetimes. Returns None for
    anything it cannot read.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _LONG_FRACTION.sub(r"\1", text)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning("Unreadable provider timestamp %r", value)
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@dataclass(frozen=True)
class OrderRequest:
    """What checkout hands to a gateway: one order, already priced."""

    order_id: str
    store_id: str
    amount: Decimal
    currency: str
    description: str
    callback_url: str
    cancellation_url: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    country_code: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None


@dataclass(frozen=True)
class SubmissionResult:
    tracking_id: str
    redirect_url: str


@dataclass(frozen=True)
class TransactionStatus:
    tracking_id: str
    status: str
    description: Optional[str] = None
    payment_method: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    confirmation_code: Optional[str] = None
    payment_account: Optional[str] = None
    created_date: Optional[datetime] = None
    merchant_reference: Optional[str] = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    def as_dict(self):
        data = asdict(self)
        data.pop("raw")
        if self.amount is not None:
            data["amount"] = str(self.amount)
        if self.created_date is not None:
            data["created_date"] = self.created_date.isoformat()
        return data


@dataclass(frozen=True)
class CachedToken:
    value: str
    expiry: datetime  # naive UTC

    def is_valid(self, now, leeway=timedelta(0)):
        return now < self.expiry - leeway


class TokenCache:
    """Holds one access token and refreshes it at most once at a time.

    Concurrent callers that find the token expired wait on the same lock;
    the first one fetches, the rest reuse what it fetched.
    """

    def __init__(self, fetch, clock=utcnow, leeway=timedelta(seconds=30)):
        self._fetch = fetch
        self._clock = clock
        self._leeway = leeway
        self._lock = threading.Lock()
        self._token = None

    @property
    def token(self):
        return self._token

    def get(self):
        token = self._token
        if token is not None and token.is_valid(self._clock(), self._leeway):
            return token.value
        with self._lock:
            token = self._token
            if token is not None and token.is_valid(self._clock(), self._leeway):
                return token.value
            self._token = self._fetch()
            return self._token.value

    def clear(self):
        with self._lock:
            self._token = None


def lookup(data, path):
    """Fetch a dotted ``path`` (e.g. ``"data.link"``) from nested dicts."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def first_present(data, paths):
    for path in paths:
        value = lookup(data, path)
        if value not in (None, ""):
            return value
    return None


def normalize_submission(data, tracking_keys, redirect_keys, provider="provider"):
    """Map any of a provider's known submit-response shapes to one result."""
    tracking_id = first_present(data, tracking_keys)
    if tracking_id is None:
        raise TrackingMissing(f"{provider} response has no tracking identifier: {data!r}")
    redirect_url = first_present(data, redirect_keys)
    if redirect_url is None:
        raise RedirectMissing(f"{provider} response has no redirect url: {data!r}")
    return SubmissionResult(tracking_id=str(tracking_id), redirect_url=str(redirect_url))


def has_error(data):
    """True when a JSON body carries a non-empty ``error`` member."""
    error = data.get("error") if isinstance(data, dict) else None
    if not error:
        return False
    if isinstance(error, dict):
        return any(v not in (None, "") for v in error.values())
    return True


class PaymentGateway:
    """Base class for payment provider adapters."""

    name = "base"

    def __init__(self, settings, session_factory=None, http=None, clock=utcnow):
        self.settings = settings
        self.session_factory = session_factory
        self.http = http or requests.Session()
        self.timeout = settings.gateway_timeout
        self.clock = clock

    # ----- interface -----
    def authenticate(self):
        return None

    def ensure_callback_registered(self, store_id):
        return None

    def submit_order(self, request, store_id):
        raise NotImplementedError

    def get_transaction_status(self, tracking_id):
        raise NotImplementedError

    def parse_webhook(self, payload, headers):
        """Verify a pushed notification and return the tracking id it is about."""
        raise NotImplementedError

    # ----- HTTP helper -----
    def _request(self, method, url, error_cls=GatewayError, what="request", **kwargs):
        try:
            response = self.http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout as exc:
            raise GatewayTimeout(f"{self.name} {what} timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise error_cls(f"{self.name} {what} failed: {exc}") from exc

        if not response.ok:
            raise error_cls(f"{self.name} {what} failed: HTTP {response.status_code} {response.reason}")
        try:
            return response.json()
        except ValueError as exc:
            raise error_cls(f"{self.name} {what} returned a non-JSON body") from exc
