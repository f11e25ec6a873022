"""Error taxonomy for the checkout core.

Every error carries the HTTP status it maps to and the message that is safe
to show to the caller. Gateway errors keep their detail for the logs only.
"""


class CheckoutError(Exception):
    status_code = 500
    public_message = "Internal error"

    def __init__(self, message=None):
        super().__init__(message or self.public_message)

    @property
    def client_message(self):
        return str(self)


# ---------- request / business rule errors ----------

class ValidationError(CheckoutError):
    status_code = 400
    public_message = "Invalid request"


class EmptyCart(ValidationError):
    public_message = "Products are required"


class ProductNotFound(CheckoutError):
    status_code = 400

    def __init__(self, product_id):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class InsufficientStock(CheckoutError):
    status_code = 400

    def __init__(self, product_id, requested, available=None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(f"Insufficient stock for product {product_id}")


class OrderNotFound(CheckoutError):
    status_code = 404
    public_message = "Order not found"


class StoreNotFound(CheckoutError):
    status_code = 404
    public_message = "Store not found"


class Unauthenticated(CheckoutError):
    status_code = 403
    public_message = "Unauthenticated"


class Unauthorized(CheckoutError):
    status_code = 405
    public_message = "Unauthorized"


# ---------- provider / configuration errors ----------

class ConfigurationError(CheckoutError):
    """A required setting (usually a provider credential) is missing."""

    @property
    def client_message(self):
        return self.public_message


class GatewayError(CheckoutError):
    """The payment provider rejected a call or answered with an unusable shape."""

    @property
    def client_message(self):
        return self.public_message


class AuthenticationFailed(GatewayError):
    pass


class SubmissionFailed(GatewayError):
    pass


class TrackingMissing(SubmissionFailed):
    pass


class RedirectMissing(SubmissionFailed):
    pass


class GatewayTimeout(GatewayError):
    status_code = 504
    public_message = "Payment provider timed out"
