import os
from dataclasses import dataclass

from dotenv import load_dotenv

from errors import ConfigurationError
from models import OrderStatus

# Load env vars
load_dotenv()


def _env(name, default=None):
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///checkout.db"
    secret_key: str = "dev-secret-key"
    frontend_store_url: str = "http://localhost:3001"
    api_base_url: str = "http://localhost:4242"
    cors_origin: str = "http://localhost:3001"

    pesapal_consumer_key: str | None = None
    pesapal_consumer_secret: str | None = None
    pesapal_environment: str = "sandbox"

    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None

    flutterwave_secret_key: str | None = None
    flutterwave_secret_hash: str | None = None

    default_gateway: str = "pesapal"
    gateway_timeout: float = 15.0
    unrecognized_payment_status: str = "PROCESSING"

    log_level: str = "INFO"
    log_dir: str | None = None

    def __post_init__(self):
        status = str(self.unrecognized_payment_status or "").upper()
        if status not in OrderStatus.__members__:
            raise ConfigurationError(
                f"UNRECOGNIZED_PAYMENT_STATUS must be one of {', '.join(OrderStatus.__members__)}, "
                f"got {self.unrecognized_payment_status!r}"
            )

    @classmethod
    def from_env(cls, **overrides):
        values = dict(
            database_url=_env("DATABASE_URL", cls.database_url),
            secret_key=_env("SECRET_KEY", cls.secret_key),
            frontend_store_url=_env("FRONTEND_STORE_URL", cls.frontend_store_url),
            api_base_url=_env("API_BASE_URL", cls.api_base_url),
            cors_origin=_env("CORS_ORIGIN", cls.cors_origin),
            pesapal_consumer_key=_env("PESAPAL_CONSUMER_KEY"),
            pesapal_consumer_secret=_env("PESAPAL_CONSUMER_SECRET"),
            pesapal_environment=_env("PESAPAL_ENVIRONMENT", cls.pesapal_environment),
            stripe_secret_key=_env("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
            flutterwave_secret_key=_env("FLUTTERWAVE_SECRET_KEY"),
            flutterwave_secret_hash=_env("FLUTTERWAVE_SECRET_HASH"),
            default_gateway=_env("DEFAULT_GATEWAY", cls.default_gateway).lower(),
            gateway_timeout=float(_env("GATEWAY_TIMEOUT", cls.gateway_timeout)),
            unrecognized_payment_status=_env(
                "UNRECOGNIZED_PAYMENT_STATUS", cls.unrecognized_payment_status
            ).upper(),
            log_level=_env("LOG_LEVEL", cls.log_level).upper(),
            log_dir=_env("LOG_DIR"),
        )
        values.update(overrides)
        return cls(**values)

    def require(self, *names):
        """Return the named settings, raising ConfigurationError if any is unset."""
        missing = [n for n in names if not getattr(self, n)]
        if missing:
            raise ConfigurationError(
                "Missing configuration: " + ", ".join(n.upper() for n in missing)
            )
        values = tuple(getattr(self, n) for n in names)
        return values[0] if len(values) == 1 else values
