import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, built once at startup and passed explicitly."""

    database_url: str = "postgresql://postgres:postgres@db:5432/payment_db"
    rabbitmq_url: str = ""
    jwt_secret: str = ""
    payment_provider: str = "paystack"
    paystack_secret_key: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_success_url: str = "http://localhost:3000/payment/success"
    stripe_cancel_url: str = "http://localhost:3000/payment/cancel"
    gateway_timeout_seconds: float = 15.0
    default_currency: str = "NGN"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            rabbitmq_url=os.getenv("RABBITMQ_URL", cls.rabbitmq_url),
            jwt_secret=os.getenv("JWT_SECRET", cls.jwt_secret),
            payment_provider=os.getenv("PAYMENT_PROVIDER", cls.payment_provider).lower(),
            paystack_secret_key=os.getenv("PAYSTACK_SECRET_KEY", cls.paystack_secret_key),
            paystack_base_url=os.getenv("PAYSTACK_BASE_URL", cls.paystack_base_url),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", cls.stripe_secret_key),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", cls.stripe_webhook_secret),
            stripe_success_url=os.getenv("STRIPE_SUCCESS_URL", cls.stripe_success_url),
            stripe_cancel_url=os.getenv("STRIPE_CANCEL_URL", cls.stripe_cancel_url),
            gateway_timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", cls.gateway_timeout_seconds)),
            default_currency=os.getenv("DEFAULT_CURRENCY", cls.default_currency).upper(),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )

    def __repr__(self) -> str:
        # keep secrets out of logs
        return (
            f"Settings(database_url={self.database_url.split('@')[-1]!r}, "
            f"payment_provider={self.payment_provider!r}, "
            f"gateway_timeout_seconds={self.gateway_timeout_seconds})"
        )
