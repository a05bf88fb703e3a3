from typing import Dict

from campus_pay.config import Settings
from campus_pay.providers.base import (
    EVENT_FAILED,
    EVENT_IGNORED,
    EVENT_SUCCESS,
    PROVIDER_ABANDONED,
    PROVIDER_FAILED,
    PROVIDER_PENDING,
    PROVIDER_SUCCESS,
    InitiatedCharge,
    PaymentProvider,
    ProviderEvent,
    VerifiedCharge,
)
from campus_pay.providers.paystack import PaystackProvider
from campus_pay.providers.stripe_checkout import StripeCheckoutProvider


def build_providers(settings: Settings) -> Dict[str, PaymentProvider]:
    """Instantiate every provider that has credentials configured."""
    providers: Dict[str, PaymentProvider] = {}
    if settings.paystack_secret_key:
        providers["paystack"] = PaystackProvider(
            settings.paystack_secret_key,
            base_url=settings.paystack_base_url,
            timeout=settings.gateway_timeout_seconds,
        )
    if settings.stripe_secret_key:
        providers["stripe"] = StripeCheckoutProvider(
            settings.stripe_secret_key,
            settings.stripe_webhook_secret,
            success_url=settings.stripe_success_url,
            cancel_url=settings.stripe_cancel_url,
            timeout=settings.gateway_timeout_seconds,
        )
    return providers


__all__ = [
    "EVENT_FAILED",
    "EVENT_IGNORED",
    "EVENT_SUCCESS",
    "PROVIDER_ABANDONED",
    "PROVIDER_FAILED",
    "PROVIDER_PENDING",
    "PROVIDER_SUCCESS",
    "InitiatedCharge",
    "PaymentProvider",
    "PaystackProvider",
    "ProviderEvent",
    "StripeCheckoutProvider",
    "VerifiedCharge",
    "build_providers",
]
