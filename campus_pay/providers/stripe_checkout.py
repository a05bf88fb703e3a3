import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from campus_pay.errors import GatewayRejected, GatewayUnavailable, ReferenceNotFound, ValidationError
from campus_pay.providers.base import (
    EVENT_FAILED,
    EVENT_IGNORED,
    EVENT_SUCCESS,
    PROVIDER_ABANDONED,
    PROVIDER_PENDING,
    PROVIDER_SUCCESS,
    InitiatedCharge,
    PaymentProvider,
    ProviderEvent,
    VerifiedCharge,
)

logger = logging.getLogger("payment-service.stripe")

SUCCESS_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
FAILURE_EVENTS = ("checkout.session.async_payment_failed", "checkout.session.expired")


def _metadata(raw: Any) -> Dict[str, Any]:
    raw = raw or {}
    return {key: raw.get(key) for key in ("student_id", "semester", "academic_year", "description")}


def _from_epoch(value: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


def _charge_created(payment_intent: Any) -> Optional[int]:
    charge = getattr(payment_intent, "latest_charge", None)
    return getattr(charge, "created", None)


class StripeCheckoutProvider(PaymentProvider):
    """Stripe Checkout Sessions. The session id is the provider reference."""

    name = "stripe"
    signature_header = "stripe-signature"

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        success_url: str,
        cancel_url: str,
        timeout: float = 15.0,
        tolerance: int = 300,
        client: Optional[stripe.StripeClient] = None,
    ):
        self._webhook_secret = webhook_secret
        self._success_url = success_url
        self._cancel_url = cancel_url
        self._tolerance = tolerance
        self._client = client or stripe.StripeClient(
            secret_key,
            http_client=stripe.RequestsClient(timeout=timeout),
            max_network_retries=0,
        )

    def initiate(self, amount, currency, student_id, term_context, payer_email, description, callback_url=None):
        metadata = {
            "student_id": student_id,
            "semester": term_context["semester"],
            "academic_year": term_context["academic_year"],
            "description": description,
        }
        success_url = callback_url or self._success_url
        params = {
            "mode": "payment",
            "customer_email": payer_email,
            "client_reference_id": student_id,
            "line_items": [
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": amount,
                        "product_data": {"name": description},
                    },
                }
            ],
            "success_url": f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": self._cancel_url,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        try:
            session = self._client.checkout.sessions.create(params=params)
        except (stripe.APIConnectionError, stripe.APIError, stripe.RateLimitError) as exc:
            raise GatewayUnavailable(f"Stripe unavailable: {exc.user_message or exc}") from exc
        except stripe.StripeError as exc:
            logger.warning("Stripe declined checkout for student=%s: %s", student_id, exc.user_message or exc)
            raise GatewayRejected(exc.user_message or str(exc)) from exc

        return InitiatedCharge(provider_reference=session.id, authorization_url=session.url or "")

    def _paid_at(self, payment_intent: Any, session_created: Optional[int]) -> Optional[datetime]:
        """Creation time of the charge behind a paid session.

        Both the verify and the webhook path resolve it the same way, so the stored
        payment time does not depend on which of them settles the transaction. Sessions
        without a payment intent (nothing to charge) fall back to the session's own
        creation time.
        """
        if isinstance(payment_intent, str):
            try:
                payment_intent = self._client.payment_intents.retrieve(
                    payment_intent, params={"expand": ["latest_charge"]}
                )
            except stripe.StripeError as exc:
                raise GatewayUnavailable(f"Stripe unavailable: {exc.user_message or exc}") from exc
        return _from_epoch(_charge_created(payment_intent) or session_created)

    def verify(self, provider_reference):
        try:
            session = self._client.checkout.sessions.retrieve(
                provider_reference, params={"expand": ["payment_intent.latest_charge"]}
            )
        except stripe.InvalidRequestError as exc:
            raise ReferenceNotFound(f"Stripe has no checkout session {provider_reference}") from exc
        except stripe.StripeError as exc:
            raise GatewayUnavailable(f"Stripe unavailable: {exc.user_message or exc}") from exc

        if getattr(session, "payment_status", None) == "paid":
            status = PROVIDER_SUCCESS
        elif getattr(session, "status", None) == "expired":
            status = PROVIDER_ABANDONED
        else:
            status = PROVIDER_PENDING

        currency = getattr(session, "currency", None)
        return VerifiedCharge(
            provider_reference=session.id,
            provider_status=status,
            amount=getattr(session, "amount_total", None),
            currency=currency.upper() if currency else None,
            paid_at=self._paid_at(
                getattr(session, "payment_intent", None), getattr(session, "created", None)
            ) if status == PROVIDER_SUCCESS else None,
            gateway_response=getattr(session, "status", None),
            metadata=_metadata(getattr(session, "metadata", None)),
        )

    def verify_signature(self, raw_body, signature_header):
        if not signature_header or not self._webhook_secret:
            return False
        try:
            stripe.WebhookSignature.verify_header(raw_body, signature_header, self._webhook_secret, self._tolerance)
        except stripe.SignatureVerificationError:
            return False
        return True

    def parse_webhook_event(self, raw_body):
        try:
            event = json.loads(raw_body)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
        if not isinstance(event, dict):
            raise ValidationError("Webhook body is not a JSON object")

        event_type = event.get("type") or "unknown"
        session = (event.get("data") or {}).get("object") or {}

        kind = EVENT_IGNORED
        if event_type in SUCCESS_EVENTS and session.get("payment_status") == "paid":
            kind = EVENT_SUCCESS
        elif event_type in FAILURE_EVENTS:
            kind = EVENT_FAILED

        currency = session.get("currency")
        return ProviderEvent(
            kind=kind,
            event_type=event_type,
            reference=session.get("id"),
            amount=session.get("amount_total"),
            currency=currency.upper() if currency else None,
            paid_at=self._paid_at(
                session.get("payment_intent"), session.get("created")
            ) if kind == EVENT_SUCCESS else None,
            metadata=_metadata(session.get("metadata")),
        )
