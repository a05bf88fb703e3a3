import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from campus_pay import signatures
from campus_pay.errors import GatewayRejected, GatewayUnavailable, ReferenceNotFound, ValidationError
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

logger = logging.getLogger("payment-service.paystack")

_STATUS_MAP = {
    "success": PROVIDER_SUCCESS,
    "failed": PROVIDER_FAILED,
    "reversed": PROVIDER_FAILED,
    "abandoned": PROVIDER_ABANDONED,
}


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable Paystack timestamp %r", value)
        return None


def normalise_metadata(raw: Any) -> Dict[str, Any]:
    # Paystack echoes metadata back either as an object or as a JSON string
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {}
    if not isinstance(raw, dict):
        return {}
    return {
        "student_id": raw.get("student_id"),
        "semester": raw.get("semester"),
        "academic_year": raw.get("academic_year"),
        "description": raw.get("description"),
    }


class PaystackProvider(PaymentProvider):
    """Paystack transaction API: initialize, verify, and charge.* webhooks."""

    name = "paystack"
    signature_header = "x-paystack-signature"

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._secret_key = secret_key
        self._base = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self._base,
            timeout=self._timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self._secret_key}"},
        )

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            with self._client() as client:
                response = client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayUnavailable(f"Paystack timed out on {path}") from exc
        except httpx.TransportError as exc:
            raise GatewayUnavailable(f"Paystack unreachable: {exc}") from exc
        if response.status_code >= 500:
            raise GatewayUnavailable(f"Paystack returned {response.status_code} on {path}")
        if response.status_code in (401, 403):
            logger.error("Paystack refused the configured secret key on %s", path)
            raise GatewayUnavailable("Paystack rejected the configured credentials")
        return response

    @staticmethod
    def _envelope(response: httpx.Response) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError as exc:
            raise GatewayUnavailable("Paystack returned a non-JSON body") from exc

    def initiate(self, amount, currency, student_id, term_context, payer_email, description, callback_url=None):
        payload = {
            "email": payer_email,
            "amount": amount,
            "currency": currency,
            "metadata": {
                "student_id": student_id,
                "semester": term_context["semester"],
                "academic_year": term_context["academic_year"],
                "description": description,
            },
        }
        if callback_url:
            payload["callback_url"] = callback_url

        response = self._request("POST", "/transaction/initialize", json=payload)
        body = self._envelope(response)
        if response.status_code >= 400 or not body.get("status"):
            logger.warning("Paystack declined initialization for student=%s: %s", student_id, body.get("message"))
            raise GatewayRejected(body.get("message") or "Paystack declined the transaction")

        data = body.get("data") or {}
        if not data.get("reference"):
            # without a reference nothing can ever be reconciled
            raise GatewayUnavailable("Paystack initialization succeeded without a reference")
        return InitiatedCharge(
            provider_reference=data["reference"],
            authorization_url=data.get("authorization_url", ""),
            access_code=data.get("access_code"),
        )

    def verify(self, provider_reference):
        response = self._request("GET", f"/transaction/verify/{provider_reference}")
        body = self._envelope(response)
        if response.status_code in (400, 404) or not body.get("status"):
            raise ReferenceNotFound(f"Paystack has no transaction {provider_reference}")

        data = body.get("data") or {}
        return VerifiedCharge(
            provider_reference=data.get("reference", provider_reference),
            provider_status=_STATUS_MAP.get(data.get("status"), PROVIDER_PENDING),
            amount=data.get("amount"),
            currency=(data.get("currency") or "").upper() or None,
            paid_at=parse_timestamp(data.get("paid_at") or data.get("paidAt")),
            gateway_response=data.get("gateway_response"),
            metadata=normalise_metadata(data.get("metadata")),
        )

    def verify_signature(self, raw_body, signature_header):
        return signatures.verify(raw_body, signature_header, self._secret_key)

    def parse_webhook_event(self, raw_body):
        try:
            event = json.loads(raw_body)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
        if not isinstance(event, dict):
            raise ValidationError("Webhook body is not a JSON object")

        event_type = event.get("event") or "unknown"
        data = event.get("data") or {}
        kind = {"charge.success": EVENT_SUCCESS, "charge.failed": EVENT_FAILED}.get(event_type, EVENT_IGNORED)
        return ProviderEvent(
            kind=kind,
            event_type=event_type,
            reference=data.get("reference"),
            amount=data.get("amount"),
            currency=(data.get("currency") or "").upper() or None,
            paid_at=parse_timestamp(data.get("paid_at") or data.get("paidAt")),
            metadata=normalise_metadata(data.get("metadata")),
        )
