from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

# normalised provider-side statuses
PROVIDER_SUCCESS = "success"
PROVIDER_FAILED = "failed"
PROVIDER_ABANDONED = "abandoned"
PROVIDER_PENDING = "pending"

# normalised webhook event kinds
EVENT_SUCCESS = "charge.success"
EVENT_FAILED = "charge.failed"
EVENT_IGNORED = "ignored"


@dataclass
class InitiatedCharge:
    provider_reference: str
    authorization_url: str
    access_code: Optional[str] = None


@dataclass
class VerifiedCharge:
    provider_reference: str
    provider_status: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    paid_at: Optional[datetime] = None
    gateway_response: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderEvent:
    kind: str
    event_type: str
    reference: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    paid_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(ABC):
    """What the reconciliation engine needs from a payment gateway.

    Metadata returned by verify and parse_webhook_event is normalised to the
    keys student_id, semester, academic_year and description.
    """

    name: str = ""
    signature_header: str = ""

    @abstractmethod
    def initiate(
        self,
        amount: int,
        currency: str,
        student_id: str,
        term_context: Dict[str, str],
        payer_email: str,
        description: str,
        callback_url: Optional[str] = None,
    ) -> InitiatedCharge:
        ...

    @abstractmethod
    def verify(self, provider_reference: str) -> VerifiedCharge:
        ...

    @abstractmethod
    def verify_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        ...

    @abstractmethod
    def parse_webhook_event(self, raw_body: bytes) -> ProviderEvent:
        ...
