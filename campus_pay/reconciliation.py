"""
Payment reconciliation.

Two independent triggers settle a pending transaction: the client calling verify
after the redirect, and the provider's webhook. They can arrive in either order,
more than once, or at the same time. Whichever reaches the transaction store first
performs the transition; every later trigger finds a terminal row and does nothing.
The student projection is only touched by the trigger that actually changed the row.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple

from sqlalchemy.orm import Session

from campus_pay.errors import (
    AmountMismatch,
    Forbidden,
    NotFoundError,
    PaymentError,
    SignatureInvalid,
    ValidationError,
)
from campus_pay.models import FAILED, PENDING, SUCCESS, Transaction
from campus_pay.projection import StudentPaymentProjection
from campus_pay.providers.base import (
    EVENT_FAILED,
    EVENT_SUCCESS,
    PROVIDER_FAILED,
    PROVIDER_SUCCESS,
    InitiatedCharge,
    PaymentProvider,
)
from campus_pay.schemas import PaymentInitiate
from campus_pay.store import Reconstruction, TransactionStore

logger = logging.getLogger("payment-service.reconciliation")


@dataclass
class Caller:
    id: str
    role: str


@dataclass
class ReconciliationOutcome:
    transaction: Optional[Transaction]
    provider_status: str
    changed: bool = False
    projection_synced: bool = True

    @property
    def status(self) -> str:
        return self.transaction.status if self.transaction is not None else self.provider_status


class ReconciliationEngine:
    def __init__(
        self,
        db: Session,
        providers: Dict[str, PaymentProvider],
        default_provider: str,
        default_currency: str = "NGN",
    ):
        self.db = db
        self.providers = providers
        self.default_provider = default_provider
        self.default_currency = default_currency
        self.store = TransactionStore(db)
        self.projection = StudentPaymentProjection(db)

    def provider(self, name: Optional[str] = None) -> PaymentProvider:
        name = (name or self.default_provider).lower()
        try:
            return self.providers[name]
        except KeyError:
            raise ValidationError(f"Payment provider {name!r} is not configured") from None

    # initiation

    def initiate(self, request: PaymentInitiate) -> Tuple[Transaction, InitiatedCharge]:
        provider = self.provider(request.provider)
        self.projection.get_student(request.student_id)

        term = request.term_context
        currency = request.currency or self.default_currency
        description = request.description or f"Fee payment for {term.semester} {term.academic_year}"

        charge = provider.initiate(
            amount=request.amount,
            currency=currency,
            student_id=request.student_id,
            term_context=term.model_dump(),
            payer_email=request.payer_email,
            description=description,
            callback_url=request.callback_url,
        )
        transaction = self.store.create(
            Transaction(
                student_id=request.student_id,
                provider=provider.name,
                provider_reference=charge.provider_reference,
                amount=request.amount,
                currency=currency,
                status=PENDING,
                semester=term.semester,
                academic_year=term.academic_year,
                description=description,
            )
        )
        logger.info(
            "Created pending transaction id=%s ref=%s student=%s amount=%s %s via %s",
            transaction.id, transaction.provider_reference, transaction.student_id,
            transaction.amount, transaction.currency, provider.name,
        )
        return transaction, charge

    # client-confirmation path

    def confirm_from_client(
        self, reference: str, caller: Optional[Caller] = None, provider_name: Optional[str] = None
    ) -> ReconciliationOutcome:
        transaction = self.store.find_by_reference(reference)
        if transaction is not None:
            self._check_owner(caller, transaction.student_id)
            provider = self.provider(transaction.provider)
        else:
            provider = self.provider(provider_name)

        # status comes from our own authenticated call to the provider, never from the caller
        charge = provider.verify(reference)

        if transaction is None:
            self._check_owner(caller, charge.metadata.get("student_id"))

        if charge.provider_status == PROVIDER_SUCCESS:
            if transaction is not None and transaction.status == PENDING and not self._amount_matches(
                transaction, charge.amount, charge.currency
            ):
                raise AmountMismatch(f"Provider amount for {reference} does not match the recorded charge")
            reconstruct = None if transaction is not None else self._reconstruction(
                provider.name, charge.amount, charge.currency, charge.metadata
            )
            return self._settle(reference, SUCCESS, charge.paid_at, reconstruct, charge.provider_status)

        if transaction is None:
            raise NotFoundError(f"No transaction with reference {reference}")

        if charge.provider_status == PROVIDER_FAILED:
            return self._settle(reference, FAILED, None, None, charge.provider_status)

        logger.info("Verify %s: provider reports %s; no change", reference, charge.provider_status)
        return ReconciliationOutcome(transaction, charge.provider_status)

    # webhook path

    def handle_webhook(
        self, raw_body: bytes, signature: Optional[str], provider_name: Optional[str] = None
    ) -> ReconciliationOutcome:
        provider = self.provider(provider_name)
        if not provider.verify_signature(raw_body, signature):
            logger.warning("Rejected %s webhook: invalid signature", provider.name)
            raise SignatureInvalid("Invalid signature")

        event = provider.parse_webhook_event(raw_body)
        if event.kind not in (EVENT_SUCCESS, EVENT_FAILED) or not event.reference:
            logger.info("Webhook %s event %s acknowledged without action", provider.name, event.event_type)
            return ReconciliationOutcome(None, event.event_type)

        transaction = self.store.find_by_reference(event.reference)
        reconstruct = None
        if transaction is None:
            reconstruct = self._reconstruction(provider.name, event.amount, event.currency, event.metadata)
            if reconstruct is None:
                logger.error(
                    "Webhook %s for unknown reference %s lacks the metadata to rebuild it; ignored",
                    event.event_type, event.reference,
                )
                return ReconciliationOutcome(None, event.event_type)

        if event.kind == EVENT_FAILED:
            return self._settle(event.reference, FAILED, None, reconstruct, event.event_type)

        if transaction is not None and transaction.status == PENDING and not self._amount_matches(
            transaction, event.amount, event.currency
        ):
            logger.warning(
                "Webhook for %s reports %s %s but %s %s was charged; not marking paid",
                event.reference, event.amount, event.currency, transaction.amount, transaction.currency,
            )
            return ReconciliationOutcome(transaction, event.event_type)
        return self._settle(event.reference, SUCCESS, event.paid_at, reconstruct, event.event_type)

    # shared

    def _settle(
        self,
        reference: str,
        status: str,
        paid_at: Optional[datetime],
        reconstruct: Optional[Reconstruction],
        provider_status: str,
    ) -> ReconciliationOutcome:
        result = self.store.transition_to_terminal(reference, status, paid_at=paid_at, reconstruct=reconstruct)
        outcome = ReconciliationOutcome(result.transaction, provider_status, changed=result.changed)
        transaction = result.transaction

        if not result.changed:
            if transaction.status != status:
                logger.warning(
                    "Transaction %s is already %s; provider now reports %s", reference, transaction.status, status
                )
            return outcome

        logger.info("Transaction %s moved to %s", reference, transaction.status)
        if transaction.status == SUCCESS:
            try:
                self.projection.apply_success(transaction)
            except PaymentError:
                # the transaction stays paid; the projection can be rebuilt from it
                logger.exception(
                    "Transaction %s is paid but student %s projection was not updated",
                    reference, transaction.student_id,
                )
                outcome.projection_synced = False
        return outcome

    def _reconstruction(
        self, provider: str, amount: Optional[int], currency: Optional[str], metadata: dict
    ) -> Optional[Reconstruction]:
        student_id = metadata.get("student_id")
        semester = metadata.get("semester")
        academic_year = metadata.get("academic_year")
        if not (student_id and semester and academic_year and amount and currency):
            return None
        try:
            self.projection.get_student(student_id)
        except NotFoundError:
            logger.error("Provider metadata names unknown student %s", student_id)
            return None
        return Reconstruction(
            student_id=student_id,
            amount=int(amount),
            currency=currency.upper(),
            semester=semester,
            academic_year=academic_year,
            provider=provider,
            description=metadata.get("description"),
        )

    @staticmethod
    def _amount_matches(transaction: Transaction, amount: Optional[int], currency: Optional[str]) -> bool:
        if amount is not None and int(amount) != transaction.amount:
            return False
        if currency and currency.upper() != transaction.currency.upper():
            return False
        return True

    @staticmethod
    def _check_owner(caller: Optional[Caller], student_id: Optional[str]) -> None:
        if caller is None or caller.role != "student":
            return
        if student_id is not None and caller.id != student_id:
            raise Forbidden("Students may only verify their own payments")
