import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campus_pay.errors import DuplicateReference, NotFoundError, ReconciliationConflict, ValidationError
from campus_pay.models import PENDING, TERMINAL_STATUSES, Transaction, utcnow

logger = logging.getLogger("payment-service.store")


@dataclass
class Reconstruction:
    """Fields taken from a provider event when no local record exists yet."""

    student_id: str
    amount: int
    currency: str
    semester: str
    academic_year: str
    provider: str
    description: Optional[str] = None


@dataclass
class TransitionResult:
    transaction: Transaction
    changed: bool


class TransactionStore:
    def __init__(self, db: Session):
        self.db = db

    def create(self, transaction: Transaction) -> Transaction:
        self.db.add(transaction)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise DuplicateReference(f"Reference {transaction.provider_reference} already exists") from exc
        self.db.refresh(transaction)
        return transaction

    def find_by_reference(self, reference: str) -> Optional[Transaction]:
        return self.db.execute(
            select(Transaction).where(Transaction.provider_reference == reference)
        ).scalar_one_or_none()

    def get(self, transaction_id: str) -> Optional[Transaction]:
        return self.db.get(Transaction, transaction_id)

    def list(self, status: Optional[str] = None, student_id: Optional[str] = None) -> List[Transaction]:
        q = select(Transaction)
        if status:
            q = q.where(Transaction.status == status.lower())
        if student_id:
            q = q.where(Transaction.student_id == student_id)
        return list(self.db.execute(q.order_by(Transaction.created_at.desc())).scalars())

    def list_successful(self, student_id: str) -> List[Transaction]:
        return self.list(status="success", student_id=student_id)

    def transition_to_terminal(
        self,
        reference: str,
        new_status: str,
        paid_at: Optional[datetime] = None,
        reconstruct: Optional[Reconstruction] = None,
    ) -> TransitionResult:
        """Move the transaction for reference out of pending, at most once.

        The status check and the write happen in one conditional UPDATE, so of two
        concurrent callers exactly one sees a changed row. A reference that is already
        terminal is returned untouched.
        """
        if new_status not in TERMINAL_STATUSES:
            raise ValidationError(f"{new_status!r} is not a terminal status")

        values = {"status": new_status, "updated_at": utcnow()}
        if new_status == "success":
            values["paid_at"] = paid_at or utcnow()

        result = self.db.execute(
            update(Transaction)
            .where(Transaction.provider_reference == reference, Transaction.status == PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        changed = result.rowcount == 1

        transaction = self.find_by_reference(reference)
        if transaction is not None:
            self.db.refresh(transaction)
            if not changed and not transaction.is_terminal:
                logger.critical("Conditional update on %s matched nothing but the row is still pending", reference)
                raise ReconciliationConflict(f"Transaction {reference} could not be moved out of pending")
            if not changed:
                logger.info("Transaction %s already %s; %s ignored", reference, transaction.status, new_status)
            return TransitionResult(transaction, changed)

        if reconstruct is None:
            raise NotFoundError(f"No transaction with reference {reference}")
        return self._insert_terminal(reference, new_status, values.get("paid_at"), reconstruct)

    def _insert_terminal(
        self, reference: str, status: str, paid_at: Optional[datetime], data: Reconstruction
    ) -> TransitionResult:
        transaction = Transaction(
            student_id=data.student_id,
            provider=data.provider,
            provider_reference=reference,
            amount=data.amount,
            currency=data.currency,
            status=status,
            semester=data.semester,
            academic_year=data.academic_year,
            description=data.description or f"Fee payment for {data.semester} {data.academic_year}",
            paid_at=paid_at,
        )
        self.db.add(transaction)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.find_by_reference(reference)
            if existing is None:
                raise
            # another delivery inserted it first
            logger.info("Transaction %s was reconstructed concurrently; keeping %s", reference, existing.status)
            if not existing.is_terminal:
                return self.transition_to_terminal(reference, status, paid_at)
            return TransitionResult(existing, False)

        self.db.refresh(transaction)
        logger.warning("Reconstructed missing transaction %s as %s from provider data", reference, status)
        return TransitionResult(transaction, True)
