import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from campus_pay.errors import NotFoundError, ProjectionError
from campus_pay.models import PAID, UNPAID, PaymentHistoryEntry, Student, Transaction
from campus_pay.store import TransactionStore

logger = logging.getLogger("payment-service.projection")


def latest_paid(transactions: List[Transaction]) -> Optional[Transaction]:
    return max(transactions, key=lambda t: (t.paid_at is not None, t.paid_at or t.created_at), default=None)


class StudentPaymentProjection:
    """Denormalised payment status on the student record.

    Only the reconciliation engine writes here; the transaction store remains the
    source of truth and rebuild() recomputes everything from it.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_student(self, student_id: str) -> Student:
        student = self.db.get(Student, student_id)
        if student is None:
            raise NotFoundError(f"Student {student_id} not found")
        return student

    def _has_entry(self, student_id: str, transaction_id: str) -> bool:
        return self.db.execute(
            select(PaymentHistoryEntry).where(
                PaymentHistoryEntry.student_id == student_id,
                PaymentHistoryEntry.transaction_id == transaction_id,
            )
        ).first() is not None

    def apply_success(self, transaction: Transaction, _retry: bool = True) -> Student:
        student = self.get_student(transaction.student_id)
        # a term settling late must not displace a more recently paid one
        latest = latest_paid(TransactionStore(self.db).list_successful(student.id)) or transaction
        student.current_term_payment_status = PAID
        student.last_paid_semester = latest.semester
        student.last_paid_academic_year = latest.academic_year
        if not self._has_entry(student.id, transaction.id):
            self.db.add(PaymentHistoryEntry(student_id=student.id, transaction_id=transaction.id))
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            if not _retry:
                raise ProjectionError(f"Could not record payment {transaction.id} for student {student.id}") from exc
            # the history row landed in between; the second pass skips it
            return self.apply_success(transaction, _retry=False)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise ProjectionError(f"Could not update payment status for student {student.id}") from exc
        self.db.refresh(student)
        logger.info(
            "Student %s marked paid for %s %s (transaction %s)",
            student.id, transaction.semester, transaction.academic_year, transaction.id,
        )
        return student

    def rebuild(self, student_id: str) -> Student:
        student = self.get_student(student_id)
        paid = TransactionStore(self.db).list_successful(student_id)
        paid_ids = {t.id for t in paid}

        for entry in list(student.history):
            if entry.transaction_id not in paid_ids:
                student.history.remove(entry)
        known = {entry.transaction_id for entry in student.history}
        for transaction in paid:
            if transaction.id not in known:
                student.history.append(PaymentHistoryEntry(student_id=student.id, transaction_id=transaction.id))

        if paid:
            latest = latest_paid(paid)
            student.current_term_payment_status = PAID
            student.last_paid_semester = latest.semester
            student.last_paid_academic_year = latest.academic_year
        else:
            student.current_term_payment_status = UNPAID
            student.last_paid_semester = None
            student.last_paid_academic_year = None

        self.db.commit()
        self.db.refresh(student)
        logger.info("Rebuilt payment projection for student %s from %d transactions", student_id, len(paid))
        return student
