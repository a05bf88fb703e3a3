"""Tests for the student payment-status projection."""

from datetime import datetime, timezone

import pytest

from campus_pay.errors import NotFoundError
from campus_pay.models import PAID, SUCCESS, UNPAID, Transaction
from campus_pay.projection import StudentPaymentProjection
from campus_pay.store import TransactionStore
from conftest import STUDENT_ID


def paid_transaction(db, reference, semester="Fall", academic_year="2025-2026", paid_at=None) -> Transaction:
    store = TransactionStore(db)
    store.create(Transaction(
        student_id=STUDENT_ID, provider="paystack", provider_reference=reference, amount=500000,
        currency="NGN", semester=semester, academic_year=academic_year,
    ))
    return store.transition_to_terminal(reference, SUCCESS, paid_at).transaction


@pytest.fixture
def projection(db) -> StudentPaymentProjection:
    return StudentPaymentProjection(db)


class TestApplySuccess:
    def test_marks_student_paid(self, db, projection) -> None:
        transaction = paid_transaction(db, "ref-0001")
        student = projection.apply_success(transaction)
        assert student.current_term_payment_status == PAID
        assert student.last_paid_semester == "Fall"
        assert student.last_paid_academic_year == "2025-2026"
        assert student.payment_history == [transaction.id]

    def test_history_is_a_set(self, db, projection) -> None:
        transaction = paid_transaction(db, "ref-0001")
        for _ in range(3):
            projection.apply_success(transaction)
        assert projection.get_student(STUDENT_ID).payment_history == [transaction.id]

    def test_older_term_settling_late_keeps_latest(self, db, projection) -> None:
        fall = paid_transaction(db, "ref-b", "Fall", "2025-2026", datetime(2025, 9, 1, tzinfo=timezone.utc))
        projection.apply_success(fall)
        spring = paid_transaction(db, "ref-a", "Spring", "2024-2025", datetime(2025, 3, 1, tzinfo=timezone.utc))

        student = projection.apply_success(spring)
        assert (student.last_paid_semester, student.last_paid_academic_year) == ("Fall", "2025-2026")
        assert sorted(student.payment_history) == sorted([fall.id, spring.id])

        rebuilt = projection.rebuild(STUDENT_ID)
        assert (rebuilt.last_paid_semester, rebuilt.last_paid_academic_year) == ("Fall", "2025-2026")

    def test_unknown_student(self, projection) -> None:
        with pytest.raises(NotFoundError):
            projection.get_student("stu-missing")


class TestRebuild:
    def test_rebuild_from_transactions(self, db, projection) -> None:
        spring = paid_transaction(db, "ref-a", "Spring", "2024-2025", datetime(2025, 3, 1, tzinfo=timezone.utc))
        fall = paid_transaction(db, "ref-b", "Fall", "2025-2026", datetime(2025, 9, 1, tzinfo=timezone.utc))

        student = projection.rebuild(STUDENT_ID)
        assert student.current_term_payment_status == PAID
        assert student.last_paid_semester == "Fall"
        assert student.last_paid_academic_year == "2025-2026"
        assert sorted(student.payment_history) == sorted([spring.id, fall.id])

    def test_rebuild_repairs_missed_update(self, db, projection) -> None:
        first = paid_transaction(db, "ref-a")
        projection.apply_success(first)
        # second payment committed but its projection update never happened
        second = paid_transaction(db, "ref-b", "Spring", "2025-2026", datetime(2030, 1, 1, tzinfo=timezone.utc))

        student = projection.rebuild(STUDENT_ID)
        assert sorted(student.payment_history) == sorted([first.id, second.id])
        assert student.last_paid_semester == "Spring"

    def test_rebuild_without_payments(self, projection) -> None:
        student = projection.rebuild(STUDENT_ID)
        assert student.current_term_payment_status == UNPAID
        assert student.last_paid_semester is None
        assert student.payment_history == []
