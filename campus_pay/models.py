import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from campus_pay.database import Base

PENDING = "pending"
SUCCESS = "success"
FAILED = "failed"
TERMINAL_STATUSES = (SUCCESS, FAILED)

PAID = "paid"
UNPAID = "unpaid"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(String(32), primary_key=True, default=new_id)
    student_id = Column(String(64), ForeignKey("students.id"), nullable=False, index=True)
    provider = Column(String(20), nullable=False, default="paystack")
    provider_reference = Column(String(128), nullable=False, unique=True, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default=PENDING, index=True)
    semester = Column(String(20), nullable=False)
    academic_year = Column(String(20), nullable=False)
    description = Column(String(255), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def term_context(self) -> dict:
        return {"academic_year": self.academic_year, "semester": self.semester}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Student(Base):
    """Student record as far as payments are concerned; profile CRUD lives elsewhere."""

    __tablename__ = "students"
    id = Column(String(64), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    registration_number = Column(String(64), nullable=True, unique=True)
    current_term_payment_status = Column(String(10), nullable=False, default=UNPAID)
    last_paid_semester = Column(String(20), nullable=True)
    last_paid_academic_year = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    history = relationship("PaymentHistoryEntry", cascade="all, delete-orphan", lazy="selectin")

    @property
    def payment_history(self) -> list:
        return [entry.transaction_id for entry in self.history]


class PaymentHistoryEntry(Base):
    # composite key gives payment_history its set semantics
    __tablename__ = "student_payment_history"
    student_id = Column(String(64), ForeignKey("students.id"), primary_key=True)
    transaction_id = Column(String(32), ForeignKey("transactions.id"), primary_key=True)
    added_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
