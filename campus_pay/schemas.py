from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class TermContext(BaseModel):
    academic_year: str = Field(min_length=1, max_length=20)
    semester: str = Field(min_length=1, max_length=20)


class PaymentInitiate(BaseModel):
    amount: int = Field(gt=0, description="Amount in the smallest currency unit")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    student_id: str = Field(min_length=1, max_length=64)
    term_context: TermContext
    payer_email: EmailStr
    description: Optional[str] = Field(default=None, max_length=255)
    callback_url: Optional[str] = None
    provider: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value


class PaymentInitiated(BaseModel):
    provider_reference: str
    authorization_url: str
    internal_transaction_id: str


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    student_id: str
    provider: str
    provider_reference: str
    amount: int
    currency: str
    status: str
    term_context: TermContext
    description: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class VerificationOut(BaseModel):
    status: str
    provider_status: Optional[str] = None
    transaction: Optional[TransactionOut] = None


class WebhookAck(BaseModel):
    received: bool = True


class StudentPaymentStatus(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    current_term_payment_status: str
    last_paid_semester: Optional[str] = None
    last_paid_academic_year: Optional[str] = None
    payment_history: List[str] = []
