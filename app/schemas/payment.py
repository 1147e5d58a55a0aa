from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict

from app.models.base import Money
from app.models.payment import Payment, PaymentSource


class PaymentDetails(BaseModel):
    """Audit fields copied onto payments created by an allocation."""
    payment_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payment_method: str = "cash"
    reference: str = ""
    notes: str = ""


class AllocationRequest(PaymentDetails):
    client_id: str
    document_id: Optional[str] = None
    amount: Decimal
    source: PaymentSource = PaymentSource.NEW_PAYMENT


class PaymentCreate(PaymentDetails):
    """Record a new payment; with a document_id it is allocated like a new payment."""
    client_id: str
    document_id: Optional[str] = None
    amount: Decimal


class PaymentUpdate(BaseModel):
    """Editable human fields. Amounts and allocation change only through the ledger."""
    payment_date: Optional[datetime] = None
    payment_method: Optional[str] = None
    reference: Optional[str] = None
    notes: Optional[str] = None


class PaymentResponse(Payment):
    id: str = Field(validation_alias="_id", serialization_alias="id")
    allocation_status: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class AllocationResult(BaseModel):
    client_id: str
    document_id: Optional[str] = None
    source: PaymentSource
    requested: Money
    applied: Money
    excess: Money
    # account-funded requests above the outstanding amount leave this in the account
    unapplied: Money
    allocated_payments: List[PaymentResponse] = []
    created_payments: List[PaymentResponse] = []

    @classmethod
    def response_payments(cls, payments: List[Payment]) -> List[PaymentResponse]:
        return [PaymentResponse.model_validate(p.model_dump()) for p in payments]
