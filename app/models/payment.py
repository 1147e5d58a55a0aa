"""
Payment model - cash received from a client.

Design principles:
- document_id set   -> allocated to that invoice
- document_id None  -> unallocated, part of the client's account balance
- One record never spans two invoices; splitting produces two full records
- Provenance is kept in structured fields, notes stay free text
- migrated/repaired flags are audit-only and never affect calculations
"""

from typing import Optional, List
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field

from app.models.base import MongoModel, Money
from app.models.invoice import LegacyPayment


class PaymentSource(str, Enum):
    NEW_PAYMENT = "new payment"
    CLIENT_ACCOUNT = "client account balance"


class AuditAction(str, Enum):
    DEPOSITED = "deposited"
    ALLOCATED = "allocated"
    PARTIALLY_ALLOCATED = "partially_allocated"
    SPLIT = "split"
    EXCESS_TO_ACCOUNT = "excess_to_account"
    RELEASED = "released"
    MIGRATED = "migrated"
    REPAIRED = "repaired"
    SETTLEMENT_CORRECTED = "settlement_corrected"


class AuditEntry(BaseModel):
    action: AuditAction
    document_id: Optional[str] = None
    amount: Optional[Money] = None
    detail: str = ""
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Payment(MongoModel):
    client_id: Optional[str] = None
    document_id: Optional[str] = None
    invoice_number: str = ""

    amount: Money
    payment_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payment_method: str = "cash"
    reference: str = ""
    notes: str = ""

    settled_to_document: bool = False

    # Provenance
    split_from_payment_id: Optional[str] = None
    excess_from_document_id: Optional[str] = None
    migrated: bool = False
    migrated_from_document_id: Optional[str] = None
    migration_index: Optional[int] = None
    legacy_entry: Optional[LegacyPayment] = None
    repaired: bool = False
    repaired_at: Optional[datetime] = None
    repaired_by: Optional[str] = None
    audit_trail: List[AuditEntry] = []

    @property
    def is_allocated(self) -> bool:
        return self.document_id is not None

    def with_audit(self, action: AuditAction, document_id: Optional[str] = None,
                   amount=None, detail: str = "") -> List[AuditEntry]:
        """Audit trail extended by one entry (the payment itself is not changed)."""
        entry = AuditEntry(action=action, document_id=document_id, amount=amount, detail=detail)
        return [*self.audit_trail, entry]
