"""
Invoice model - documents that payments are allocated against.

Design principles:
- total is fixed by the document service; the ledger never computes it
- total_paid is never stored, it is derived from allocated payments
- Status: ACTIVE <-> CANCELLED (restore is allowed)
- Older documents may still carry their payments embedded in `payments`
"""

from typing import Optional, List
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field

from app.models.base import MongoModel, Money


class InvoiceStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class DocumentType(str, Enum):
    INVOICE = "INVOICE"
    PROFORMA = "PROFORMA"


class CancelDisposition(str, Enum):
    MOVE_TO_ACCOUNT = "MOVE_TO_ACCOUNT"
    KEEP_AS_HISTORY = "KEEP_AS_HISTORY"


# Embedded documents don't need MongoModel (no separate _id)
class LegacyPayment(BaseModel):
    """A payment embedded in an invoice before payments became records."""
    amount: Money
    date: Optional[datetime] = None
    method: Optional[str] = None
    note: Optional[str] = None
    timestamp: Optional[datetime] = None


class Invoice(MongoModel):
    client_id: Optional[str] = None
    document_number: str = ""
    document_type: DocumentType = DocumentType.INVOICE
    total: Money
    status: InvoiceStatus = InvoiceStatus.ACTIVE
    date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    deleted: bool = False

    # Legacy embedded payments and migration bookkeeping
    payments: List[LegacyPayment] = []
    migration_completed: bool = False
    migration_date: Optional[datetime] = None
    migrated_payment_count: int = 0
    rollback_date: Optional[datetime] = None
    # bumped by each rollback; migrated payment ids include it
    rollback_count: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == InvoiceStatus.ACTIVE and not self.deleted

    @property
    def label(self) -> str:
        """Human reference used in log lines and migration references."""
        return self.document_number or self.id
