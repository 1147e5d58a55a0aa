from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel

from app.models.base import Money
from app.models.invoice import CancelDisposition, InvoiceStatus
from app.services.balance import InvoicePaymentStatus


class ClientBalanceResponse(BaseModel):
    """Client account position."""
    client_id: str
    unallocated_balance: Money
    outstanding_total: Money


class InvoiceLedgerResponse(BaseModel):
    """Invoice as seen by the ledger: derived paid/outstanding figures."""
    id: str
    client_id: Optional[str] = None
    document_number: str
    status: InvoiceStatus
    date: datetime
    total: Money
    total_paid: Money
    outstanding: Money
    payment_status: InvoicePaymentStatus


class CancelInvoiceRequest(BaseModel):
    disposition: Optional[CancelDisposition] = None


class CancelInvoiceResponse(BaseModel):
    invoice_id: str
    status: InvoiceStatus
    disposition: Optional[CancelDisposition] = None
    released_payment_ids: List[str] = []
    released_amount: Money
