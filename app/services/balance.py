"""
Balance calculations over an explicit snapshot of invoices and payments.

Everything here is a pure function: no database access, no mutation.
Unknown ids produce zero results rather than errors; callers validate
existence through the directories first.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional

from app.core.config import settings
from app.models.base import as_utc
from app.models.invoice import Invoice, DocumentType
from app.models.payment import Payment
from app.utils.money import ZERO, money_sum


class InvoicePaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


class PaymentAllocationStatus(str, Enum):
    UNALLOCATED = "unallocated"
    PAID = "paid"
    PARTIAL = "partial"
    UNPAID = "unpaid"
    UNKNOWN = "unknown"


# Display priority: unpaid/overdue first, then partial, then paid
_STATUS_PRIORITY = {
    InvoicePaymentStatus.UNPAID: 0,
    InvoicePaymentStatus.OVERDUE: 0,
    InvoicePaymentStatus.PARTIAL: 1,
    InvoicePaymentStatus.PAID: 2,
}


def unallocated_balance(payments: Iterable[Payment], client_id: str) -> Decimal:
    """Sum of the client's payments that are not allocated to any invoice."""
    return money_sum(
        p.amount for p in payments
        if p.client_id == client_id and p.document_id is None
    )


def total_paid(payments: Iterable[Payment], invoice_id: str) -> Decimal:
    return money_sum(p.amount for p in payments if p.document_id == invoice_id)


def outstanding(invoice: Optional[Invoice], payments: Iterable[Payment]) -> Decimal:
    """max(0, total - allocated payments). A missing invoice owes nothing."""
    if invoice is None:
        return ZERO
    remaining = invoice.total - total_paid(payments, invoice.id)
    return max(ZERO, remaining)


def payment_status(
    invoice: Invoice,
    payments: Iterable[Payment],
    now: Optional[datetime] = None
) -> InvoicePaymentStatus:
    paid = total_paid(payments, invoice.id)
    if paid >= invoice.total:
        return InvoicePaymentStatus.PAID
    if paid > 0:
        return InvoicePaymentStatus.PARTIAL

    now = as_utc(now) if now else datetime.now(timezone.utc)
    days_since_issued = (now - as_utc(invoice.date)).days
    if days_since_issued > settings.OVERDUE_AFTER_DAYS:
        return InvoicePaymentStatus.OVERDUE
    return InvoicePaymentStatus.UNPAID


def sort_invoices_for_display(
    invoices: Iterable[Invoice],
    payments: Iterable[Payment],
    now: Optional[datetime] = None
) -> List[Invoice]:
    """Unpaid/overdue first, then partial, then paid; newest first within a group."""
    payments = list(payments)

    def sort_key(invoice: Invoice):
        status = payment_status(invoice, payments, now)
        return (_STATUS_PRIORITY[status], -as_utc(invoice.date).timestamp())

    return sorted(invoices, key=sort_key)


def client_outstanding_total(
    invoices: Iterable[Invoice],
    payments: Iterable[Payment],
    client_id: str
) -> Decimal:
    """
    What the client still owes across its active invoices.

    Cancelled and deleted invoices are left out of the invoiced total, while
    every payment the client made (allocated or not) counts against it.
    """
    invoiced = money_sum(
        inv.total for inv in invoices
        if inv.client_id == client_id
        and inv.is_active
        and inv.document_type == DocumentType.INVOICE
    )
    paid = money_sum(p.amount for p in payments if p.client_id == client_id)
    return max(ZERO, invoiced - paid)


def payment_allocation_status(
    payment: Payment,
    invoices_by_id: Dict[str, Invoice],
    payments: Iterable[Payment]
) -> PaymentAllocationStatus:
    """How the invoice a payment belongs to stands, as shown in a payments list."""
    if payment.document_id is None:
        return PaymentAllocationStatus.UNALLOCATED

    invoice = invoices_by_id.get(payment.document_id)
    if invoice is None:
        return PaymentAllocationStatus.UNKNOWN

    paid = total_paid(payments, invoice.id)
    if paid >= invoice.total:
        return PaymentAllocationStatus.PAID
    if paid > 0:
        return PaymentAllocationStatus.PARTIAL
    return PaymentAllocationStatus.UNPAID
