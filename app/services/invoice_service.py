from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core.logging import get_logger
from app.models.invoice import Invoice, InvoiceStatus, CancelDisposition
from app.models.payment import AuditAction, Payment
from app.repositories.invoice_repo import InvoiceRepository
from app.repositories.payment_repo import PaymentRepository
from app.schemas.ledger import CancelInvoiceResponse
from app.services.locks import ClientLockRegistry, client_locks
from app.utils.money import money_sum
from app.utils.payment_validation import ValidationError, NotFoundError

logger = get_logger(__name__)


class InvoiceLedgerService:
    """Invoice status changes and what they do to allocated payments."""

    def __init__(
        self,
        payments: PaymentRepository,
        invoices: InvoiceRepository,
        locks: Optional[ClientLockRegistry] = None
    ):
        self.payments = payments
        self.invoices = invoices
        self.locks = locks or client_locks

    @classmethod
    def from_db(cls, db: AsyncIOMotorDatabase) -> "InvoiceLedgerService":
        return cls(PaymentRepository(db), InvoiceRepository(db))

    async def cancel_invoice(
        self,
        invoice_id: str,
        disposition: Optional[CancelDisposition] = None
    ) -> CancelInvoiceResponse:
        """
        Cancel an invoice.

        With allocated payments a disposition is required:
        - MOVE_TO_ACCOUNT: payments are unallocated back to the client account
        - KEEP_AS_HISTORY: payments stay linked to the cancelled invoice
        Without allocated payments the invoice is cancelled directly.
        """
        invoice = await self._get(invoice_id)

        async with self.locks.hold(invoice.client_id or invoice.id):
            allocated = await self.payments.list_by_invoice(invoice.id)
            if allocated and disposition is None:
                raise ValidationError(
                    f"Invoice '{invoice.label}' has {len(allocated)} allocated payment(s); "
                    f"choose {CancelDisposition.MOVE_TO_ACCOUNT.value} or "
                    f"{CancelDisposition.KEEP_AS_HISTORY.value}"
                )
            if not allocated:
                disposition = None

            await self.invoices.set_invoice_status(invoice.id, InvoiceStatus.CANCELLED)

            released: List[Payment] = []
            if disposition == CancelDisposition.MOVE_TO_ACCOUNT:
                for payment in allocated:
                    updated = await self.payments.update(payment.id, {
                        "document_id": None,
                        "invoice_number": "",
                        "settled_to_document": False,
                        "audit_trail": payment.with_audit(
                            AuditAction.RELEASED,
                            document_id=invoice.id,
                            amount=payment.amount,
                            detail="moved to client account due to invoice cancellation"
                        )
                    })
                    if updated is not None:
                        released.append(updated)

        released_amount = money_sum(p.amount for p in released)
        logger.info(
            "Cancelled invoice %s (%s); %d payment(s) totalling %s moved to client account",
            invoice.label, disposition.value if disposition else "no payments",
            len(released), released_amount
        )
        return CancelInvoiceResponse(
            invoice_id=invoice.id,
            status=InvoiceStatus.CANCELLED,
            disposition=disposition,
            released_payment_ids=[p.id for p in released],
            released_amount=released_amount
        )

    async def restore_invoice(self, invoice_id: str) -> Invoice:
        """Reactivate a cancelled invoice. Payments are not re-allocated."""
        invoice = await self._get(invoice_id)
        async with self.locks.hold(invoice.client_id or invoice.id):
            restored = await self.invoices.set_invoice_status(invoice.id, InvoiceStatus.ACTIVE)
        logger.info("Restored invoice %s", invoice.label)
        return restored or invoice

    async def _get(self, invoice_id: str) -> Invoice:
        invoice = await self.invoices.get_invoice(invoice_id)
        if invoice is None or invoice.deleted:
            raise NotFoundError("invoice", invoice_id)
        return invoice
