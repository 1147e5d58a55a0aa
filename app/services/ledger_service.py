from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.repositories.client_repo import ClientRepository
from app.repositories.invoice_repo import InvoiceRepository
from app.repositories.payment_repo import PaymentRepository
from app.schemas.ledger import ClientBalanceResponse, InvoiceLedgerResponse
from app.schemas.payment import PaymentResponse
from app.services import balance
from app.utils.money import ZERO


class LedgerService:
    """Read-only balance queries. Loads a snapshot and runs the balance functions on it."""

    def __init__(
        self,
        payments: PaymentRepository,
        invoices: InvoiceRepository,
        clients: ClientRepository
    ):
        self.payments = payments
        self.invoices = invoices
        self.clients = clients

    @classmethod
    def from_db(cls, db: AsyncIOMotorDatabase) -> "LedgerService":
        return cls(PaymentRepository(db), InvoiceRepository(db), ClientRepository(db))

    async def unallocated_balance(self, client_id: str) -> Decimal:
        payments = await self.payments.list_by_client(client_id)
        return balance.unallocated_balance(payments, client_id)

    async def outstanding(self, invoice_id: str) -> Decimal:
        invoice = await self.invoices.get_invoice(invoice_id)
        if invoice is None:
            return ZERO
        payments = await self.payments.list_by_invoice(invoice_id)
        return balance.outstanding(invoice, payments)

    async def client_outstanding_total(self, client_id: str) -> Decimal:
        invoices = await self.invoices.list_by_client(client_id)
        payments = await self.payments.list_by_client(client_id)
        return balance.client_outstanding_total(invoices, payments, client_id)

    async def client_balance(self, client_id: str) -> ClientBalanceResponse:
        invoices = await self.invoices.list_by_client(client_id)
        payments = await self.payments.list_by_client(client_id)
        return ClientBalanceResponse(
            client_id=client_id,
            unallocated_balance=balance.unallocated_balance(payments, client_id),
            outstanding_total=balance.client_outstanding_total(invoices, payments, client_id)
        )

    async def invoice_summary(self, invoice_id: str, now: Optional[datetime] = None) -> Optional[InvoiceLedgerResponse]:
        invoice = await self.invoices.get_invoice(invoice_id)
        if invoice is None:
            return None
        payments = await self.payments.list_by_invoice(invoice_id)
        return InvoiceLedgerResponse(
            id=invoice.id,
            client_id=invoice.client_id,
            document_number=invoice.document_number,
            status=invoice.status,
            date=invoice.date,
            total=invoice.total,
            total_paid=balance.total_paid(payments, invoice.id),
            outstanding=balance.outstanding(invoice, payments),
            payment_status=balance.payment_status(invoice, payments, now)
        )

    async def client_invoices(self, client_id: str, now: Optional[datetime] = None) -> List[InvoiceLedgerResponse]:
        """A client's active invoices in display order (unpaid first, newest first)."""
        invoices = [inv for inv in await self.invoices.list_by_client(client_id) if inv.is_active]
        payments = await self.payments.list_by_client(client_id)
        ordered = balance.sort_invoices_for_display(invoices, payments, now)
        return [
            InvoiceLedgerResponse(
                id=inv.id,
                client_id=inv.client_id,
                document_number=inv.document_number,
                status=inv.status,
                date=inv.date,
                total=inv.total,
                total_paid=balance.total_paid(payments, inv.id),
                outstanding=balance.outstanding(inv, payments),
                payment_status=balance.payment_status(inv, payments, now)
            )
            for inv in ordered
        ]

    async def list_payments(
        self,
        client_id: Optional[str] = None,
        search: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[PaymentResponse]:
        """Payments newest first, each labelled with how its invoice stands."""
        payments = await self.payments.search(client_id=client_id, search=search, limit=limit)
        invoices_by_id = {}
        allocated_by_invoice = {}
        for document_id in {p.document_id for p in payments if p.document_id}:
            invoice = await self.invoices.get_invoice(document_id)
            if invoice is not None:
                invoices_by_id[invoice.id] = invoice
                allocated_by_invoice[invoice.id] = await self.payments.list_by_invoice(invoice.id)

        responses = []
        for payment in payments:
            related = allocated_by_invoice.get(payment.document_id, [])
            status = balance.payment_allocation_status(payment, invoices_by_id, related)
            response = PaymentResponse.model_validate(payment.model_dump())
            response.allocation_status = status.value
            responses.append(response)
        return responses
