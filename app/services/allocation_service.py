"""
AllocationService - applies cash to invoices or to a client's account.

Core algorithm (client account balance as the source):
1. Cap the request to the invoice's outstanding amount
2. Check the client's unallocated balance covers it (no writes otherwise)
3. Walk unallocated payments oldest first
4. Reallocate whole payments while they fit, split the last one
5. Stop once nothing remains to settle
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core.logging import get_logger
from app.models.base import as_utc
from app.models.invoice import Invoice, InvoiceStatus
from app.models.payment import Payment, PaymentSource, AuditAction
from app.repositories.client_repo import ClientRepository
from app.repositories.invoice_repo import InvoiceRepository
from app.repositories.payment_repo import PaymentRepository
from app.schemas.payment import PaymentDetails, PaymentUpdate, AllocationResult
from app.services import balance
from app.services.locks import ClientLockRegistry, client_locks
from app.utils.money import ZERO, split_amount, to_money
from app.utils.payment_validation import (
    ValidationError,
    NotFoundError,
    InsufficientBalance,
    validate_amount,
    validate_identifier,
)

logger = get_logger(__name__)


@dataclass
class FundingStep:
    """One unallocated payment used to fund an allocation."""
    payment: Payment
    applied: Decimal
    leftover: Decimal

    @property
    def is_split(self) -> bool:
        return self.leftover > 0


def fifo_key(payment: Payment):
    return (as_utc(payment.payment_date), as_utc(payment.created_at), payment.id)


def plan_fifo_allocation(unallocated: List[Payment], need: Decimal) -> List[FundingStep]:
    """
    Decide which unallocated payments fund `need`, oldest first.

    Pure: nothing is written. The caller checks the balance beforehand, so
    the plan covers `need` exactly whenever enough funds exist.
    """
    steps: List[FundingStep] = []
    remaining = to_money(need)

    for payment in sorted(unallocated, key=fifo_key):
        if remaining <= 0:
            break
        if payment.amount <= 0:
            continue
        if payment.amount <= remaining:
            steps.append(FundingStep(payment=payment, applied=payment.amount, leftover=ZERO))
            remaining -= payment.amount
        else:
            applied, leftover = split_amount(payment.amount, remaining)
            steps.append(FundingStep(payment=payment, applied=applied, leftover=leftover))
            remaining = ZERO

    return steps


def split_payment_id(original: Payment) -> str:
    """Deterministic id for the leftover of the next split of `original`."""
    splits = sum(1 for e in original.audit_trail if e.action == AuditAction.PARTIALLY_ALLOCATED)
    return f"{original.id}.s{splits + 1}"


class AllocationService:
    def __init__(
        self,
        payments: PaymentRepository,
        invoices: InvoiceRepository,
        clients: ClientRepository,
        locks: Optional[ClientLockRegistry] = None
    ):
        self.payments = payments
        self.invoices = invoices
        self.clients = clients
        self.locks = locks or client_locks

    @classmethod
    def from_db(cls, db: AsyncIOMotorDatabase) -> "AllocationService":
        return cls(PaymentRepository(db), InvoiceRepository(db), ClientRepository(db))

    async def allocate(
        self,
        client_id: str,
        target_invoice_id: Optional[str],
        amount,
        source: PaymentSource = PaymentSource.NEW_PAYMENT,
        details: Optional[PaymentDetails] = None
    ) -> AllocationResult:
        """
        Apply `amount` for `client_id` to an invoice, or to the client's
        account when `target_invoice_id` is None.

        Raises ValidationError for bad input and InsufficientBalance when an
        account-funded allocation exceeds the unallocated balance. Neither
        performs any write.
        """
        amount = validate_amount(amount)
        client_id = validate_identifier(client_id, "client")
        try:
            source = PaymentSource(source)
        except ValueError:
            raise ValidationError(f"Unknown payment source: {source!r}")
        details = details or PaymentDetails()
        if target_invoice_id is None and source == PaymentSource.CLIENT_ACCOUNT:
            raise ValidationError("Account balance can only be allocated to an invoice")

        if await self.clients.get_client(client_id) is None:
            raise NotFoundError("client", client_id)

        async with self.locks.hold(client_id):
            if target_invoice_id is None:
                deposit = await self._deposit(client_id, amount, details)
                return AllocationResult(
                    client_id=client_id,
                    source=source,
                    requested=amount,
                    applied=ZERO,
                    excess=ZERO,
                    unapplied=ZERO,
                    created_payments=AllocationResult.response_payments([deposit])
                )

            invoice = await self._load_target(client_id, target_invoice_id)
            invoice_payments = await self.payments.list_by_invoice(invoice.id)
            owed = balance.outstanding(invoice, invoice_payments)
            to_apply = min(amount, owed)
            remainder = amount - to_apply

            if source == PaymentSource.NEW_PAYMENT:
                return await self._apply_new_payment(client_id, invoice, amount, to_apply, remainder, details)
            return await self._apply_from_account(client_id, invoice, amount, to_apply, remainder)

    async def update_payment(self, payment_id: str, changes: PaymentUpdate) -> Payment:
        """Edit the descriptive fields of a payment. Amount and allocation are untouched."""
        payment = await self._get_payment(payment_id)
        updates = changes.model_dump(exclude_none=True)
        if not updates:
            return payment
        async with self.locks.hold(payment.client_id or payment.id):
            updated = await self.payments.update(payment.id, updates)
        if updated is None:
            raise NotFoundError("payment", payment_id)
        return updated

    async def delete_payment(self, payment_id: str) -> None:
        payment = await self._get_payment(payment_id)
        async with self.locks.hold(payment.client_id or payment.id):
            deleted = await self.payments.delete(payment.id)
        if not deleted:
            raise NotFoundError("payment", payment_id)
        logger.info(
            "Deleted payment %s (%s, client %s, document %s)",
            payment.id, payment.amount, payment.client_id, payment.document_id
        )

    # ===== PRIVATE HELPERS =====

    async def _get_payment(self, payment_id: str) -> Payment:
        payment = await self.payments.get(payment_id)
        if payment is None:
            raise NotFoundError("payment", payment_id)
        return payment

    async def _load_target(self, client_id: str, invoice_id: str) -> Invoice:
        invoice = await self.invoices.get_invoice(invoice_id)
        if invoice is None or invoice.deleted:
            raise NotFoundError("invoice", invoice_id)
        if invoice.client_id != client_id:
            raise ValidationError(f"Invoice '{invoice_id}' does not belong to client '{client_id}'")
        if invoice.status == InvoiceStatus.CANCELLED:
            raise ValidationError(f"Invoice '{invoice.label}' is cancelled")
        return invoice

    async def _deposit(self, client_id: str, amount: Decimal, details: PaymentDetails) -> Payment:
        payment = Payment(
            client_id=client_id,
            amount=amount,
            **details.model_dump()
        )
        payment.audit_trail = payment.with_audit(AuditAction.DEPOSITED, amount=amount)
        await self.payments.create(payment)
        logger.info("Deposited %s to account of client %s (payment %s)", amount, client_id, payment.id)
        return payment

    async def _apply_new_payment(
        self,
        client_id: str,
        invoice: Invoice,
        requested: Decimal,
        to_apply: Decimal,
        remainder: Decimal,
        details: PaymentDetails
    ) -> AllocationResult:
        allocated: List[Payment] = []
        created: List[Payment] = []

        if to_apply > 0:
            payment = Payment(
                client_id=client_id,
                document_id=invoice.id,
                invoice_number=invoice.document_number,
                amount=to_apply,
                settled_to_document=True,
                **details.model_dump()
            )
            payment.audit_trail = payment.with_audit(
                AuditAction.ALLOCATED, document_id=invoice.id, amount=to_apply
            )
            await self.payments.create(payment)
            allocated.append(payment)
            created.append(payment)

        if remainder > 0:
            excess = Payment(
                client_id=client_id,
                amount=remainder,
                excess_from_document_id=invoice.id,
                **details.model_dump()
            )
            excess.audit_trail = excess.with_audit(
                AuditAction.EXCESS_TO_ACCOUNT,
                document_id=invoice.id,
                amount=remainder,
                detail="invoice fully paid"
            )
            await self.payments.create(excess)
            created.append(excess)

        logger.info(
            "Paid %s to invoice %s for client %s, %s added to client account",
            to_apply, invoice.label, client_id, remainder
        )
        return AllocationResult(
            client_id=client_id,
            document_id=invoice.id,
            source=PaymentSource.NEW_PAYMENT,
            requested=requested,
            applied=to_apply,
            excess=remainder,
            unapplied=ZERO,
            allocated_payments=AllocationResult.response_payments(allocated),
            created_payments=AllocationResult.response_payments(created)
        )

    async def _apply_from_account(
        self,
        client_id: str,
        invoice: Invoice,
        requested: Decimal,
        to_apply: Decimal,
        remainder: Decimal
    ) -> AllocationResult:
        client_payments = await self.payments.list_by_client(client_id)
        available = balance.unallocated_balance(client_payments, client_id)
        if available < to_apply:
            raise InsufficientBalance(client_id, available, to_apply)

        unallocated = [p for p in client_payments if p.document_id is None]
        steps = plan_fifo_allocation(unallocated, to_apply)

        allocated: List[Payment] = []
        created: List[Payment] = []
        for step in steps:
            if step.is_split:
                leftover = await self._split_leftover(step)
                created.append(leftover)
            updated = await self._allocate_existing(step, invoice)
            allocated.append(updated)

        logger.info(
            "Settled %s of invoice %s from account of client %s using %d payment(s)",
            to_apply, invoice.label, client_id, len(steps)
        )
        return AllocationResult(
            client_id=client_id,
            document_id=invoice.id,
            source=PaymentSource.CLIENT_ACCOUNT,
            requested=requested,
            applied=to_apply,
            excess=ZERO,
            unapplied=remainder,
            allocated_payments=AllocationResult.response_payments(allocated),
            created_payments=AllocationResult.response_payments(created)
        )

    async def _split_leftover(self, step: FundingStep) -> Payment:
        """
        Write the unallocated remainder of a split before the original is
        reduced, under an id derived from the original so a retry rewrites
        the same record instead of adding another.
        """
        original = step.payment
        leftover = Payment(
            id=split_payment_id(original),
            client_id=original.client_id,
            amount=step.leftover,
            payment_date=original.payment_date,
            payment_method=original.payment_method,
            reference=original.reference,
            notes=original.notes,
            split_from_payment_id=original.id
        )
        leftover.audit_trail = leftover.with_audit(
            AuditAction.SPLIT, amount=step.leftover, detail=f"split from payment {original.id}"
        )
        await self.payments.upsert(leftover)
        return leftover

    async def _allocate_existing(self, step: FundingStep, invoice: Invoice) -> Payment:
        original = step.payment
        action = AuditAction.PARTIALLY_ALLOCATED if step.is_split else AuditAction.ALLOCATED
        changes = {
            "document_id": invoice.id,
            "invoice_number": invoice.document_number,
            "settled_to_document": True,
            "audit_trail": original.with_audit(action, document_id=invoice.id, amount=step.applied),
        }
        if step.is_split:
            changes["amount"] = step.applied

        updated = await self.payments.update(original.id, changes)
        if updated is None:
            raise ValidationError(f"Payment '{original.id}' disappeared during allocation")
        return updated
