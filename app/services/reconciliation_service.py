"""
ReconciliationService - integrity sweeps and one-time data migrations.

Sweeps run over the whole payment store, across clients. They never delete
payments and never guess an owner: anything that cannot be resolved from an
existing invoice is reported as an IntegrityViolation and left untouched.
A failing record is reported and the sweep moves on.

Legacy migration is write, verify, then clear. Migrated payments get ids
derived from (invoice id, position in the embedded list), so re-running a
migration rewrites the same records instead of duplicating them. Each
rollback starts a new generation of ids.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core.logging import get_logger
from app.models.invoice import Invoice, DocumentType, InvoiceStatus, LegacyPayment
from app.models.payment import Payment, AuditAction
from app.repositories.client_repo import ClientRepository
from app.repositories.invoice_repo import InvoiceRepository
from app.repositories.payment_repo import PaymentRepository
from app.schemas.reconciliation import (
    IntegrityViolation,
    ViolationKind,
    UnownedPaymentsReport,
    SettlementFlagReport,
    MigrationResult,
    MigrationSweepReport,
    RollbackResult,
    DiagnosticReport,
)
from app.services.locks import ClientLockRegistry, client_locks
from app.utils.money import money_sum
from app.utils.payment_validation import LedgerError, NotFoundError, PersistenceError

logger = get_logger(__name__)


def migrated_payment_id(invoice_id: str, index: int, generation: int = 0) -> str:
    if generation:
        return f"{invoice_id}.r{generation}.m{index}"
    return f"{invoice_id}.m{index}"


def _orphan(payment: Payment) -> IntegrityViolation:
    return IntegrityViolation(
        kind=ViolationKind.ORPHANED_REFERENCE,
        payment_id=payment.id,
        document_id=payment.document_id,
        client_id=payment.client_id,
        amount=payment.amount,
        detail="payment references an invoice that does not exist"
    )


def _store_failure(payment: Payment, exc: PersistenceError) -> IntegrityViolation:
    return IntegrityViolation(
        kind=ViolationKind.STORE_FAILURE,
        payment_id=payment.id,
        document_id=payment.document_id,
        client_id=payment.client_id,
        amount=payment.amount,
        detail=str(exc)
    )


class ReconciliationService:
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
    def from_db(cls, db: AsyncIOMotorDatabase) -> "ReconciliationService":
        return cls(PaymentRepository(db), InvoiceRepository(db), ClientRepository(db))

    async def find_orphaned_payments(self) -> List[IntegrityViolation]:
        """Payments whose document_id does not resolve to an invoice. Reported only."""
        invoice_ids = await self._invoice_ids()
        orphans = [
            _orphan(p) for p in await self.payments.list_all()
            if p.document_id is not None and p.document_id not in invoice_ids
        ]
        for violation in orphans:
            logger.warning(
                "Orphaned payment %s: amount %s, missing document %s",
                violation.payment_id, violation.amount, violation.document_id
            )
        return orphans

    async def find_unowned_payments(self, repair: bool = True) -> UnownedPaymentsReport:
        """
        Payments without an owning client.

        A payment is given the client of the invoice it references, provided
        that invoice exists and its client is known. Everything else is
        reported and left as is.
        """
        unowned = await self.payments.list_unowned()
        known_clients = {c.id for c in await self.clients.list_clients()}
        report = UnownedPaymentsReport(scanned=len(unowned), dry_run=not repair)

        for payment in unowned:
            invoice = None
            if payment.document_id:
                invoice = await self.invoices.get_invoice(payment.document_id)

            if invoice is None or invoice.client_id not in known_clients:
                reason = (
                    "no document reference" if not payment.document_id
                    else "document does not exist" if invoice is None
                    else "document owner is not a known client"
                )
                report.violations.append(IntegrityViolation(
                    kind=ViolationKind.UNRESOLVABLE_OWNER,
                    payment_id=payment.id,
                    document_id=payment.document_id,
                    amount=payment.amount,
                    detail=reason
                ))
                logger.warning("Cannot resolve owner of payment %s: %s", payment.id, reason)
                continue

            if repair:
                try:
                    async with self.locks.hold(invoice.client_id):
                        await self.payments.update(payment.id, {
                            "client_id": invoice.client_id,
                            "repaired": True,
                            "repaired_at": datetime.now(timezone.utc),
                            "repaired_by": "find_unowned_payments",
                            "audit_trail": payment.with_audit(
                                AuditAction.REPAIRED,
                                document_id=invoice.id,
                                detail=f"owner set to client {invoice.client_id}"
                            )
                        })
                except PersistenceError as exc:
                    report.violations.append(_store_failure(payment, exc))
                    continue
                logger.info("Repaired payment %s: owner set to client %s", payment.id, invoice.client_id)
            report.repaired_payment_ids.append(payment.id)

        return report

    async def reconcile_settlement_flags(self) -> SettlementFlagReport:
        """
        Make settled_to_document agree with document_id.

        Payments pointing at a missing invoice stay settled (the cash was
        applied at the time) and are reported as orphans.
        """
        payments = await self.payments.list_all()
        invoice_ids = await self._invoice_ids()
        report = SettlementFlagReport(scanned=len(payments))

        for payment in payments:
            expected = payment.document_id is not None
            if payment.document_id is not None and payment.document_id not in invoice_ids:
                report.violations.append(_orphan(payment))

            if payment.settled_to_document == expected:
                continue
            try:
                async with self.locks.hold(payment.client_id or payment.id):
                    await self.payments.update(payment.id, {
                        "settled_to_document": expected,
                        "audit_trail": payment.with_audit(
                            AuditAction.SETTLEMENT_CORRECTED,
                            document_id=payment.document_id,
                            detail=f"settled_to_document set to {expected}"
                        )
                    })
            except PersistenceError as exc:
                report.violations.append(_store_failure(payment, exc))
                continue
            report.corrected_payment_ids.append(payment.id)

        logger.info(
            "Settlement flags reconciled: %d scanned, %d corrected, %d orphaned",
            report.scanned, len(report.corrected_payment_ids), len(report.violations)
        )
        return report

    async def migrate_legacy_embedded_payments(self, invoice_id: str) -> MigrationResult:
        """
        Turn an invoice's embedded payments into payment records.

        1. Write one settled payment per embedded entry (skipping ones already written)
        2. Verify the records add up to the embedded list
        3. Only then clear the embedded list on the invoice
        On a failed verification the invoice keeps its list; the records
        already written stay and are reused by the next attempt.
        """
        invoice = await self.invoices.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError("invoice", invoice_id)

        if invoice.document_type == DocumentType.PROFORMA:
            logger.info("Skipping proforma %s - proformas do not carry payments", invoice.label)
            return MigrationResult(invoice_id=invoice.id, success=False, skipped=True,
                                   error="proformas do not carry payments")
        if not invoice.payments:
            return MigrationResult(invoice_id=invoice.id, success=True)
        if not invoice.client_id or invoice.client_id == "unknown":
            logger.warning("Skipping document %s - no valid client id", invoice.label)
            return MigrationResult(invoice_id=invoice.id, success=False,
                                   error="document has no valid client id")

        embedded_total = money_sum(entry.amount for entry in invoice.payments)

        async with self.locks.hold(invoice.client_id):
            written = await self.payments.list_migrated_for_document(invoice.id)
            existing = {p.migration_index for p in written if p.document_id == invoice.id}
            # a record moved to another invoice or the account is never overwritten
            moved = {p.migration_index for p in written if p.document_id != invoice.id}
            created = 0
            for index, entry in enumerate(invoice.payments):
                if index in existing or index in moved:
                    continue
                await self.payments.upsert(self._migrated_payment(invoice, index, entry))
                created += 1

            records = [
                p for p in await self.payments.list_migrated_for_document(invoice.id)
                if p.document_id == invoice.id
                and p.migration_index is not None and p.migration_index < len(invoice.payments)
            ]
            migrated_total = money_sum(p.amount for p in records)

            if len(records) != len(invoice.payments) or migrated_total != embedded_total:
                logger.error(
                    "Migration verification failed for %s: %d/%d records, %s vs %s",
                    invoice.label, len(records), len(invoice.payments), migrated_total, embedded_total
                )
                return MigrationResult(
                    invoice_id=invoice.id,
                    success=False,
                    created_count=created,
                    migrated_count=len(records),
                    embedded_total=embedded_total,
                    migrated_total=migrated_total,
                    error="migrated payments do not match the embedded payments"
                )

            await self.invoices.clear_legacy_payments(invoice.id, len(records))

        logger.info("Migrated %d payment(s) totalling %s from %s", len(records), migrated_total, invoice.label)
        return MigrationResult(
            invoice_id=invoice.id,
            success=True,
            created_count=created,
            migrated_count=len(records),
            embedded_total=embedded_total,
            migrated_total=migrated_total
        )

    async def migrate_all_legacy_payments(self) -> MigrationSweepReport:
        """Migrate every invoice that still has an embedded payments list."""
        report = MigrationSweepReport()
        for invoice in await self.invoices.list_with_legacy_payments():
            try:
                result = await self.migrate_legacy_embedded_payments(invoice.id)
            except LedgerError as exc:
                logger.error("Migration of %s failed: %s", invoice.label, exc)
                result = MigrationResult(invoice_id=invoice.id, success=False, error=str(exc))

            report.results.append(result)
            if result.skipped:
                report.skipped_proformas += 1
                continue
            if result.success:
                report.documents_processed += 1
                report.migrated_count += result.migrated_count
            else:
                report.success = False

        logger.info(
            "Legacy migration finished: %d payment(s) from %d document(s), %d proforma(s) skipped",
            report.migrated_count, report.documents_processed, report.skipped_proformas
        )
        return report

    async def rollback_legacy_migration(self, invoice_id: str) -> RollbackResult:
        """
        Put migrated payments back into the invoice's embedded list.

        The list is restored first and the records are deleted afterwards.
        Migrated payments that were since moved off this invoice stay where
        they are, are detached from the migration and reported. A later
        migration writes its records under fresh ids.
        """
        invoice = await self.invoices.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError("invoice", invoice_id)

        async with self.locks.hold(invoice.client_id or invoice.id):
            records = await self.payments.list_migrated_for_document(invoice.id)
            still_applied = [p for p in records if p.document_id == invoice.id]
            moved = [p for p in records if p.document_id != invoice.id]
            if not still_applied:
                return RollbackResult(invoice_id=invoice.id, success=True,
                                      skipped_payment_ids=[p.id for p in moved])

            for payment in moved:
                await self.payments.update(payment.id, {
                    "migrated_from_document_id": None,
                    "migration_index": None,
                    "audit_trail": payment.with_audit(
                        AuditAction.MIGRATED,
                        document_id=invoice.id,
                        amount=payment.amount,
                        detail="detached from rolled back migration"
                    )
                })

            legacy = [self._legacy_entry(p) for p in still_applied]
            await self.invoices.restore_legacy_payments(invoice.id, legacy, invoice.rollback_count + 1)

            deleted = 0
            for payment in still_applied:
                if await self.payments.delete(payment.id):
                    deleted += 1

        logger.info("Rolled back %d migrated payment(s) into %s", len(legacy), invoice.label)
        return RollbackResult(
            invoice_id=invoice.id,
            success=True,
            restored_count=len(legacy),
            deleted_count=deleted,
            skipped_payment_ids=[p.id for p in moved]
        )

    async def diagnostic_check(self, client_id: Optional[str] = None) -> DiagnosticReport:
        """Counts and integrity issues for one client, or for the whole store."""
        all_invoices = await self.invoices.list_all()
        invoices_by_id: Dict[str, Invoice] = {inv.id: inv for inv in all_invoices}
        clients = await self.clients.list_clients()

        if client_id:
            invoices = [inv for inv in all_invoices if inv.client_id == client_id]
            payments = await self.payments.list_by_client(client_id)
        else:
            invoices = all_invoices
            payments = await self.payments.list_all()

        report = DiagnosticReport(client_id=client_id)
        report.invoices_total = len(invoices)
        report.invoices = sum(1 for inv in invoices if inv.document_type == DocumentType.INVOICE)
        report.proformas = sum(1 for inv in invoices if inv.document_type == DocumentType.PROFORMA)
        report.cancelled_invoices = sum(1 for inv in invoices if inv.status == InvoiceStatus.CANCELLED)
        report.deleted_documents = sum(1 for inv in invoices if inv.deleted)
        report.documents_with_legacy_payments = sum(1 for inv in invoices if inv.payments)

        report.payments_total = len(payments)
        report.payments_allocated = sum(1 for p in payments if p.document_id is not None)
        report.payments_unallocated = report.payments_total - report.payments_allocated
        report.payments_settled = sum(1 for p in payments if p.settled_to_document)
        report.payments_unsettled = report.payments_total - report.payments_settled
        report.payments_migrated = sum(1 for p in payments if p.migrated)
        report.payments_repaired = sum(1 for p in payments if p.repaired)
        report.payments_amount = money_sum(p.amount for p in payments)
        report.clients_total = 1 if client_id else len(clients)

        for payment in payments:
            if payment.document_id is None:
                continue
            invoice = invoices_by_id.get(payment.document_id)
            if invoice is None:
                report.violations.append(_orphan(payment))
            elif payment.client_id and invoice.client_id and payment.client_id != invoice.client_id:
                report.violations.append(IntegrityViolation(
                    kind=ViolationKind.MISATTRIBUTED_CLIENT,
                    payment_id=payment.id,
                    document_id=invoice.id,
                    client_id=payment.client_id,
                    amount=payment.amount,
                    detail=f"invoice belongs to client {invoice.client_id}"
                ))

        if not client_id:
            unowned = await self.payments.list_unowned()
            if unowned:
                report.issues.append(f"WARNING: {len(unowned)} payments have no owning client")
        if not invoices:
            report.issues.append("WARNING: No documents found")
        if not payments:
            report.issues.append("WARNING: No payments found")
        if not client_id and not clients:
            report.issues.append("WARNING: No clients found")
        if report.documents_with_legacy_payments:
            report.issues.append(
                f"INFO: {report.documents_with_legacy_payments} documents still carry embedded payments"
            )
        flag_mismatches = sum(
            1 for p in payments if p.settled_to_document != (p.document_id is not None)
        )
        if flag_mismatches:
            report.issues.append(f"WARNING: {flag_mismatches} payments have a stale settlement flag")

        orphans = [v for v in report.violations if v.kind == ViolationKind.ORPHANED_REFERENCE]
        if orphans:
            report.issues.append(f"WARNING: {len(orphans)} payments reference non-existent documents")
        misattributed = len(report.violations) - len(orphans)
        if misattributed:
            report.issues.append(f"CRITICAL: {misattributed} payments are owned by a different client than their invoice")

        logger.info("Diagnostic check finished with %d issue(s)", len(report.issues))
        return report

    # ===== PRIVATE HELPERS =====

    async def _invoice_ids(self) -> Set[str]:
        return {inv.id for inv in await self.invoices.list_all()}

    @staticmethod
    def _legacy_entry(payment: Payment) -> LegacyPayment:
        """The embedded entry a migrated payment came from, at its current amount."""
        if payment.legacy_entry is not None:
            return payment.legacy_entry.model_copy(update={"amount": payment.amount})
        return LegacyPayment(
            amount=payment.amount,
            date=payment.payment_date,
            method=payment.payment_method,
            note=payment.notes,
            timestamp=payment.created_at
        )

    def _migrated_payment(self, invoice: Invoice, index: int, entry: LegacyPayment) -> Payment:
        now = datetime.now(timezone.utc)
        payment = Payment(
            id=migrated_payment_id(invoice.id, index, invoice.rollback_count),
            client_id=invoice.client_id,
            document_id=invoice.id,
            invoice_number=invoice.document_number,
            amount=entry.amount,
            payment_date=entry.date or entry.timestamp or now,
            payment_method=entry.method or "migrated",
            reference=f"Migrated from invoice #{invoice.document_number or 'N/A'}",
            notes=entry.note or "Migrated payment - already applied to this invoice",
            created_at=entry.timestamp or now,
            settled_to_document=True,
            migrated=True,
            migrated_from_document_id=invoice.id,
            migration_index=index,
            legacy_entry=entry
        )
        payment.audit_trail = payment.with_audit(
            AuditAction.MIGRATED, document_id=invoice.id, amount=entry.amount
        )
        return payment
