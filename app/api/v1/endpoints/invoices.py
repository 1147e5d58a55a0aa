from fastapi import APIRouter, HTTPException, Depends

from app.api.deps import get_invoice_service, get_ledger_service, get_reconciliation_service
from app.models.invoice import Invoice
from app.schemas.ledger import CancelInvoiceRequest, CancelInvoiceResponse, InvoiceLedgerResponse
from app.schemas.reconciliation import MigrationResult, RollbackResult
from app.services.invoice_service import InvoiceLedgerService
from app.services.ledger_service import LedgerService
from app.services.reconciliation_service import ReconciliationService

router = APIRouter()


@router.get("/{invoice_id}/outstanding", response_model=InvoiceLedgerResponse)
async def get_invoice_outstanding(
    invoice_id: str,
    ledger: LedgerService = Depends(get_ledger_service)
):
    """Total, paid and outstanding amounts of an invoice"""
    summary = await ledger.invoice_summary(invoice_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return summary


@router.post("/{invoice_id}/cancel", response_model=CancelInvoiceResponse)
async def cancel_invoice(
    invoice_id: str,
    request: CancelInvoiceRequest,
    service: InvoiceLedgerService = Depends(get_invoice_service)
):
    return await service.cancel_invoice(invoice_id, request.disposition)


@router.post("/{invoice_id}/restore", response_model=Invoice)
async def restore_invoice(
    invoice_id: str,
    service: InvoiceLedgerService = Depends(get_invoice_service)
):
    return await service.restore_invoice(invoice_id)


@router.post("/{invoice_id}/migrate-payments", response_model=MigrationResult)
async def migrate_invoice_payments(
    invoice_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Convert the invoice's embedded payments into payment records"""
    return await service.migrate_legacy_embedded_payments(invoice_id)


@router.post("/{invoice_id}/rollback-migration", response_model=RollbackResult)
async def rollback_invoice_migration(
    invoice_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    return await service.rollback_legacy_migration(invoice_id)
