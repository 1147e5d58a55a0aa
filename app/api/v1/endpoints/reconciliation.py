from typing import List, Optional
from fastapi import APIRouter, Depends

from app.api.deps import get_reconciliation_service
from app.schemas.reconciliation import (
    DiagnosticReport,
    IntegrityViolation,
    MigrationSweepReport,
    SettlementFlagReport,
    UnownedPaymentsReport,
)
from app.services.reconciliation_service import ReconciliationService

router = APIRouter()


@router.get("/orphans", response_model=List[IntegrityViolation])
async def find_orphaned_payments(
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Payments pointing at invoices that no longer exist"""
    return await service.find_orphaned_payments()


@router.post("/unowned", response_model=UnownedPaymentsReport)
async def find_unowned_payments(
    repair: bool = True,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Assign missing clients from the referenced invoice; repair=false only reports"""
    return await service.find_unowned_payments(repair=repair)


@router.post("/settlement-flags", response_model=SettlementFlagReport)
async def reconcile_settlement_flags(
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    return await service.reconcile_settlement_flags()


@router.post("/migrate", response_model=MigrationSweepReport)
async def migrate_all_legacy_payments(
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Migrate embedded payments of every invoice that still has them"""
    return await service.migrate_all_legacy_payments()


@router.get("/diagnostics", response_model=DiagnosticReport)
async def diagnostic_check(
    client_id: Optional[str] = None,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    return await service.diagnostic_check(client_id)
