from typing import List
from fastapi import APIRouter, Depends

from app.api.deps import get_ledger_service
from app.schemas.ledger import ClientBalanceResponse, InvoiceLedgerResponse
from app.services.ledger_service import LedgerService

router = APIRouter()


@router.get("/{client_id}/balance", response_model=ClientBalanceResponse)
async def get_client_balance(
    client_id: str,
    ledger: LedgerService = Depends(get_ledger_service)
):
    """Unallocated account balance and total still owed on invoices"""
    return await ledger.client_balance(client_id)


@router.get("/{client_id}/invoices", response_model=List[InvoiceLedgerResponse])
async def get_client_invoices(
    client_id: str,
    ledger: LedgerService = Depends(get_ledger_service)
):
    return await ledger.client_invoices(client_id)
