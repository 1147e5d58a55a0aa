from typing import List, Optional
from fastapi import APIRouter, HTTPException, Depends, Query

from app.api.deps import get_allocation_service, get_ledger_service, get_payment_repo
from app.models.payment import PaymentSource
from app.repositories.payment_repo import PaymentRepository
from app.schemas.payment import (
    AllocationRequest,
    AllocationResult,
    PaymentCreate,
    PaymentDetails,
    PaymentResponse,
    PaymentUpdate,
)
from app.services.allocation_service import AllocationService
from app.services.ledger_service import LedgerService

router = APIRouter()


def _details(payload: PaymentDetails) -> PaymentDetails:
    return PaymentDetails(**payload.model_dump(include=set(PaymentDetails.model_fields)))


@router.get("/", response_model=List[PaymentResponse])
async def list_payments(
    client_id: Optional[str] = None,
    search: Optional[str] = None,
    limit: Optional[int] = Query(default=None, ge=1),
    ledger: LedgerService = Depends(get_ledger_service)
):
    """List payments, newest first"""
    return await ledger.list_payments(client_id=client_id, search=search, limit=limit)


@router.post("/", response_model=AllocationResult, status_code=201)
async def create_payment(
    payment_in: PaymentCreate,
    service: AllocationService = Depends(get_allocation_service)
):
    """Record cash received; applied to document_id when given, else to the client account"""
    return await service.allocate(
        payment_in.client_id,
        payment_in.document_id,
        payment_in.amount,
        PaymentSource.NEW_PAYMENT,
        _details(payment_in)
    )


@router.post("/allocate", response_model=AllocationResult)
async def allocate_payment(
    request: AllocationRequest,
    service: AllocationService = Depends(get_allocation_service)
):
    """Allocate a new payment or the client's account balance"""
    return await service.allocate(
        request.client_id,
        request.document_id,
        request.amount,
        request.source,
        _details(request)
    )


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: str,
    repo: PaymentRepository = Depends(get_payment_repo)
):
    payment = await repo.get(payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    return PaymentResponse.model_validate(payment.model_dump())


@router.put("/{payment_id}", response_model=PaymentResponse)
async def update_payment(
    payment_id: str,
    payment_in: PaymentUpdate,
    service: AllocationService = Depends(get_allocation_service)
):
    """Update date, method, reference or notes of a payment"""
    payment = await service.update_payment(payment_id, payment_in)
    return PaymentResponse.model_validate(payment.model_dump())


@router.delete("/{payment_id}", status_code=204)
async def delete_payment(
    payment_id: str,
    service: AllocationService = Depends(get_allocation_service)
):
    await service.delete_payment(payment_id)
