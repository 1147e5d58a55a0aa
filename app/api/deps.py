from fastapi import Depends
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.db.mongo import get_db
from app.repositories.payment_repo import PaymentRepository
from app.services.allocation_service import AllocationService
from app.services.invoice_service import InvoiceLedgerService
from app.services.ledger_service import LedgerService
from app.services.reconciliation_service import ReconciliationService


def get_payment_repo(db: AsyncIOMotorDatabase = Depends(get_db)) -> PaymentRepository:
    return PaymentRepository(db)


def get_allocation_service(db: AsyncIOMotorDatabase = Depends(get_db)) -> AllocationService:
    return AllocationService.from_db(db)


def get_ledger_service(db: AsyncIOMotorDatabase = Depends(get_db)) -> LedgerService:
    return LedgerService.from_db(db)


def get_invoice_service(db: AsyncIOMotorDatabase = Depends(get_db)) -> InvoiceLedgerService:
    return InvoiceLedgerService.from_db(db)


def get_reconciliation_service(db: AsyncIOMotorDatabase = Depends(get_db)) -> ReconciliationService:
    return ReconciliationService.from_db(db)
