from fastapi import APIRouter
from app.api.v1.endpoints import payments, clients, invoices, reconciliation

api_router = APIRouter()

api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(clients.router, prefix="/clients", tags=["clients"])
api_router.include_router(invoices.router, prefix="/invoices", tags=["invoices"])
api_router.include_router(reconciliation.router, prefix="/reconciliation", tags=["reconciliation"])
