import asyncio
import os
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from app.models.client import Client
from app.models.invoice import Invoice, InvoiceStatus, LegacyPayment
from app.models.payment import Payment
from app.services.allocation_service import AllocationService
from app.services.invoice_service import InvoiceLedgerService
from app.services.ledger_service import LedgerService
from app.services.locks import ClientLockRegistry
from app.services.reconciliation_service import ReconciliationService
from app.utils.payment_validation import PersistenceError

# Test database configuration
TEST_MONGODB_URI = os.getenv("MONGODB_URI")
TEST_MONGODB_DB = "invoice_ledger_test"


def _sort_key(payment: Payment):
    return (payment.payment_date, payment.created_at)


class InMemoryPaymentRepository:
    """PaymentRepository stand-in backed by a dict."""

    def __init__(self):
        self.docs: Dict[str, Payment] = {}
        self.fail_on: Dict[str, int] = {}
        self.dropped_upserts = 0

    def add(self, payment: Payment) -> Payment:
        self.docs[payment.id] = payment.model_copy(deep=True)
        return payment

    async def _io(self, operation: str):
        await asyncio.sleep(0)
        remaining = self.fail_on.get(operation, 0)
        if remaining:
            self.fail_on[operation] = remaining - 1
            raise PersistenceError(f"payments.{operation}", "simulated failure")

    async def create(self, payment: Payment) -> Payment:
        await self._io("create")
        return self.add(payment)

    async def upsert(self, payment: Payment) -> Payment:
        await self._io("upsert")
        if self.dropped_upserts:
            self.dropped_upserts -= 1
            return payment
        return self.add(payment)

    async def update(self, payment_id: str, changes: dict) -> Optional[Payment]:
        await self._io("update")
        current = self.docs.get(payment_id)
        if current is None:
            return None
        updated = current.model_copy(
            update={**changes, "updated_at": datetime.now(timezone.utc)}, deep=True
        )
        self.docs[payment_id] = updated
        return updated.model_copy(deep=True)

    async def delete(self, payment_id: str) -> bool:
        await self._io("delete")
        return self.docs.pop(payment_id, None) is not None

    async def get(self, payment_id: str) -> Optional[Payment]:
        await self._io("get")
        payment = self.docs.get(payment_id)
        return payment.model_copy(deep=True) if payment else None

    async def list_by_client(self, client_id: str) -> List[Payment]:
        return await self._find(lambda p: p.client_id == client_id)

    async def list_by_invoice(self, invoice_id: str) -> List[Payment]:
        return await self._find(lambda p: p.document_id == invoice_id)

    async def list_all(self) -> List[Payment]:
        return await self._find(lambda p: True)

    async def list_unowned(self) -> List[Payment]:
        return await self._find(lambda p: p.client_id is None)

    async def list_migrated_for_document(self, document_id: str) -> List[Payment]:
        found = await self._find(lambda p: p.migrated and p.migrated_from_document_id == document_id)
        return sorted(found, key=lambda p: p.migration_index)

    async def search(self, client_id=None, search=None, limit=None) -> List[Payment]:
        def matches(p: Payment) -> bool:
            if client_id and p.client_id != client_id:
                return False
            if search:
                pattern = re.compile(re.escape(search), re.IGNORECASE)
                return any(pattern.search(v) for v in (p.invoice_number, p.reference, p.notes))
            return True

        found = sorted(await self._find(matches), key=lambda p: p.payment_date, reverse=True)
        return found[:limit] if limit else found

    async def _find(self, predicate) -> List[Payment]:
        await self._io("find")
        return [p.model_copy(deep=True) for p in sorted(self.docs.values(), key=_sort_key) if predicate(p)]


class InMemoryInvoiceRepository:
    def __init__(self):
        self.docs: Dict[str, Invoice] = {}

    def add(self, invoice: Invoice) -> Invoice:
        self.docs[invoice.id] = invoice.model_copy(deep=True)
        return invoice

    async def create_invoice(self, invoice: Invoice) -> Invoice:
        await asyncio.sleep(0)
        return self.add(invoice)

    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        await asyncio.sleep(0)
        invoice = self.docs.get(invoice_id)
        return invoice.model_copy(deep=True) if invoice else None

    async def set_invoice_status(self, invoice_id: str, status: InvoiceStatus) -> Optional[Invoice]:
        return await self._update(invoice_id, {"status": status})

    async def list_by_client(self, client_id: str) -> List[Invoice]:
        await asyncio.sleep(0)
        return [i.model_copy(deep=True) for i in self.docs.values() if i.client_id == client_id]

    async def list_all(self) -> List[Invoice]:
        await asyncio.sleep(0)
        return [i.model_copy(deep=True) for i in self.docs.values()]

    async def list_with_legacy_payments(self) -> List[Invoice]:
        await asyncio.sleep(0)
        return [i.model_copy(deep=True) for i in self.docs.values() if i.payments]

    async def clear_legacy_payments(self, invoice_id: str, migrated_count: int) -> Optional[Invoice]:
        return await self._update(invoice_id, {
            "payments": [],
            "migration_completed": True,
            "migration_date": datetime.now(timezone.utc),
            "migrated_payment_count": migrated_count
        })

    async def restore_legacy_payments(
        self, invoice_id: str, payments: List[LegacyPayment], rollback_count: int
    ) -> Optional[Invoice]:
        return await self._update(invoice_id, {
            "payments": payments,
            "migration_completed": False,
            "rollback_date": datetime.now(timezone.utc),
            "rollback_count": rollback_count
        })

    async def _update(self, invoice_id: str, changes: dict) -> Optional[Invoice]:
        await asyncio.sleep(0)
        current = self.docs.get(invoice_id)
        if current is None:
            return None
        self.docs[invoice_id] = current.model_copy(update=changes, deep=True)
        return self.docs[invoice_id].model_copy(deep=True)


class InMemoryClientRepository:
    def __init__(self):
        self.docs: Dict[str, Client] = {}

    def add(self, client: Client) -> Client:
        self.docs[client.id] = client
        return client

    async def create_client(self, client: Client) -> Client:
        await asyncio.sleep(0)
        return self.add(client)

    async def get_client(self, client_id: str) -> Optional[Client]:
        await asyncio.sleep(0)
        return self.docs.get(client_id)

    async def list_clients(self) -> List[Client]:
        await asyncio.sleep(0)
        return sorted(self.docs.values(), key=lambda c: c.name)


class Ledger:
    """In-memory stores plus the services wired to them."""

    def __init__(self):
        self.payments = InMemoryPaymentRepository()
        self.invoices = InMemoryInvoiceRepository()
        self.clients = InMemoryClientRepository()
        self.locks = ClientLockRegistry()
        self.allocation = AllocationService(self.payments, self.invoices, self.clients, self.locks)
        self.invoice_service = InvoiceLedgerService(self.payments, self.invoices, self.locks)
        self.reconciliation = ReconciliationService(self.payments, self.invoices, self.clients, self.locks)
        self.queries = LedgerService(self.payments, self.invoices, self.clients)

    def client(self, client_id: str = "client-1", name: str = "Acme Ltd") -> Client:
        return self.clients.add(Client(id=client_id, name=name))

    def invoice(self, invoice_id: str, total, client_id: str = "client-1", **fields) -> Invoice:
        fields.setdefault("document_number", invoice_id.upper())
        return self.invoices.add(Invoice(id=invoice_id, client_id=client_id, total=Decimal(str(total)), **fields))

    def payment(self, payment_id: str, amount, client_id: Optional[str] = "client-1", **fields) -> Payment:
        fields.setdefault("settled_to_document", fields.get("document_id") is not None)
        return self.payments.add(Payment(id=payment_id, client_id=client_id, amount=Decimal(str(amount)), **fields))

    def stored(self, payment_id: str) -> Payment:
        return self.payments.docs[payment_id]

    def client_total(self, client_id: str = "client-1") -> Decimal:
        return sum((p.amount for p in self.payments.docs.values() if p.client_id == client_id), Decimal("0.00"))


@pytest.fixture
def ledger() -> Ledger:
    return Ledger()


@pytest.fixture
def mock_db():
    """Motor database double: every collection attribute is a MagicMock with async methods."""
    db = MagicMock()
    collections = {}

    def collection(name):
        if name not in collections:
            coll = MagicMock()
            coll.insert_one = AsyncMock()
            coll.replace_one = AsyncMock()
            coll.find_one = AsyncMock(return_value=None)
            coll.find_one_and_update = AsyncMock(return_value=None)
            coll.delete_one = AsyncMock()
            collections[name] = coll
        return collections[name]

    db.__getitem__.side_effect = collection
    return db


@pytest_asyncio.fixture
async def test_db() -> AsyncIOMotorDatabase:
    """Fixture for test MongoDB database (for async repository tests)."""
    if not TEST_MONGODB_URI:
        pytest.skip("MONGODB_URI is not set")
    client = AsyncIOMotorClient(TEST_MONGODB_URI, tz_aware=True)
    db = client[TEST_MONGODB_DB]

    # Drop database before test to ensure clean state
    await client.drop_database(TEST_MONGODB_DB)

    yield db

    await client.drop_database(TEST_MONGODB_DB)
    client.close()
