"""Tests for the Mongo repositories against a mocked motor database."""
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson.decimal128 import Decimal128
from pymongo import ReturnDocument
from pymongo.errors import AutoReconnect

from app.models.invoice import InvoiceStatus, LegacyPayment
from app.models.payment import Payment
from app.repositories.invoice_repo import InvoiceRepository
from app.repositories.payment_repo import PaymentRepository
from app.utils.payment_validation import PersistenceError


def _cursor(docs):
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=docs)
    return cursor


def _payment_doc(payment_id="p1", amount="10.00", **fields):
    doc = {
        "_id": payment_id,
        "client_id": "c1",
        "amount": Decimal128(amount),
        "payment_date": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    doc.update(fields)
    return doc


@pytest.mark.asyncio
class TestPaymentRepository:

    async def test_create_stores_decimal128(self, mock_db):
        repo = PaymentRepository(mock_db)
        payment = Payment(id="p1", client_id="c1", amount=Decimal("12.30"))

        await repo.create(payment)

        doc = mock_db["payments"].insert_one.call_args[0][0]
        assert doc["_id"] == "p1"
        assert doc["amount"] == Decimal128("12.30")
        assert doc["document_id"] is None

    async def test_get_reads_decimal128_back(self, mock_db):
        mock_db["payments"].find_one.return_value = _payment_doc(amount="99.90")
        repo = PaymentRepository(mock_db)

        payment = await repo.get("p1")

        assert payment.id == "p1"
        assert payment.amount == Decimal("99.90")

    async def test_get_missing_returns_none(self, mock_db):
        repo = PaymentRepository(mock_db)
        assert await repo.get("nope") is None

    async def test_update_sets_changes_and_timestamp(self, mock_db):
        mock_db["payments"].find_one_and_update.return_value = _payment_doc(document_id="inv-1")
        repo = PaymentRepository(mock_db)

        updated = await repo.update("p1", {"document_id": "inv-1", "amount": Decimal("5.00")})

        args, kwargs = mock_db["payments"].find_one_and_update.call_args
        assert args[0] == {"_id": "p1"}
        changes = args[1]["$set"]
        assert changes["document_id"] == "inv-1"
        assert changes["amount"] == Decimal128("5.00")
        assert "updated_at" in changes
        assert kwargs["return_document"] == ReturnDocument.AFTER
        assert updated.document_id == "inv-1"

    async def test_upsert_replaces_by_id(self, mock_db):
        repo = PaymentRepository(mock_db)
        payment = Payment(id="p1.s1", client_id="c1", amount=Decimal("1.00"))

        await repo.upsert(payment)

        args, kwargs = mock_db["payments"].replace_one.call_args
        assert args[0] == {"_id": "p1.s1"}
        assert kwargs["upsert"] is True

    async def test_list_by_client_queries_and_sorts(self, mock_db):
        cursor = _cursor([_payment_doc("a"), _payment_doc("b")])
        mock_db["payments"].find = MagicMock(return_value=cursor)
        repo = PaymentRepository(mock_db)

        payments = await repo.list_by_client("c1")

        mock_db["payments"].find.assert_called_once_with({"client_id": "c1"})
        assert [p.id for p in payments] == ["a", "b"]

    async def test_search_builds_case_insensitive_filter(self, mock_db):
        cursor = _cursor([])
        mock_db["payments"].find = MagicMock(return_value=cursor)
        repo = PaymentRepository(mock_db)

        await repo.search(client_id="c1", search="INV-1", limit=5)

        query = mock_db["payments"].find.call_args[0][0]
        assert query["client_id"] == "c1"
        assert {"invoice_number": {"$regex": "INV\\-1", "$options": "i"}} in query["$or"]
        cursor.limit.assert_called_once_with(5)

    async def test_driver_errors_become_persistence_errors(self, mock_db):
        mock_db["payments"].insert_one.side_effect = AutoReconnect("primary stepped down")
        repo = PaymentRepository(mock_db)

        with pytest.raises(PersistenceError) as exc_info:
            await repo.create(Payment(client_id="c1", amount=Decimal("1.00")))

        assert exc_info.value.operation == "payments.insert"


@pytest.mark.asyncio
class TestInvoiceRepository:

    async def test_set_status(self, mock_db):
        mock_db["invoices"].find_one_and_update.return_value = {
            "_id": "inv-1", "client_id": "c1", "total": Decimal128("10.00"), "status": "CANCELLED"
        }
        repo = InvoiceRepository(mock_db)

        invoice = await repo.set_invoice_status("inv-1", InvoiceStatus.CANCELLED)

        changes = mock_db["invoices"].find_one_and_update.call_args[0][1]["$set"]
        assert changes["status"] == "CANCELLED"
        assert invoice.status == InvoiceStatus.CANCELLED

    async def test_clear_legacy_payments_marks_migration(self, mock_db):
        repo = InvoiceRepository(mock_db)

        await repo.clear_legacy_payments("inv-1", 3)

        changes = mock_db["invoices"].find_one_and_update.call_args[0][1]["$set"]
        assert changes["payments"] == []
        assert changes["migration_completed"] is True
        assert changes["migrated_payment_count"] == 3

    async def test_restore_legacy_payments_bumps_rollback_count(self, mock_db):
        repo = InvoiceRepository(mock_db)

        await repo.restore_legacy_payments("inv-1", [LegacyPayment(amount=Decimal("5.00"))], 2)

        changes = mock_db["invoices"].find_one_and_update.call_args[0][1]["$set"]
        assert changes["payments"] == [{"amount": Decimal128("5.00"), "date": None, "method": None,
                                        "note": None, "timestamp": None}]
        assert changes["migration_completed"] is False
        assert changes["rollback_count"] == 2


@pytest.mark.asyncio
class TestPaymentRepositoryAgainstMongo:
    """Round trips through a real server; skipped unless MONGODB_URI is set."""

    async def test_update_and_query(self, test_db):
        repo = PaymentRepository(test_db)
        await repo.create(Payment(id="p1", client_id="c1", amount=Decimal("10.10")))
        await repo.create(Payment(id="p2", client_id=None, amount=Decimal("2.00")))

        updated = await repo.update("p1", {"document_id": "inv-1", "settled_to_document": True})

        assert updated.amount == Decimal("10.10")
        assert [p.id for p in await repo.list_by_invoice("inv-1")] == ["p1"]
        assert [p.id for p in await repo.list_unowned()] == ["p2"]
        assert await repo.delete("p2") is True
        assert await repo.get("p2") is None
