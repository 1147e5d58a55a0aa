from typing import List, Optional
from datetime import datetime, timezone
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING, ReturnDocument

from app.db.mongo import translate_store_errors
from app.models.base import to_mongo
from app.models.invoice import Invoice, InvoiceStatus, LegacyPayment


class InvoiceRepository:
    """Invoice directory operations."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["invoices"]

    async def create_invoice(self, invoice: Invoice) -> Invoice:
        with translate_store_errors("invoices.insert"):
            await self.collection.insert_one(invoice.to_document())
        return invoice

    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        with translate_store_errors("invoices.get"):
            doc = await self.collection.find_one({"_id": invoice_id})
        if doc:
            return Invoice(**doc)
        return None

    async def set_invoice_status(self, invoice_id: str, status: InvoiceStatus) -> Optional[Invoice]:
        return await self._update(invoice_id, {"status": status}, "invoices.set_status")

    async def list_by_client(self, client_id: str) -> List[Invoice]:
        with translate_store_errors("invoices.by_client"):
            docs = await self.collection.find({"client_id": client_id}).sort("date", DESCENDING).to_list(None)
        return [Invoice(**doc) for doc in docs]

    async def list_all(self) -> List[Invoice]:
        with translate_store_errors("invoices.all"):
            docs = await self.collection.find({}).to_list(None)
        return [Invoice(**doc) for doc in docs]

    async def list_with_legacy_payments(self) -> List[Invoice]:
        """Invoices still carrying an embedded payments list."""
        with translate_store_errors("invoices.legacy"):
            docs = await self.collection.find({"payments.0": {"$exists": True}}).to_list(None)
        return [Invoice(**doc) for doc in docs]

    async def clear_legacy_payments(self, invoice_id: str, migrated_count: int) -> Optional[Invoice]:
        """Drop the embedded list once its payments exist as records."""
        return await self._update(invoice_id, {
            "payments": [],
            "migration_completed": True,
            "migration_date": datetime.now(timezone.utc),
            "migrated_payment_count": migrated_count
        }, "invoices.clear_legacy")

    async def restore_legacy_payments(
        self, invoice_id: str, payments: List[LegacyPayment], rollback_count: int
    ) -> Optional[Invoice]:
        """Put an embedded list back after a migration rollback."""
        return await self._update(invoice_id, {
            "payments": payments,
            "migration_completed": False,
            "rollback_date": datetime.now(timezone.utc),
            "rollback_count": rollback_count
        }, "invoices.restore_legacy")

    async def _update(self, invoice_id: str, changes: dict, operation: str) -> Optional[Invoice]:
        updates = to_mongo(dict(changes))
        updates["updated_at"] = datetime.now(timezone.utc)
        with translate_store_errors(operation):
            doc = await self.collection.find_one_and_update(
                {"_id": invoice_id},
                {"$set": updates},
                return_document=ReturnDocument.AFTER
            )
        if doc:
            return Invoice(**doc)
        return None
