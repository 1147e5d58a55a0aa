"""
PaymentRepository - the payment store.

Every created or modified payment is written individually; callers that
need several writes to behave as one unit hold the client's lock.
"""

import re
from typing import List, Optional
from datetime import datetime, timezone
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from app.db.mongo import translate_store_errors
from app.models.base import to_mongo
from app.models.payment import Payment


class PaymentRepository:
    """Repository for payment records."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["payments"]

    async def create(self, payment: Payment) -> Payment:
        """Insert a new payment and return it."""
        with translate_store_errors("payments.insert"):
            await self.collection.insert_one(payment.to_document())
        return payment

    async def upsert(self, payment: Payment) -> Payment:
        """Write a payment whose id is derived from its origin; repeating it is harmless."""
        with translate_store_errors("payments.upsert"):
            await self.collection.replace_one(
                {"_id": payment.id}, payment.to_document(), upsert=True
            )
        return payment

    async def update(self, payment_id: str, changes: dict) -> Optional[Payment]:
        """
        Apply `changes` to a payment.

        Returns the updated payment or None if it does not exist.
        """
        updates = to_mongo(dict(changes))
        updates["updated_at"] = datetime.now(timezone.utc)
        with translate_store_errors("payments.update"):
            doc = await self.collection.find_one_and_update(
                {"_id": payment_id},
                {"$set": updates},
                return_document=ReturnDocument.AFTER
            )
        if doc:
            return Payment(**doc)
        return None

    async def delete(self, payment_id: str) -> bool:
        with translate_store_errors("payments.delete"):
            result = await self.collection.delete_one({"_id": payment_id})
        return result.deleted_count > 0

    async def get(self, payment_id: str) -> Optional[Payment]:
        with translate_store_errors("payments.get"):
            doc = await self.collection.find_one({"_id": payment_id})
        if doc:
            return Payment(**doc)
        return None

    async def list_by_client(self, client_id: str) -> List[Payment]:
        """All payments owned by a client, oldest first."""
        return await self._find({"client_id": client_id}, "payments.by_client")

    async def list_by_invoice(self, invoice_id: str) -> List[Payment]:
        """Payments allocated to an invoice, oldest first."""
        return await self._find({"document_id": invoice_id}, "payments.by_invoice")

    async def list_all(self) -> List[Payment]:
        return await self._find({}, "payments.all")

    async def list_unowned(self) -> List[Payment]:
        """Payments without an owning client (null or missing client_id)."""
        return await self._find({"client_id": None}, "payments.unowned")

    async def list_migrated_for_document(self, document_id: str) -> List[Payment]:
        """Payments created from an invoice's embedded list, in list order."""
        with translate_store_errors("payments.migrated"):
            docs = await self.collection.find({
                "migrated": True,
                "migrated_from_document_id": document_id
            }).sort("migration_index", ASCENDING).to_list(None)
        return [Payment(**doc) for doc in docs]

    async def search(
        self,
        client_id: Optional[str] = None,
        search: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Payment]:
        """Payments newest first, optionally filtered by client and free text."""
        query: dict = {}
        if client_id:
            query["client_id"] = client_id
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [
                {"invoice_number": pattern},
                {"reference": pattern},
                {"notes": pattern}
            ]

        with translate_store_errors("payments.search"):
            cursor = self.collection.find(query).sort("payment_date", DESCENDING)
            if limit:
                cursor = cursor.limit(limit)
            docs = await cursor.to_list(None)
        return [Payment(**doc) for doc in docs]

    # ===== PRIVATE HELPERS =====

    async def _find(self, query: dict, operation: str) -> List[Payment]:
        with translate_store_errors(operation):
            docs = await self.collection.find(query).sort(
                [("payment_date", ASCENDING), ("created_at", ASCENDING)]
            ).to_list(None)
        return [Payment(**doc) for doc in docs]
