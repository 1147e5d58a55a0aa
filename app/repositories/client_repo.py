from typing import List, Optional
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.db.mongo import translate_store_errors
from app.models.client import Client


class ClientRepository:
    """Client directory operations."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["clients"]

    async def create_client(self, client: Client) -> Client:
        with translate_store_errors("clients.insert"):
            await self.collection.insert_one(client.to_document())
        return client

    async def get_client(self, client_id: str) -> Optional[Client]:
        with translate_store_errors("clients.get"):
            doc = await self.collection.find_one({"_id": client_id})
        if doc:
            return Client(**doc)
        return None

    async def list_clients(self) -> List[Client]:
        with translate_store_errors("clients.all"):
            docs = await self.collection.find({}).sort("name", 1).to_list(None)
        return [Client(**doc) for doc in docs]
