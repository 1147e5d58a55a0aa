from typing import Optional
from app.models.base import MongoModel


class Client(MongoModel):
    """A customer that owns invoices and payments."""
    name: str
    email: Optional[str] = None
