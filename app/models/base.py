from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any

from bson import ObjectId
from bson.decimal128 import Decimal128
from pydantic import BaseModel, BeforeValidator, Field, ConfigDict, PlainSerializer

from app.utils.money import to_money


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(ObjectId())


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes read back from Mongo as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _coerce_money(value: Any) -> Decimal:
    try:
        return to_money(value)
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"Invalid money amount: {value!r}") from exc


# Two-place Decimal; accepts Decimal128 from Mongo and renders as a string in JSON.
Money = Annotated[
    Decimal,
    BeforeValidator(_coerce_money),
    PlainSerializer(lambda v: f"{v:.2f}", return_type=str, when_used="json"),
]


class MongoModel(BaseModel):
    id: str = Field(default_factory=new_id, alias="_id")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=True,
        from_attributes=True
    )

    def to_document(self) -> dict:
        """Mongo document for this model; Decimals become Decimal128."""
        return to_mongo(self.model_dump(by_alias=True))


def to_mongo(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return to_mongo(value.model_dump())
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, dict):
        return {key: to_mongo(item) for key, item in value.items()}
    if isinstance(value, list):
        return [to_mongo(item) for item in value]
    return value
