from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_serializer

from chaptersmith.models.credit import TransactionType


class CreditBalanceResponse(BaseModel):
    ok: bool = True
    balance: int
    free_credits: int


class CreditTransactionItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: TransactionType
    amount: int
    balance_after: int
    book_id: Optional[UUID] = None
    external_order_id: Optional[str] = None
    transaction_metadata: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None

    @field_serializer("type")
    def _serialize_type(self, value: TransactionType) -> str:
        return value.value


class CreditTransactionList(BaseModel):
    ok: bool = True
    transactions: list[CreditTransactionItem]
