"""
Credit balance and transaction ledger models.
"""

import enum
import uuid

from sqlalchemy import JSON, Column, DateTime, Enum, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from chaptersmith.db.base import Base
from chaptersmith.db.types import GUID


class TransactionType(enum.Enum):
    """Types of credit transactions."""

    PURCHASE = "purchase"  # Credits bought through the payment provider
    USAGE = "usage"  # Book generation charge
    REFUND = "refund"  # Payment refunded, credits removed
    USAGE_REFUND = "usage_refund"  # Generation failed, charge returned
    FREE_SIGNUP = "free_signup"  # One-time signup bonus


_PER_BOOK_TYPES = "type IN ('usage', 'usage_refund') AND book_id IS NOT NULL"


class CreditBalance(Base):
    """Current credit balance of a user, derived from the ledger."""

    __tablename__ = "credit_balances"

    user_id = Column(GUID(), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    balance = Column(Integer, default=0, nullable=False)
    free_credits = Column(Integer, default=0, nullable=False)

    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user = relationship("User", back_populates="credit_balance")


class CreditTransaction(Base):
    """Append-only ledger row. Signed amounts sum to the user's balance."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index("credit_transactions_user_id_idx", "user_id"),
        Index("credit_transactions_created_at_idx", "created_at"),
        # At most one charge and one charge refund per book
        Index(
            "credit_transactions_book_type_uq",
            "type",
            "book_id",
            unique=True,
            postgresql_where=text(_PER_BOOK_TYPES),
            sqlite_where=text(_PER_BOOK_TYPES),
        ),
        # Payment events are replay-safe per order
        Index(
            "credit_transactions_order_type_uq",
            "type",
            "external_order_id",
            unique=True,
        ),
    )

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    type = Column(
        Enum(TransactionType, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
    )
    amount = Column(Integer, nullable=False)  # Positive for credit, negative for debit
    balance_after = Column(Integer, nullable=False)

    # Not a foreign key: ledger rows outlive books deleted after a failed setup.
    book_id = Column(GUID(), index=True)
    external_order_id = Column(String(255))

    transaction_metadata = Column(JSON)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="credit_transactions")
