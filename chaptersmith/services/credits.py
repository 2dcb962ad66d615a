"""
Credit ledger.

Every mutation runs in a single database transaction covering both the
balance update and the transaction-log insert, with the balance row locked
(`SELECT ... FOR UPDATE`) so concurrent flows for the same user serialize.

Idempotency:
- purchases/refunds are keyed by the external order id
- usage charges and usage refunds are keyed by the book id
Replays are silent no-ops.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chaptersmith.core.config import settings
from chaptersmith.core.exceptions import InsufficientCredits, ValidationError
from chaptersmith.models.credit import CreditBalance, CreditTransaction, TransactionType

logger = logging.getLogger(__name__)


@dataclass
class CreditBalanceInfo:
    balance: int
    free_credits: int


class CreditLedger:
    """
    Atomic credit bookkeeping for a single database session.

    Each mutating call ends the session's current transaction (commit on
    success, rollback on no-op or error), so callers commit their own pending
    changes first.
    """

    def __init__(self, db: Session):
        self.db = db

    # ─────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────

    def get_balance(self, user_id: UUID) -> CreditBalanceInfo:
        row = self.db.get(CreditBalance, user_id, populate_existing=True)
        if row is None:
            return CreditBalanceInfo(balance=0, free_credits=0)
        return CreditBalanceInfo(balance=row.balance, free_credits=row.free_credits)

    def find_book_transaction(
        self, book_id: UUID, tx_type: TransactionType
    ) -> Optional[CreditTransaction]:
        return (
            self.db.query(CreditTransaction)
            .filter(
                CreditTransaction.type == tx_type,
                CreditTransaction.book_id == book_id,
            )
            .first()
        )

    def has_usage_for_book(self, book_id: UUID) -> bool:
        """True once a book has been charged. Callers check this before deducting."""
        return self.find_book_transaction(book_id, TransactionType.USAGE) is not None

    def list_transactions(
        self, user_id: UUID, limit: int = 50, offset: int = 0
    ) -> list[CreditTransaction]:
        return (
            self.db.query(CreditTransaction)
            .filter(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id)
            .limit(limit)
            .offset(offset)
            .all()
        )

    # ─────────────────────────────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────────────────────────────

    def add_credits(
        self,
        user_id: UUID,
        amount: int,
        tx_type: TransactionType = TransactionType.PURCHASE,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[CreditTransaction]:
        """
        Grant credits. Returns None when `idempotency_key` was already applied.
        """
        if tx_type not in (TransactionType.PURCHASE, TransactionType.FREE_SIGNUP):
            raise ValidationError(f"add_credits does not accept {tx_type.value} transactions")
        _require_positive(amount)

        try:
            if idempotency_key and self._order_applied(tx_type, idempotency_key):
                self.db.rollback()
                logger.info(f"[Credits] Order {idempotency_key} already applied; skipping")
                return None

            balance = self._lock_balance(user_id, create=True)
            balance.balance += amount
            if tx_type == TransactionType.FREE_SIGNUP:
                balance.free_credits += amount

            tx = self._record(
                user_id,
                tx_type,
                amount,
                balance.balance,
                external_order_id=idempotency_key,
                metadata=metadata,
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if idempotency_key and self._order_applied(tx_type, idempotency_key):
                return None
            raise

        logger.info(f"[Credits] +{amount} ({tx_type.value}) for user {user_id}")
        return tx

    def deduct_credits(
        self,
        user_id: UUID,
        amount: int,
        book_id: UUID,
        metadata: Optional[dict] = None,
    ) -> Optional[CreditTransaction]:
        """
        Charge a user for a book.

        Raises InsufficientCredits when the locked balance is too low. Returns
        None without charging if the book already carries a usage charge.
        """
        _require_positive(amount)

        try:
            balance = self._lock_balance(user_id)
            if self.has_usage_for_book(book_id):
                self.db.rollback()
                logger.info(f"[Credits] Book {book_id} already charged; skipping")
                return None

            available = balance.balance if balance else 0
            if balance is None or available < amount:
                self.db.rollback()
                raise InsufficientCredits(required=amount, available=available)

            balance.balance -= amount
            tx = self._record(
                user_id,
                TransactionType.USAGE,
                -amount,
                balance.balance,
                book_id=book_id,
                metadata=metadata,
            )
            self.db.commit()
        except IntegrityError:
            # A concurrent charge for the same book won the unique index.
            self.db.rollback()
            if self.has_usage_for_book(book_id):
                return None
            raise

        logger.info(f"[Credits] -{amount} (usage) for user {user_id}, book {book_id}")
        return tx

    def refund_usage_credits(
        self,
        user_id: UUID,
        book_id: UUID,
        amount: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[CreditTransaction]:
        """
        Return the usage charge of a book. At most once per book, and only if
        the book was actually charged. `amount` defaults to the charged amount.
        """
        try:
            balance = self._lock_balance(user_id)
            usage = self.find_book_transaction(book_id, TransactionType.USAGE)
            if usage is None:
                self.db.rollback()
                logger.info(f"[Credits] Book {book_id} was never charged; nothing to refund")
                return None
            if self.find_book_transaction(book_id, TransactionType.USAGE_REFUND):
                self.db.rollback()
                logger.info(f"[Credits] Book {book_id} already refunded; skipping")
                return None

            charged = -usage.amount
            refund = charged if amount is None else amount
            _require_positive(refund)
            if refund > charged:
                raise ValidationError(
                    f"Refund of {refund} exceeds the {charged} charged for book {book_id}"
                )
            if balance is None:
                balance = self._lock_balance(user_id, create=True)

            balance.balance += refund
            tx = self._record(
                user_id,
                TransactionType.USAGE_REFUND,
                refund,
                balance.balance,
                book_id=book_id,
                metadata=metadata,
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if self.find_book_transaction(book_id, TransactionType.USAGE_REFUND):
                return None
            raise
        except ValidationError:
            self.db.rollback()
            raise

        logger.info(f"[Credits] +{refund} (usage_refund) for user {user_id}, book {book_id}")
        return tx

    def refund_credits(
        self,
        user_id: UUID,
        amount: int,
        order_id: str,
        metadata: Optional[dict] = None,
    ) -> Optional[CreditTransaction]:
        """
        Remove credits for a refunded payment order. The balance never goes
        below zero; the recorded amount is what was actually removed.
        """
        _require_positive(amount)
        if not order_id:
            raise ValidationError("order_id is required for payment refunds")

        try:
            if self._order_applied(TransactionType.REFUND, order_id):
                self.db.rollback()
                return None

            balance = self._lock_balance(user_id)
            if balance is None:
                self.db.rollback()
                raise ValidationError(f"No credit balance for user {user_id}")

            removed = min(amount, balance.balance)
            balance.balance -= removed
            tx = self._record(
                user_id,
                TransactionType.REFUND,
                -removed,
                balance.balance,
                external_order_id=order_id,
                metadata={**(metadata or {}), "requested": amount},
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if self._order_applied(TransactionType.REFUND, order_id):
                return None
            raise

        logger.info(f"[Credits] -{removed} (refund) for user {user_id}, order {order_id}")
        return tx

    def grant_free_signup_credits(self, user_id: UUID) -> Optional[CreditTransaction]:
        """One-time signup bonus."""
        already = (
            self.db.query(CreditTransaction.id)
            .filter(
                CreditTransaction.user_id == user_id,
                CreditTransaction.type == TransactionType.FREE_SIGNUP,
            )
            .first()
        )
        if already is not None:
            return None
        return self.add_credits(
            user_id,
            settings.FREE_SIGNUP_CREDITS,
            TransactionType.FREE_SIGNUP,
            idempotency_key=f"signup:{user_id}",
            metadata={"reason": "New user signup bonus"},
        )

    # ─────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────

    def _lock_balance(self, user_id: UUID, create: bool = False) -> Optional[CreditBalance]:
        balance = (
            self.db.query(CreditBalance)
            .filter(CreditBalance.user_id == user_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if balance is None and create:
            balance = CreditBalance(user_id=user_id, balance=0, free_credits=0)
            self.db.add(balance)
            self.db.flush()
        return balance

    def _order_applied(self, tx_type: TransactionType, order_id: str) -> bool:
        return (
            self.db.query(CreditTransaction.id)
            .filter(
                CreditTransaction.type == tx_type,
                CreditTransaction.external_order_id == order_id,
            )
            .first()
            is not None
        )

    def _record(
        self,
        user_id: UUID,
        tx_type: TransactionType,
        amount: int,
        balance_after: int,
        book_id: Optional[UUID] = None,
        external_order_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> CreditTransaction:
        tx = CreditTransaction(
            user_id=user_id,
            type=tx_type,
            amount=amount,
            balance_after=balance_after,
            book_id=book_id,
            external_order_id=external_order_id,
            transaction_metadata=metadata,
        )
        self.db.add(tx)
        self.db.flush()
        return tx


def _require_positive(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError(f"Credit amount must be a positive integer, got {amount!r}")
