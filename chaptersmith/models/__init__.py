"""
Database models for Chaptersmith.
"""

from chaptersmith.models.user import User
from chaptersmith.models.book import Book, BookStatus
from chaptersmith.models.chapter import Chapter, ChapterStatus
from chaptersmith.models.credit import CreditBalance, CreditTransaction, TransactionType

__all__ = [
    "User",
    "Book",
    "BookStatus",
    "Chapter",
    "ChapterStatus",
    "CreditBalance",
    "CreditTransaction",
    "TransactionType",
]
