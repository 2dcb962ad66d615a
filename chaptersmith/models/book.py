"""
Book model: the persisted generation state and checkpoint log of a book.
"""

import enum
import uuid

from sqlalchemy import JSON, Column, DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from chaptersmith.db.base import Base
from chaptersmith.db.types import GUID


def normalize_toc(value) -> list[str]:
    """Chapter titles with blank or non-string entries dropped."""
    if not isinstance(value, list):
        return []
    return [t for t in value if isinstance(t, str) and t]


class BookStatus(enum.Enum):
    """Book generation status."""

    DRAFT = "draft"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class Book(Base):
    """A book being generated from source text."""

    __tablename__ = "books"
    __table_args__ = (
        Index("books_user_id_idx", "user_id"),
        Index("books_status_idx", "status"),
    )

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    title = Column(String(500), nullable=False)
    source_text = Column(Text)
    table_of_contents = Column(JSON, default=list)  # Ordered chapter titles

    # Structured blueprint (audience, style, themes, per-chapter guidance)
    plan = Column(JSON, nullable=True)

    status = Column(
        Enum(BookStatus, values_callable=lambda obj: [e.value for e in obj]),
        default=BookStatus.DRAFT,
        nullable=False,
    )
    content = Column(Text, default="", nullable=False)  # Assembled book content
    current_chapter_index = Column(Integer, default=0, nullable=False)

    # {lastChapter, lastSection, timestamp, partialSection?}
    streaming_checkpoint = Column(JSON, nullable=True)
    error = Column(Text)

    # {provider, model, language, userPreference}
    generation_settings = Column(JSON, default=dict)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    owner = relationship("User", back_populates="books")
    chapters = relationship(
        "Chapter",
        back_populates="book",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Chapter.chapter_number",
    )

    @property
    def toc(self) -> list[str]:
        return normalize_toc(self.table_of_contents)
