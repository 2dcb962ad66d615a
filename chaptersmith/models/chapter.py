"""
Chapter model for book content.
"""

import enum
import uuid

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from chaptersmith.db.base import Base
from chaptersmith.db.types import GUID


class ChapterStatus(enum.Enum):
    """Chapter status enumeration."""

    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class Chapter(Base):
    """Chapter model for book content."""

    __tablename__ = "chapters"
    __table_args__ = (
        UniqueConstraint("book_id", "chapter_number", name="chapters_book_id_chapter_number_uq"),
        Index("chapters_status_idx", "status"),
    )

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    book_id = Column(GUID(), ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    chapter_number = Column(Integer, nullable=False)  # 1-based, dense
    title = Column(String(500), nullable=False)

    # Content
    content = Column(Text, default="", nullable=False)  # Markdown format

    # Outline: {"sections": [{"title": ..., "summary": ...}]}
    outline = Column(JSON, nullable=True)

    status = Column(
        Enum(ChapterStatus, values_callable=lambda obj: [e.value for e in obj]),
        default=ChapterStatus.PENDING,
        nullable=False,
    )

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    book = relationship("Book", back_populates="chapters")
