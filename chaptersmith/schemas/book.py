from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import Field

from chaptersmith.schemas.generation import AIProvider, CamelModel, GenerationSettings, Language


class GenerateBookRequest(CamelModel):
    title: str = Field(min_length=1)
    table_of_contents: list[str] = Field(min_length=1)
    source_text: str = Field(min_length=1)
    provider: AIProvider
    model: str = Field(min_length=1)
    language: Language = "English"
    user_preference: str = ""

    @property
    def settings(self) -> GenerationSettings:
        return GenerationSettings(
            provider=self.provider,
            model=self.model,
            language=self.language,
            user_preference=self.user_preference,
        )


class StreamBookRequest(GenerateBookRequest):
    start_from_chapter: Optional[int] = Field(default=None, ge=1)


class ResumeBookRequest(CamelModel):
    start_from_chapter: Optional[int] = Field(default=None, ge=1)


class ChapterStatusItem(CamelModel):
    chapter_number: int
    title: str
    status: str
    content: Optional[str] = None


class BookStatusResponse(CamelModel):
    ok: bool = True
    status: str
    error: Optional[str] = None
    current_chapter_index: int
    total_chapters: int
    completed_chapters: int
    chapters: list[ChapterStatusItem]


class BookSummary(CamelModel):
    id: UUID
    title: str
    status: str
    current_chapter_index: int
    table_of_contents: list[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BookDetail(BookSummary):
    content: str = ""
    plan: Optional[dict[str, Any]] = None
    streaming_checkpoint: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    generation_settings: Optional[dict[str, Any]] = None
