"""
Pydantic schemas for structured generator outputs and queue messages.

Structured outputs returned by the content generator are validated against
these models before anything is persisted.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts both snake_case and camelCase keys, dumps camelCase by alias."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AIProvider(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"


Language = Literal["Korean", "English", "Japanese", "Chinese", "Auto"]


class GenerationSettings(CamelModel):
    provider: AIProvider = AIProvider.ANTHROPIC
    model: str = "claude-3-5-sonnet-20241022"
    language: Language = "English"
    user_preference: str = ""


class TocOutput(BaseModel):
    title: str
    chapters: list[str] = Field(default_factory=list)


class ChapterContinuity(CamelModel):
    from_previous: str = ""
    to_next: str = ""
    recurring_elements: list[str] = Field(default_factory=list)
    avoid_overlap_with: list[int] = Field(default_factory=list)


class ChapterGuideline(CamelModel):
    chapter_index: int
    title: str
    guidelines: str = ""
    continuity: ChapterContinuity = Field(default_factory=ChapterContinuity)


class PlanOutput(CamelModel):
    target_audience: str = ""
    writing_style: str = ""
    key_themes: list[str] = Field(default_factory=list)
    chapter_guidelines: list[ChapterGuideline] = Field(default_factory=list)


class SectionOutline(BaseModel):
    title: str
    summary: str = ""


class ChapterOutline(CamelModel):
    chapter_number: Optional[int] = None
    chapter_title: Optional[str] = None
    sections: list[SectionOutline] = Field(default_factory=list)


class JobStep(str, Enum):
    INIT = "init"
    CHAPTER = "chapter"
    FINALIZE = "finalize"


class GenerationJob(CamelModel):
    """One step of a queued book generation."""

    book_id: UUID
    step: JobStep
    chapter_number: Optional[int] = Field(default=None, ge=1)
    provider: AIProvider
    model: str = Field(min_length=1)
    language: Language = "English"
    user_preference: str = ""

    @property
    def deduplication_id(self) -> str:
        return f"{self.book_id}:{self.step.value}:{self.chapter_number or ''}"

    @property
    def settings(self) -> GenerationSettings:
        return GenerationSettings(
            provider=self.provider,
            model=self.model,
            language=self.language,
            user_preference=self.user_preference,
        )

    def next_step(self, step: JobStep, chapter_number: Optional[int] = None) -> "GenerationJob":
        return self.model_copy(update={"step": step, "chapter_number": chapter_number})

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
