"""
Pipeline stages: TOC -> plan -> chapter outline -> section draft.

Each stage calls the content generator once and wraps any failure in
`GenerationStageError`. Stages never persist partial results and never
compensate; the orchestrators decide what happens next.
"""

import logging
from typing import AsyncIterator, Optional

from chaptersmith.core.exceptions import GenerationStageError
from chaptersmith.models.book import Book
from chaptersmith.models.chapter import Chapter
from chaptersmith.schemas.generation import (
    ChapterOutline,
    GenerationSettings,
    PlanOutput,
    TocOutput,
)
from chaptersmith.services.content_generator import ContentGenerator

logger = logging.getLogger(__name__)

STAGE_TOC = "toc"
STAGE_PLAN = "plan"
STAGE_OUTLINE = "outline"
STAGE_SECTION = "section"


def chapter_heading(title: str) -> str:
    """Opening line of every chapter buffer."""
    return f"## {title}\n\n"


def append_section(buffer: str, section_text: str) -> str:
    return buffer + section_text + "\n\n"


async def generate_toc(
    generator: ContentGenerator, source_text: str, settings: GenerationSettings
) -> TocOutput:
    try:
        toc = await generator.generate_toc(source_text, settings)
    except Exception as e:
        raise GenerationStageError(STAGE_TOC, e) from e
    if not toc.chapters:
        raise GenerationStageError(STAGE_TOC, ValueError("no chapters returned"))
    return toc


async def generate_plan(
    generator: ContentGenerator,
    source_text: str,
    toc: list[str],
    settings: GenerationSettings,
) -> PlanOutput:
    try:
        return await generator.generate_plan(source_text, toc, settings)
    except Exception as e:
        raise GenerationStageError(STAGE_PLAN, e) from e


async def generate_chapter_outline(
    generator: ContentGenerator,
    *,
    toc: list[str],
    chapter_title: str,
    chapter_number: int,
    source_text: str,
    plan: PlanOutput,
    settings: GenerationSettings,
) -> ChapterOutline:
    try:
        outline = await generator.generate_outline(
            toc=toc,
            chapter_title=chapter_title,
            chapter_number=chapter_number,
            source_text=source_text,
            plan=plan,
            settings=settings,
        )
    except Exception as e:
        raise GenerationStageError(STAGE_OUTLINE, e, chapter_number) from e
    if not outline.sections:
        raise GenerationStageError(
            STAGE_OUTLINE, ValueError("outline has no sections"), chapter_number
        )
    return outline


async def generate_section_draft(
    generator: ContentGenerator,
    *,
    chapter_number: int,
    chapter_title: str,
    outline: ChapterOutline,
    section_index: int,
    plan: PlanOutput,
    settings: GenerationSettings,
) -> AsyncIterator[str]:
    """
    Stream one section as text chunks.

    Only the title/summary of earlier sections is passed as context, never
    their generated text.
    """
    try:
        async for chunk in generator.stream_section(
            chapter_number=chapter_number,
            chapter_title=chapter_title,
            outline=outline,
            section_index=section_index,
            previous_sections=outline.sections[:section_index],
            plan=plan,
            settings=settings,
        ):
            if chunk:
                yield chunk
    except GenerationStageError:
        raise
    except Exception as e:
        raise GenerationStageError(STAGE_SECTION, e, chapter_number) from e


async def join_section(chunks: AsyncIterator[str]) -> str:
    """Collect a section stream into one string (queue path, no live listener)."""
    parts = []
    async for chunk in chunks:
        parts.append(chunk)
    return "".join(parts)


# ─────────────────────────────────────────────────────────────────────────
# Persisted-or-generated helpers
# ─────────────────────────────────────────────────────────────────────────


async def ensure_plan(
    store,
    book: Book,
    generator: ContentGenerator,
    settings: GenerationSettings,
) -> PlanOutput:
    """Return the persisted plan, or generate and persist one."""
    if book.plan:
        return PlanOutput.model_validate(book.plan)

    logger.info(f"[Pipeline] Generating plan for book {book.id}")
    plan = await generate_plan(generator, book.source_text, book.toc, settings)
    store.save_plan(book.id, plan.model_dump(mode="json", by_alias=True))
    return plan


async def ensure_chapter_outline(
    store,
    book: Book,
    chapter: Chapter,
    plan: PlanOutput,
    generator: ContentGenerator,
    settings: GenerationSettings,
) -> ChapterOutline:
    """Return the chapter's persisted outline unchanged, or generate and persist one."""
    if chapter.outline:
        return ChapterOutline.model_validate(chapter.outline)

    outline = await generate_chapter_outline(
        generator,
        toc=book.toc,
        chapter_title=chapter.title,
        chapter_number=chapter.chapter_number,
        source_text=book.source_text,
        plan=plan,
        settings=settings,
    )
    store.save_chapter_outline(
        book.id, chapter.chapter_number, outline.model_dump(mode="json", by_alias=True)
    )
    return outline


def resolve_settings(book: Book, fallback: Optional[GenerationSettings] = None) -> GenerationSettings:
    """Generation settings persisted on the book, or `fallback` / defaults."""
    if book.generation_settings:
        return GenerationSettings.model_validate(book.generation_settings)
    return fallback or GenerationSettings()
