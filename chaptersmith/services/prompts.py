"""
Prompt builders for each pipeline stage.

Structured stages ask for a single JSON object matching the schemas in
`chaptersmith.schemas.generation`.
"""

import json

from chaptersmith.schemas.generation import ChapterOutline, GenerationSettings, PlanOutput, SectionOutline

SYSTEM_PROMPT = (
    "You are an experienced non-fiction editor and ghostwriter. "
    "You turn raw source material into well-structured books."
)

JSON_ONLY = "Respond with a single JSON object and nothing else."

# Source text beyond this many characters is truncated in prompts.
MAX_SOURCE_CHARS = 60000


def _language_line(settings: GenerationSettings) -> str:
    if settings.language == "Auto":
        return "Write in the same language as the source text."
    return f"Write in {settings.language}."


def _preference_line(settings: GenerationSettings) -> str:
    if not settings.user_preference:
        return ""
    return f"\nAuthor preferences: {settings.user_preference}\n"


def _source(source_text: str) -> str:
    return source_text[:MAX_SOURCE_CHARS]


def toc_prompt(source_text: str, settings: GenerationSettings) -> str:
    return (
        "Read the source material below and propose a book title and an ordered "
        "list of chapter titles that covers it without overlap.\n"
        f"{_language_line(settings)}{_preference_line(settings)}\n"
        f'{JSON_ONLY} Shape: {{"title": str, "chapters": [str, ...]}}\n\n'
        f"<source>\n{_source(source_text)}\n</source>"
    )


def plan_prompt(source_text: str, toc: list[str], settings: GenerationSettings) -> str:
    chapters = "\n".join(f"{i}. {title}" for i, title in enumerate(toc, start=1))
    return (
        "Design a writing plan for the book whose chapters are listed below. "
        "Define the target audience, the writing style, the key themes, and "
        "per-chapter guidelines with continuity notes.\n"
        f"{_language_line(settings)}{_preference_line(settings)}\n"
        f"{JSON_ONLY} Shape: {{\"targetAudience\": str, \"writingStyle\": str, "
        "\"keyThemes\": [str], \"chapterGuidelines\": [{\"chapterIndex\": int, "
        "\"title\": str, \"guidelines\": str, \"continuity\": {\"fromPrevious\": str, "
        "\"toNext\": str, \"recurringElements\": [str], \"avoidOverlapWith\": [int]}}]}\n\n"
        f"<chapters>\n{chapters}\n</chapters>\n\n"
        f"<source>\n{_source(source_text)}\n</source>"
    )


def outline_prompt(
    toc: list[str],
    chapter_title: str,
    chapter_number: int,
    source_text: str,
    plan: PlanOutput,
    settings: GenerationSettings,
) -> str:
    chapters = "\n".join(f"{i}. {title}" for i, title in enumerate(toc, start=1))
    return (
        f"Outline chapter {chapter_number} (\"{chapter_title}\") as an ordered list "
        "of sections, each with a title and a short summary of what it covers.\n"
        f"{_language_line(settings)}{_preference_line(settings)}\n"
        f"{JSON_ONLY} Shape: {{\"sections\": [{{\"title\": str, \"summary\": str}}]}}\n\n"
        f"<plan>\n{plan.model_dump_json(by_alias=True)}\n</plan>\n\n"
        f"<chapters>\n{chapters}\n</chapters>\n\n"
        f"<source>\n{_source(source_text)}\n</source>"
    )


def section_prompt(
    chapter_number: int,
    chapter_title: str,
    outline: ChapterOutline,
    section_index: int,
    previous_sections: list[SectionOutline],
    plan: PlanOutput,
    settings: GenerationSettings,
) -> str:
    section = outline.sections[section_index]
    sections = json.dumps([s.model_dump() for s in outline.sections], ensure_ascii=False)
    previous = json.dumps([s.model_dump() for s in previous_sections], ensure_ascii=False)
    return (
        f"Write section {section_index + 1} (\"{section.title}\") of chapter "
        f"{chapter_number} (\"{chapter_title}\") in markdown, starting with a "
        f"'### {section.title}' heading. Cover: {section.summary}\n"
        "Do not repeat what earlier sections already covered.\n"
        f"{_language_line(settings)}{_preference_line(settings)}\n"
        f"<plan>\n{plan.model_dump_json(by_alias=True)}\n</plan>\n\n"
        f"<chapter_outline>\n{sections}\n</chapter_outline>\n\n"
        f"<previous_sections>\n{previous}\n</previous_sections>"
    )
