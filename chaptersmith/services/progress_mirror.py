"""
Client progress mirror.

An immutable local view of server-side generation progress. It is rebuilt
from `GET /books/{id}/status` on load and advanced by stream events; it is
never the source of truth.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Mapping, Optional, Union

from chaptersmith.schemas.book import BookStatusResponse
from chaptersmith.services.stream_orchestrator import StreamEvent


class Phase(str, Enum):
    IDLE = "idle"
    DEDUCTING_CREDITS = "deducting_credits"
    PLANNING = "planning"
    OUTLINING = "outlining"
    GENERATING_SECTIONS = "generating_sections"
    COMPLETED = "completed"
    ERROR = "error"


_PROGRESS_PHASES = {"plan": Phase.PLANNING, "outline": Phase.OUTLINING}


@dataclass(frozen=True)
class MirroredChapter:
    chapter_number: int
    title: str
    content: str


@dataclass(frozen=True)
class ProgressMirror:
    phase: Phase = Phase.IDLE
    total_chapters: int = 0
    current_chapter: Optional[int] = None
    current_chapter_title: str = ""
    current_section: Optional[int] = None
    total_sections: int = 0
    completed_chapters: tuple[MirroredChapter, ...] = ()
    chapter_buffer: str = ""
    awaiting_chapter_decision: bool = False
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def content(self) -> str:
        return "\n\n".join(c.content for c in self.completed_chapters)

    @classmethod
    def from_status(cls, status: Union[BookStatusResponse, Mapping[str, Any]]) -> "ProgressMirror":
        """Rebuild the mirror from a status payload (model or camelCase dict)."""
        if not isinstance(status, BookStatusResponse):
            status = BookStatusResponse.model_validate(status)

        completed = tuple(
            MirroredChapter(c.chapter_number, c.title, c.content)
            for c in status.chapters
            if c.status == "completed" and c.content is not None
        )
        total = status.total_chapters or len(status.chapters)

        if status.status == "completed":
            return cls(phase=Phase.COMPLETED, total_chapters=total, completed_chapters=completed)
        if status.status == "failed":
            return cls(
                phase=Phase.ERROR,
                total_chapters=total,
                completed_chapters=completed,
                error=status.error or "Generation failed",
            )
        if status.status == "generating":
            next_chapter = len(completed) + 1 if len(completed) < total else None
            return cls(
                phase=Phase.GENERATING_SECTIONS,
                total_chapters=total,
                current_chapter=next_chapter,
                completed_chapters=completed,
            )
        return cls(total_chapters=total, completed_chapters=completed)

    def start(self, total_chapters: int) -> "ProgressMirror":
        return ProgressMirror(
            phase=Phase.DEDUCTING_CREDITS,
            total_chapters=total_chapters,
            current_chapter=1,
        )

    def apply_event(self, event: StreamEvent) -> "ProgressMirror":
        data = event.data
        kind = event.type

        if kind == "progress":
            phase = _PROGRESS_PHASES.get(data.get("phase"), self.phase)
            return replace(self, phase=phase, error=None)

        if kind == "chapter_start":
            return replace(
                self,
                phase=Phase.GENERATING_SECTIONS,
                current_chapter=data["chapterNumber"],
                current_chapter_title=data.get("title", ""),
                total_sections=data.get("totalSections", 0),
                current_section=None,
                chapter_buffer="",
            )

        if kind == "section_start":
            return replace(self, current_section=data["sectionIndex"])

        if kind == "chunk":
            return replace(self, chapter_buffer=self.chapter_buffer + data.get("content", ""))

        if kind == "section_complete":
            return replace(self, chapter_buffer=self.chapter_buffer + "\n\n")

        if kind == "chapter_complete":
            number = data["chapterNumber"]
            kept = tuple(c for c in self.completed_chapters if c.chapter_number != number)
            chapter = MirroredChapter(number, self.current_chapter_title, data.get("content", ""))
            return replace(
                self,
                completed_chapters=tuple(sorted(kept + (chapter,), key=lambda c: c.chapter_number)),
                current_chapter=None,
                current_section=None,
                chapter_buffer="",
            )

        if kind == "book_complete":
            return replace(
                self,
                phase=Phase.COMPLETED,
                current_chapter=None,
                current_section=None,
                awaiting_chapter_decision=False,
            )

        if kind == "error":
            return self.fail(data.get("message", "Unknown error"))

        return self

    def request_chapter_decision(self) -> "ProgressMirror":
        """Pause after a chapter until the user confirms or cancels."""
        return replace(self, awaiting_chapter_decision=True)

    def confirm_chapter(self) -> "ProgressMirror":
        return replace(self, awaiting_chapter_decision=False)

    def cancel(self) -> "ProgressMirror":
        return replace(
            self,
            awaiting_chapter_decision=False,
            current_chapter=None,
            current_section=None,
            chapter_buffer="",
            cancelled=True,
        )

    def fail(self, message: str) -> "ProgressMirror":
        return replace(
            self,
            phase=Phase.ERROR,
            error=message,
            awaiting_chapter_decision=False,
            current_chapter=None,
        )
