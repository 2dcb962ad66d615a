"""
Content generator: the opaque capability behind every pipeline stage.

`ContentGenerator` is the seam both execution modes depend on. The default
implementation calls an LLM through `chaptersmith.services.llm`; tests inject
a deterministic stub.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from chaptersmith.schemas.generation import (
    ChapterOutline,
    GenerationSettings,
    PlanOutput,
    SectionOutline,
    TocOutput,
)
from chaptersmith.services import prompts
from chaptersmith.services.llm import BaseLLMClient, get_llm_client

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


class MalformedOutputError(ValueError):
    """The generator returned output that does not match the expected schema."""


class ContentGenerator(ABC):
    """Prompt-shaped inputs in, structured objects or text chunks out."""

    @abstractmethod
    async def generate_toc(self, source_text: str, settings: GenerationSettings) -> TocOutput:
        ...

    @abstractmethod
    async def generate_plan(
        self, source_text: str, toc: list[str], settings: GenerationSettings
    ) -> PlanOutput:
        ...

    @abstractmethod
    async def generate_outline(
        self,
        *,
        toc: list[str],
        chapter_title: str,
        chapter_number: int,
        source_text: str,
        plan: PlanOutput,
        settings: GenerationSettings,
    ) -> ChapterOutline:
        ...

    @abstractmethod
    def stream_section(
        self,
        *,
        chapter_number: int,
        chapter_title: str,
        outline: ChapterOutline,
        section_index: int,
        previous_sections: list[SectionOutline],
        plan: PlanOutput,
        settings: GenerationSettings,
    ) -> AsyncIterator[str]:
        """Yield the section text as incremental chunks."""


ContentGeneratorFactory = Callable[[GenerationSettings], ContentGenerator]


def parse_structured(text: str, schema: Type[T]) -> T:
    """
    Validate JSON returned by a model.

    Falls back to the outermost `{...}` span when the model wrapped the object
    in prose or code fences.
    """
    cleaned = _FENCE_RE.sub("", text.strip())
    try:
        return schema.model_validate_json(cleaned)
    except PydanticValidationError:
        pass

    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        raise MalformedOutputError(f"No JSON object found for {schema.__name__}")
    try:
        return schema.model_validate(json.loads(cleaned[start : end + 1]))
    except (json.JSONDecodeError, PydanticValidationError) as e:
        raise MalformedOutputError(f"Invalid {schema.__name__} output: {e}") from e


class LLMContentGenerator(ContentGenerator):
    """Content generator backed by an Anthropic or OpenAI model."""

    def __init__(self, client: BaseLLMClient):
        self.client = client

    async def _structured(self, prompt: str, schema: Type[T]) -> T:
        response = await self.client.generate(
            prompt, system_prompt=prompts.SYSTEM_PROMPT, temperature=0.4
        )
        logger.debug(
            f"[LLM] {schema.__name__}: {response.total_tokens} tokens, "
            f"${response.estimated_cost:.4f}"
        )
        return parse_structured(response.content, schema)

    async def generate_toc(self, source_text, settings):
        toc = await self._structured(prompts.toc_prompt(source_text, settings), TocOutput)
        toc.chapters = [c.strip() for c in toc.chapters if c and c.strip()]
        return toc

    async def generate_plan(self, source_text, toc, settings):
        return await self._structured(
            prompts.plan_prompt(source_text, toc, settings), PlanOutput
        )

    async def generate_outline(
        self, *, toc, chapter_title, chapter_number, source_text, plan, settings
    ):
        outline = await self._structured(
            prompts.outline_prompt(toc, chapter_title, chapter_number, source_text, plan, settings),
            ChapterOutline,
        )
        outline.chapter_number = chapter_number
        outline.chapter_title = chapter_title
        return outline

    async def stream_section(
        self,
        *,
        chapter_number,
        chapter_title,
        outline,
        section_index,
        previous_sections,
        plan,
        settings,
    ):
        prompt = prompts.section_prompt(
            chapter_number, chapter_title, outline, section_index, previous_sections, plan, settings
        )
        async for chunk in self.client.generate_stream(
            prompt, system_prompt=prompts.SYSTEM_PROMPT
        ):
            yield chunk


def get_content_generator(settings: GenerationSettings) -> ContentGenerator:
    """Default factory: an LLM-backed generator for the requested provider/model."""
    return LLMContentGenerator(get_llm_client(settings.provider.value, settings.model))
