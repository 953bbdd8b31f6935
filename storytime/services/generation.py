from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from openai import OpenAIError

from storytime.services.errors import GenerationError, ValidationError
from storytime.services.prompts import READING_LEVELS, build_prompt, parse_story, token_limit
from storytime.services.quota import QuotaGate, REASON_NOT_AUTHENTICATED

logger = logging.getLogger(__name__)

LIMIT_REACHED = "LIMIT_REACHED"
GENERATION_FAILED = "GENERATION_FAILED"
NOT_AUTHENTICATED = "NOT_AUTHENTICATED"

# (атрибут, имя поля в API): проверяются в этом порядке
REQUIRED_FIELDS = (
    ("reading_level", "readingLevel"),
    ("interest_level", "interestLevel"),
    ("theme", "theme"),
    ("length", "length"),
    ("language", "language"),
)


@dataclass
class StoryRequest:
    user_id: Optional[str]
    reading_level: str = ""
    interest_level: str = ""
    theme: str = ""
    length: str = ""
    language: str = ""
    theme_lesson: Optional[str] = None
    has_theme_lesson: bool = False
    is_dr_seuss_style: bool = False
    use_sight_words: bool = False
    keywords: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Story:
    title: str
    content: str


@dataclass(frozen=True)
class Rejection:
    code: str
    message: str = ""


def validate_request(req: StoryRequest) -> None:
    for attr, name in REQUIRED_FIELDS:
        if not getattr(req, attr):
            raise ValidationError(name)
    if req.reading_level not in READING_LEVELS:
        raise ValidationError("readingLevel", f"Unsupported reading level: {req.reading_level}")


class GenerationOrchestrator:
    """validate -> quota -> prompt -> LLM -> parse."""

    def __init__(self, gate: QuotaGate, llm, *, timeout: float = 60.0):
        self.gate = gate
        self.llm = llm  # что угодно с async generate_text(prompt, max_tokens=...)
        self.timeout = timeout

    async def generate(self, req: StoryRequest) -> Union[Story, Rejection]:
        validate_request(req)

        decision = await self.gate.check_and_consume(req.user_id)
        if not decision.can_generate:
            if decision.reason == REASON_NOT_AUTHENTICATED:
                return Rejection(NOT_AUTHENTICATED, "Authorization required")
            return Rejection(
                LIMIT_REACHED,
                "Daily story limit reached. Upgrade to premium for unlimited stories or wait until tomorrow.",
            )

        prompt = build_prompt(req)
        max_tokens = token_limit(req.length)
        logger.info(
            "Generating story for %s: level=%s interest=%s theme=%s length=%s sight_words=%s",
            req.user_id, req.reading_level, req.interest_level, req.theme, req.length, len(req.keywords),
        )

        # квота уже списана и при ошибке не возвращается
        try:
            raw = await asyncio.wait_for(
                self.llm.generate_text(prompt, max_tokens=max_tokens),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Story generation timed out for %s after %ss", req.user_id, self.timeout)
            return Rejection(GENERATION_FAILED, "Story generation timed out")
        except (OpenAIError, GenerationError) as e:
            logger.warning("Story generation failed for %s: %r", req.user_id, e)
            return Rejection(GENERATION_FAILED, "Failed to generate story")

        parsed = parse_story(raw, req.theme, req.is_dr_seuss_style)
        if parsed is None:
            logger.warning("Empty story content for %s", req.user_id)
            return Rejection(GENERATION_FAILED, "Failed to generate story")

        title, content = parsed
        return Story(title=title, content=content)
