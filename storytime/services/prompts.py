from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from storytime.services.generation import StoryRequest

PROMPT_VERSION = "story_v2"

# уровень чтения -> (слов в истории, слов в предложении)
READING_LEVELS = {
    "k": ((50, 100), (3, 5)),
    "1": ((100, 200), (5, 7)),
    "2": ((200, 300), (7, 10)),
    "3": ((300, 400), (8, 12)),
    "4": ((400, 500), (10, 14)),
    "5": ((500, 600), (12, 15)),
    "teen": ((800, 1000), (15, 20)),
}

LENGTH_MULTIPLIERS = {"short": 0.7, "medium": 1.0, "long": 1.3}

# бюджет токенов ограничивает стоимость и время ответа
TOKEN_LIMITS = {"short": 300, "medium": 500, "long": 800}

INTEREST_TONES = {
    "elementary": "Keep the tone warm, simple and playful, with clear good-versus-silly conflicts and a cozy ending.",
    "middle-grade": "Use a sense of adventure and humor, relatable friendships and a little suspense, resolved hopefully.",
    "young-adult": "Allow more nuanced characters and emotions, a real challenge to overcome, and a thoughtful resolution.",
}

SYSTEM_PROMPT = """
You are a children's story writer.
Content must be completely safe and appropriate for children, with positive messages and educational value.
Create engaging characters, use descriptive but simple language, give the story a clear beginning, middle and end, and include dialogue.
Stop writing when you reach the target word count. Do not add word counts, metadata or notes after the story.
""".strip()

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def word_count_target(reading_level: str, length: str) -> tuple[int, int]:
    (lo, hi), _ = READING_LEVELS[reading_level]
    m = LENGTH_MULTIPLIERS.get(length, 1.0)
    return round(lo * m), round(hi * m)


def token_limit(length: str) -> int:
    return TOKEN_LIMITS.get(length, TOKEN_LIMITS["medium"])


def build_prompt(req: "StoryRequest") -> str:
    _, (s_lo, s_hi) = READING_LEVELS[req.reading_level]
    w_lo, w_hi = word_count_target(req.reading_level, req.length)

    lines = [
        "Create an engaging, age-appropriate children's story with these specifications:",
        f"- Reading level: {req.reading_level.upper()} grade",
        f"- Target word count: {w_lo}-{w_hi} words (aim for this exact range)",
        f"- Sentence length: {s_lo}-{s_hi} words per sentence",
        f"- Genre: {req.theme}",
        f"- Interest level: {req.interest_level}",
        f"- Length: {req.length}",
    ]
    tone = INTEREST_TONES.get(req.interest_level)
    if tone:
        lines.append(f"- Tone: {tone}")
    if req.has_theme_lesson and req.theme_lesson:
        lines.append(f"- Theme/lesson focus: {req.theme_lesson}")
    if req.use_sight_words and req.keywords:
        lines.append(f"- Naturally incorporate these sight words: {', '.join(req.keywords)}")
    if req.is_dr_seuss_style:
        lines.append("- Write with rhyming, repetitive patterns and playful language.")
    if req.language and req.language.lower() != "english":
        lines.append(f"- Write the story in {req.language}.")

    lines.append("")
    lines.append('Respond with a JSON object with "title" and "content" fields.')
    return "\n".join(lines)


def fallback_title(theme: str, playful: bool) -> str:
    theme_cap = theme[:1].upper() + theme[1:]
    prefix = "A Whimsical" if playful else "A"
    return f"{prefix} {theme_cap} Tale"


def parse_story(raw: str, theme: str, playful: bool) -> Optional[tuple[str, str]]:
    """
    JSON {title, content} (в том числе внутри ```json```) или обычный текст.
    Модель не всегда соблюдает формат: тогда весь текст это content, заголовок собираем сами.
    None -> пустой ответ.
    """
    text = (raw or "").strip()
    if not text:
        return None

    m = _FENCE_RE.match(text)
    candidate = m.group(1) if m else text
    try:
        data = json.loads(candidate)
    except ValueError:
        data = None

    if isinstance(data, dict):
        title = str(data.get("title") or "").strip()
        content = str(data.get("content") or "").strip()
        if content:
            return (title or fallback_title(theme, playful)), content

    return fallback_title(theme, playful), text
