from typing import List, Optional

from pydantic import BaseModel

from storytime.services.generation import StoryRequest


class GenerateStoryBody(BaseModel):
    # все поля необязательные: отсутствие поля это 400 с именем поля, а не 422
    readingLevel: Optional[str] = None
    interestLevel: Optional[str] = None
    theme: Optional[str] = None
    themeLesson: Optional[str] = None
    hasThemeLesson: bool = False
    length: Optional[str] = None
    language: Optional[str] = None
    isDrSeussStyle: bool = False
    useSightWords: bool = False
    keywords: List[str] = []

    def to_request(self, user_id: str) -> StoryRequest:
        return StoryRequest(
            user_id=user_id,
            reading_level=(self.readingLevel or "").strip().lower(),
            interest_level=(self.interestLevel or "").strip(),
            theme=(self.theme or "").strip(),
            length=(self.length or "").strip().lower(),
            language=(self.language or "").strip(),
            theme_lesson=self.themeLesson,
            has_theme_lesson=self.hasThemeLesson,
            is_dr_seuss_style=self.isDrSeussStyle,
            use_sight_words=self.useSightWords,
            keywords=[k.strip() for k in self.keywords if k and k.strip()],
        )


class StoryResponse(BaseModel):
    title: str
    content: str


class CheckSubscriptionBody(BaseModel):
    userId: Optional[str] = None


class ConfirmPurchaseBody(BaseModel):
    source: str = "revenuecat"


class PromoCodeBody(BaseModel):
    code: Optional[str] = None
