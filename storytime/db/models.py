# "структуры таблиц" (dataclass)

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

PREMIUM_SOURCES = ("none", "stripe", "apple", "google", "revenuecat", "promo")

@dataclass
class UserLimits:
    user_id: str

    # сколько историй сгенерировано за last_reset_date (валидно только для этого дня)
    daily_stories_used: int = 0
    last_reset_date: Optional[date] = None

    # триал: создаётся один раз, не сбрасывается
    trial_started_at: Optional[datetime] = None
    trial_used: bool = False

@dataclass
class PremiumProfile:
    """Кэш объединённого решения по премиуму. Не источник истины."""
    user_id: str
    premium_active: bool = False
    premium_source: str = "none"
    premium_expires_at: Optional[datetime] = None  # None = бессрочно
    iap_entitlements: dict[str, Any] = field(default_factory=dict)  # сырой снапшот, только для аудита
    iap_platform: Optional[str] = None
    stripe_customer_id: Optional[str] = None

    # выставляется только сервисом
    always_unlim: bool = False

    # промокод инфлюенсера
    influencer_code: Optional[str] = None
    premium_trial_expires_at: Optional[datetime] = None

    updated_at: Optional[datetime] = None

@dataclass
class PromoCode:
    influencer_code: str
    influencer_name: str
    is_active: bool = True

@dataclass
class WebhookEvent:
    event_id: str
    provider: str             # stripe / revenuecat
    event_type: str
    processed_at: datetime
    user_id: Optional[str] = None
    error: Optional[str] = None
    raw_event: dict[str, Any] = field(default_factory=dict)
