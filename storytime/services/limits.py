# лимиты/премиум: чистые проверки без I/O

from datetime import date, datetime
from storytime.db.models import PremiumProfile, UserLimits

def needs_reset(limits: UserLimits, today: date) -> bool:
    return limits.last_reset_date != today

def remaining_today(limits: UserLimits, daily_limit: int, today: date) -> int:
    used = 0 if needs_reset(limits, today) else limits.daily_stories_used
    return max(daily_limit - used, 0)

def is_expiry_valid(expires_at: datetime | None, now: datetime) -> bool:
    return expires_at is None or expires_at > now

def is_promo_trial_active(p: PremiumProfile, now: datetime) -> bool:
    return p.premium_trial_expires_at is not None and p.premium_trial_expires_at > now

def is_premium_valid(p: PremiumProfile, now: datetime) -> bool:
    """Защитное чтение кэша: premium_active=True с истёкшим сроком не считается."""
    return p.premium_active and is_expiry_valid(p.premium_expires_at, now)

def cached_premium_source(p: PremiumProfile | None, now: datetime) -> str | None:
    """Источник премиума по кэшу профиля или None."""
    if p is None:
        return None
    if p.always_unlim:
        return "promo"
    if is_premium_valid(p, now):
        return p.premium_source
    if is_promo_trial_active(p, now):
        return "promo"
    return None
