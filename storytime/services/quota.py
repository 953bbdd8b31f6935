from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from storytime.db.models import UserLimits
from storytime.db.repository import Repository
from storytime.services.entitlements import EntitlementReconciler
from storytime.services.errors import UpstreamOracleError
from storytime.services.limits import remaining_today
from storytime.utils.time import today_ref

logger = logging.getLogger(__name__)

DAILY_LIMIT = 1

REASON_DAILY_LIMIT = "DAILY_LIMIT"
REASON_NOT_AUTHENTICATED = "NOT_AUTHENTICATED"


@dataclass(frozen=True)
class QuotaDecision:
    can_generate: bool
    reason: Optional[str] = None
    remaining: Optional[int] = None  # None -> без лимита (премиум)


@dataclass(frozen=True)
class UsageSnapshot:
    limits: UserLimits
    remaining: Optional[int]
    premium: bool
    premium_source: str


class QuotaGate:
    """
    Решение "можно ли сгенерировать ещё одну историю".

    Порядок: премиум -> get-or-create -> сброс на новый день -> условный инкремент.
    Проверка лимита и инкремент: одна операция хранилища, поэтому
    N параллельных запросов одного free-пользователя засчитают не больше daily_limit.
    """

    def __init__(
        self,
        repo: Repository,
        reconciler: EntitlementReconciler,
        *,
        tz: str,
        daily_limit: int = DAILY_LIMIT,
        bypass: bool = False,
    ):
        self.repo = repo
        self.reconciler = reconciler
        self.tz = tz
        self.daily_limit = daily_limit
        self.bypass = bypass

    async def check_and_consume(self, user_id: str | None) -> QuotaDecision:
        if not user_id:
            return QuotaDecision(can_generate=False, reason=REASON_NOT_AUTHENTICATED)

        if self.bypass:
            logger.warning("BYPASS_LIMITS is on: skipping quota for %s", user_id)
            return QuotaDecision(can_generate=True)

        try:
            premium = await self.reconciler.premium_for_gate(user_id)
        except UpstreamOracleError as e:
            # биллинг недоступен целиком: считаем пользователя free, а не блокируем генерацию
            logger.warning("Billing unavailable for %s, applying free tier: %s", user_id, e.message)
            premium = None
        if premium is not None and premium.active:
            return QuotaDecision(can_generate=True)

        today = today_ref(self.tz)
        limits = await self.repo.get_or_create_limits(user_id, today)
        limits = await self.repo.reset_limits_if_new_day(limits, today)

        if limits.daily_stories_used >= self.daily_limit:
            logger.info("Daily limit reached for %s (%s/%s)", user_id, limits.daily_stories_used, self.daily_limit)
            return QuotaDecision(can_generate=False, reason=REASON_DAILY_LIMIT, remaining=0)

        updated = await self.repo.increment_daily_stories(user_id, today, self.daily_limit)
        if updated is None:
            # параллельный запрос успел выбрать лимит между чтением и инкрементом
            logger.info("Lost quota race for %s", user_id)
            return QuotaDecision(can_generate=False, reason=REASON_DAILY_LIMIT, remaining=0)

        return QuotaDecision(
            can_generate=True,
            remaining=max(self.daily_limit - updated.daily_stories_used, 0),
        )

    async def usage(self, user_id: str) -> UsageSnapshot:
        """Только чтение для UI: ничего не списывает."""
        today = today_ref(self.tz)
        limits = await self.repo.get_or_create_limits(user_id, today)
        limits = await self.repo.reset_limits_if_new_day(limits, today)
        premium = await self.reconciler.cached_premium(user_id)
        return UsageSnapshot(
            limits=limits,
            remaining=None if premium.active else remaining_today(limits, self.daily_limit, today),
            premium=premium.active,
            premium_source=premium.source,
        )
