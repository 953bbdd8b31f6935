from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from storytime.db.repository import Repository
from storytime.services.errors import UpstreamOracleError
from storytime.services.limits import cached_premium_source, is_premium_valid, is_promo_trial_active
from storytime.services.oracles import EntitlementOracle, OracleResult, SubscriptionOracle
from storytime.utils.optimistic import OptimisticUpdate
from storytime.utils.time import utcnow

logger = logging.getLogger(__name__)

PLATFORM_SOURCES = {"ios": "apple", "android": "google"}


@dataclass(frozen=True)
class PremiumDecision:
    active: bool
    source: str = "none"
    expires_at: Optional[datetime] = None
    # одна из систем не ответила, а вторая сказала "нет": решение не кэшируем
    degraded: bool = False
    entitlements: Optional[dict[str, Any]] = None
    stripe_customer_id: Optional[str] = None
    platform: Optional[str] = None


def merge_results(
    stripe_res: OracleResult | UpstreamOracleError,
    rc_res: OracleResult | UpstreamOracleError,
) -> PremiumDecision:
    """
    OR по двум системам, Stripe выигрывает при равенстве.
    Одна ошибка -> считаем её "нет" (fail closed), degraded=True, если итог неактивен.
    Две ошибки -> UpstreamOracleError.
    """
    stripe_ok = isinstance(stripe_res, OracleResult)
    rc_ok = isinstance(rc_res, OracleResult)
    if not stripe_ok and not rc_ok:
        raise UpstreamOracleError("stripe+revenuecat", f"{stripe_res.message}; {rc_res.message}")

    entitlements = rc_res.detail.get("entitlements") if rc_ok else None
    platform = rc_res.detail.get("platform") if rc_ok else None
    customer_id = stripe_res.detail.get("customer_id") if stripe_ok else None

    if stripe_ok and stripe_res.active:
        return PremiumDecision(
            active=True, source="stripe", expires_at=None,
            entitlements=entitlements, stripe_customer_id=customer_id, platform=platform,
        )
    if rc_ok and rc_res.active:
        return PremiumDecision(
            active=True,
            source=PLATFORM_SOURCES.get(platform or "", "revenuecat"),
            expires_at=rc_res.expires_at,
            entitlements=entitlements,
            stripe_customer_id=customer_id,
            platform=platform,
        )
    return PremiumDecision(
        active=False,
        degraded=not (stripe_ok and rc_ok),
        entitlements=entitlements,
        stripe_customer_id=customer_id,
        platform=platform,
    )


class EntitlementReconciler:
    def __init__(
        self,
        repo: Repository,
        subscriptions: SubscriptionOracle,
        entitlements: EntitlementOracle,
        cache_ttl: int = 300,
    ):
        self.repo = repo
        self.subscriptions = subscriptions
        self.entitlements = entitlements
        self.cache_ttl = timedelta(seconds=cache_ttl)
        self._pending: set[asyncio.Task] = set()

    async def _query_oracles(self, user_id: str) -> PremiumDecision:
        results = await asyncio.gather(
            self.subscriptions.check_active(user_id),
            self.entitlements.check_active(user_id),
            return_exceptions=True,
        )
        for name, res in zip(("stripe", "revenuecat"), results):
            if isinstance(res, UpstreamOracleError):
                logger.warning("Oracle %s failed for %s: %s", name, user_id, res.message)
            elif isinstance(res, BaseException):
                raise res
        return merge_results(*results)

    async def _store(self, user_id: str, d: PremiumDecision) -> None:
        await self.repo.upsert_premium(
            user_id,
            active=d.active,
            source=d.source,
            expires_at=d.expires_at,
            entitlements=d.entitlements,
            platform=d.platform,
            stripe_customer_id=d.stripe_customer_id,
        )

    async def _store_quietly(self, user_id: str, d: PremiumDecision) -> None:
        try:
            await self._store(user_id, d)
        except Exception:
            logger.exception("Failed to cache premium decision for %s", user_id)

    def _schedule_store(self, user_id: str, d: PremiumDecision) -> None:
        task = asyncio.create_task(self._store_quietly(user_id, d))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Дождаться фоновых записей кэша (на остановке приложения и в тестах)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def resolve_premium(self, user_id: str) -> PremiumDecision:
        """Живой запрос к Stripe и RevenueCat. Кэш профиля обновляется в фоне."""
        d = await self._query_oracles(user_id)
        logger.info(
            "Premium resolved for %s: active=%s source=%s degraded=%s",
            user_id, d.active, d.source, d.degraded,
        )
        if not d.degraded:
            self._schedule_store(user_id, d)
        return d

    async def cached_premium(self, user_id: str) -> PremiumDecision:
        """Дешёвое чтение кэша (для UI). Срок действия перепроверяется здесь же."""
        p = await self.repo.get_profile(user_id)
        source = cached_premium_source(p, utcnow())
        if source is None:
            return PremiumDecision(active=False)
        if p.always_unlim:
            expires_at = None
        elif source == "promo":
            expires_at = p.premium_trial_expires_at
        else:
            expires_at = p.premium_expires_at
        return PremiumDecision(active=True, source=source, expires_at=expires_at)

    async def premium_for_gate(self, user_id: str) -> PremiumDecision:
        """
        Решение для QuotaGate:
        always_unlim / промо-триал -> премиум без внешних запросов;
        свежий кэш (моложе cache_ttl) -> как есть;
        иначе живой запрос; если обе системы лежат, то последний кэш с валидным сроком, иначе ошибка.
        """
        now = utcnow()
        p = await self.repo.get_profile(user_id)

        if p is not None:
            if p.always_unlim or is_promo_trial_active(p, now):
                return PremiumDecision(active=True, source="promo")
            fresh = p.updated_at is not None and now - p.updated_at < self.cache_ttl
            if fresh:
                if is_premium_valid(p, now):
                    return PremiumDecision(active=True, source=p.premium_source, expires_at=p.premium_expires_at)
                return PremiumDecision(active=False)

        try:
            return await self.resolve_premium(user_id)
        except UpstreamOracleError:
            if p is not None and is_premium_valid(p, now):
                logger.warning("Both billing systems down, using stale premium cache for %s", user_id)
                return PremiumDecision(
                    active=True, source=p.premium_source, expires_at=p.premium_expires_at, degraded=True,
                )
            raise

    async def refresh(self, user_id: str) -> PremiumDecision:
        """Принудительное обновление кэша (логин, возврат в приложение, кнопка "восстановить")."""
        d = await self._query_oracles(user_id)
        if not d.degraded:
            await self._store(user_id, d)
        return d

    async def confirm_purchase(self, user_id: str, source: str) -> PremiumDecision:
        """
        Сразу после покупки: премиум выдаётся авансом, затем сверяется с биллингом.
        Не подтвердилось (или биллинг недоступен) -> профиль откатывается к снапшоту.
        """
        update = OptimisticUpdate(
            snapshot=lambda: self.repo.get_profile(user_id),
            apply=lambda: self.repo.upsert_premium(user_id, active=True, source=source, expires_at=None),
            restore=lambda prior: self.repo.restore_profile(user_id, prior),
        )
        async with update:
            d = await self._query_oracles(user_id)
            if d.active:
                await self._store(user_id, d)
                update.commit()
        if update.rolled_back:
            logger.warning("Purchase for %s not confirmed by billing, premium rolled back", user_id)
        return d
