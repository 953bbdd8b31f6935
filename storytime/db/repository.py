from __future__ import annotations

import json
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import date, datetime
from typing import Any, Optional

from storytime.db.models import PremiumProfile, PromoCode, UserLimits, WebhookEvent
from storytime.services.errors import StorageError, StorytimeError
from storytime.services.limits import needs_reset
from storytime.utils.time import now_ref, utcnow

LIMITS_COLUMNS = "user_id, daily_stories_used, last_reset_date, trial_started_at, trial_used"
# событие вебхука принято, но ещё не обработано до конца
WEBHOOK_PENDING = "pending"

PROFILE_COLUMNS = (
    "user_id, premium_active, premium_source, premium_expires_at, iap_entitlements, iap_platform, "
    "stripe_customer_id, always_unlim, influencer_code, premium_trial_expires_at, updated_at"
)


def _load_json(value: Any) -> dict:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


class Repository:
    """
    Хранилище лимитов и кэша премиума.

    Все изменения счётчика идут одним SQL-выражением (или одним шагом без await
    в fake-режиме), поэтому параллельные запросы одного пользователя не теряют
    и не удваивают инкременты.
    """

    def __init__(self, db, tz: str):
        self.db = db  # FakeDatabase или asyncpg.Pool
        self.tz = tz

    def _is_fake(self) -> bool:
        return hasattr(self.db, "user_limits") and hasattr(self.db, "profiles")

    @asynccontextmanager
    async def _conn(self):
        try:
            async with self.db.acquire() as conn:
                yield conn
        except StorytimeError:
            raise
        except Exception as e:
            raise StorageError(f"database unavailable: {e!r}") from e

    def _row_to_limits(self, row: Any) -> UserLimits:
        return UserLimits(
            user_id=row["user_id"],
            daily_stories_used=row["daily_stories_used"],
            last_reset_date=row["last_reset_date"],
            trial_started_at=row["trial_started_at"],
            trial_used=row["trial_used"],
        )

    def _row_to_profile(self, row: Any) -> PremiumProfile:
        return PremiumProfile(
            user_id=row["user_id"],
            premium_active=row["premium_active"],
            premium_source=row["premium_source"] or "none",
            premium_expires_at=row["premium_expires_at"],
            iap_entitlements=_load_json(row["iap_entitlements"]),
            iap_platform=row["iap_platform"],
            stripe_customer_id=row["stripe_customer_id"],
            always_unlim=row["always_unlim"],
            influencer_code=row["influencer_code"],
            premium_trial_expires_at=row["premium_trial_expires_at"],
            updated_at=row["updated_at"],
        )

    # -------------------- USER LIMITS --------------------

    async def get_or_create_limits(self, user_id: str, today: date | None = None) -> UserLimits:
        today = today or now_ref(self.tz).date()

        if self._is_fake():
            u = self.db.user_limits.get(user_id)
            if u is None:
                u = UserLimits(
                    user_id=user_id,
                    daily_stories_used=0,
                    last_reset_date=today,
                    trial_started_at=utcnow(),
                    trial_used=False,
                )
                self.db.user_limits[user_id] = u
            return replace(u)

        async with self._conn() as conn:
            row = await conn.fetchrow(
                f"SELECT {LIMITS_COLUMNS} FROM get_or_create_user_limits($1, $2)",
                user_id,
                today,
            )
            if row is None:
                raise StorageError(f"get_or_create_user_limits returned nothing for {user_id}")
            return self._row_to_limits(row)

    async def reset_limits_if_new_day(self, limits: UserLimits, today: date | None = None) -> UserLimits:
        today = today or now_ref(self.tz).date()
        if not needs_reset(limits, today):
            return limits

        if self._is_fake():
            u = self.db.user_limits.get(limits.user_id)
            if u is None:
                raise StorageError(f"user limits not found for {limits.user_id}")
            # дата только растёт: запрос со "вчерашним" today не откатит счётчик назад
            if u.last_reset_date is None or u.last_reset_date < today:
                u.daily_stories_used = 0
                u.last_reset_date = today
            return replace(u)

        async with self._conn() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE user_limits
                SET daily_stories_used=0,
                    last_reset_date=$2,
                    updated_at=NOW()
                WHERE user_id=$1 AND last_reset_date < $2
                RETURNING {LIMITS_COLUMNS}
                """,
                limits.user_id,
                today,
            )
            if row is None:
                # уже сбросил параллельный запрос
                row = await conn.fetchrow(
                    f"SELECT {LIMITS_COLUMNS} FROM user_limits WHERE user_id=$1",
                    limits.user_id,
                )
            if row is None:
                raise StorageError(f"user limits not found for {limits.user_id}")
            return self._row_to_limits(row)

    async def increment_daily_stories(self, user_id: str, day: date, limit: int) -> Optional[UserLimits]:
        """
        Проверка и инкремент одним шагом.
        None -> лимит на этот день уже выбран (или день сменился между шагами).
        """
        if self._is_fake():
            u = self.db.user_limits.get(user_id)
            if u is None:
                raise StorageError(f"user limits not found for {user_id}")
            if u.last_reset_date != day or u.daily_stories_used >= limit:
                return None
            u.daily_stories_used += 1
            return replace(u)

        async with self._conn() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE user_limits
                SET daily_stories_used = daily_stories_used + 1,
                    updated_at=NOW()
                WHERE user_id=$1
                  AND last_reset_date=$2
                  AND daily_stories_used < $3
                RETURNING {LIMITS_COLUMNS}
                """,
                user_id,
                day,
                limit,
            )
            return self._row_to_limits(row) if row else None

    # -------------------- PREMIUM PROFILE (кэш) --------------------

    async def get_profile(self, user_id: str) -> PremiumProfile | None:
        if self._is_fake():
            p = self.db.profiles.get(user_id)
            return replace(p, iap_entitlements=dict(p.iap_entitlements)) if p else None

        async with self._conn() as conn:
            row = await conn.fetchrow(
                f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE user_id=$1",
                user_id,
            )
            return self._row_to_profile(row) if row else None

    async def upsert_premium(
        self,
        user_id: str,
        *,
        active: bool,
        source: str,
        expires_at: datetime | None,
        entitlements: dict[str, Any] | None = None,
        platform: str | None = None,
        stripe_customer_id: str | None = None,
    ) -> PremiumProfile:
        """
        Пишет только премиум-поля. always_unlim и промо-триал не трогаем.
        active=True с прошедшим сроком не записывается никогда.
        """
        now = utcnow()
        if active and expires_at is not None and expires_at <= now:
            active = False
        if not active:
            source = "none"

        if self._is_fake():
            p = self.db.profiles.get(user_id) or PremiumProfile(user_id=user_id)
            p.premium_active = active
            p.premium_source = source
            p.premium_expires_at = expires_at
            if entitlements is not None:
                p.iap_entitlements = dict(entitlements)
            if platform is not None:
                p.iap_platform = platform
            if stripe_customer_id is not None:
                p.stripe_customer_id = stripe_customer_id
            p.updated_at = now
            self.db.profiles[user_id] = p
            return replace(p, iap_entitlements=dict(p.iap_entitlements))

        async with self._conn() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO profiles
                    (user_id, premium_active, premium_source, premium_expires_at,
                     iap_entitlements, iap_platform, stripe_customer_id, updated_at)
                VALUES ($1, $2, $3, $4, COALESCE($5::jsonb, '{{}}'::jsonb), $6, $7, $8)
                ON CONFLICT (user_id) DO UPDATE
                SET premium_active=EXCLUDED.premium_active,
                    premium_source=EXCLUDED.premium_source,
                    premium_expires_at=EXCLUDED.premium_expires_at,
                    iap_entitlements=COALESCE($5::jsonb, profiles.iap_entitlements),
                    iap_platform=COALESCE(EXCLUDED.iap_platform, profiles.iap_platform),
                    stripe_customer_id=COALESCE(EXCLUDED.stripe_customer_id, profiles.stripe_customer_id),
                    updated_at=EXCLUDED.updated_at
                RETURNING {PROFILE_COLUMNS}
                """,
                user_id,
                active,
                source,
                expires_at,
                json.dumps(entitlements, ensure_ascii=False) if entitlements is not None else None,
                platform,
                stripe_customer_id,
                now,
            )
            return self._row_to_profile(row)

    async def restore_profile(self, user_id: str, snapshot: PremiumProfile | None) -> None:
        """Откат к снапшоту (None -> профиля не было)."""
        if snapshot is None:
            await self.upsert_premium(user_id, active=False, source="none", expires_at=None)
            return
        await self.upsert_premium(
            user_id,
            active=snapshot.premium_active,
            source=snapshot.premium_source,
            expires_at=snapshot.premium_expires_at,
            entitlements=snapshot.iap_entitlements,
        )

    async def find_user_by_stripe_customer(self, customer_id: str) -> str | None:
        if self._is_fake():
            for p in self.db.profiles.values():
                if p.stripe_customer_id == customer_id:
                    return p.user_id
            return None

        async with self._conn() as conn:
            return await conn.fetchval(
                "SELECT user_id FROM profiles WHERE stripe_customer_id=$1 LIMIT 1",
                customer_id,
            )

    async def expire_stale_premium(self) -> int:
        """Снимает premium_active/промо-триал с истёкших профилей. Возвращает число затронутых строк."""
        now = utcnow()

        if self._is_fake():
            n = 0
            for p in self.db.profiles.values():
                touched = False
                if p.premium_active and p.premium_expires_at is not None and p.premium_expires_at <= now:
                    p.premium_active = False
                    p.premium_source = "none"
                    touched = True
                if p.premium_trial_expires_at is not None and p.premium_trial_expires_at <= now:
                    p.premium_trial_expires_at = None
                    touched = True
                if touched:
                    p.updated_at = now
                    n += 1
            return n

        async with self._conn() as conn:
            async with conn.transaction():
                a = await conn.fetchval(
                    """
                    WITH upd AS (
                        UPDATE profiles
                        SET premium_active=FALSE,
                            premium_source='none',
                            updated_at=$1
                        WHERE premium_active AND premium_expires_at IS NOT NULL AND premium_expires_at <= $1
                        RETURNING 1
                    )
                    SELECT COUNT(*) FROM upd
                    """,
                    now,
                )
                b = await conn.fetchval(
                    """
                    WITH upd AS (
                        UPDATE profiles
                        SET premium_trial_expires_at=NULL,
                            updated_at=$1
                        WHERE premium_trial_expires_at IS NOT NULL AND premium_trial_expires_at <= $1
                        RETURNING 1
                    )
                    SELECT COUNT(*) FROM upd
                    """,
                    now,
                )
                return int(a or 0) + int(b or 0)

    # -------------------- PROMO CODES --------------------

    async def apply_promo_code(self, user_id: str, code: str, expires_at: datetime) -> PromoCode | None:
        """Активный код -> промо-триал до expires_at. Неизвестный/выключенный код -> None."""
        code = code.strip().upper()

        if self._is_fake():
            pc = self.db.promo_codes.get(code)
            if pc is None or not pc.is_active:
                return None
            p = self.db.profiles.setdefault(user_id, PremiumProfile(user_id=user_id))
            p.influencer_code = pc.influencer_code
            p.premium_trial_expires_at = expires_at
            p.updated_at = utcnow()
            return pc

        async with self._conn() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT influencer_code, influencer_name, is_active
                    FROM premium_codes
                    WHERE influencer_code=$1 AND is_active
                    """,
                    code,
                )
                if row is None:
                    return None
                await conn.execute(
                    """
                    INSERT INTO profiles (user_id, influencer_code, premium_trial_expires_at, updated_at)
                    VALUES ($1, $2, $3, NOW())
                    ON CONFLICT (user_id) DO UPDATE
                    SET influencer_code=EXCLUDED.influencer_code,
                        premium_trial_expires_at=EXCLUDED.premium_trial_expires_at,
                        updated_at=NOW()
                    """,
                    user_id,
                    row["influencer_code"],
                    expires_at,
                )
                return PromoCode(
                    influencer_code=row["influencer_code"],
                    influencer_name=row["influencer_name"],
                    is_active=row["is_active"],
                )

    # -------------------- WEBHOOK LOG --------------------

    async def record_webhook_event(self, event: WebhookEvent) -> bool:
        """
        False -> событие с таким event_id уже успешно обработано.
        Упавшие и незавершённые (pending) события можно повторить.
        Запись создаётся в статусе pending, успех фиксирует mark_webhook_processed.
        """
        if self._is_fake():
            for e in self.db.webhook_events:
                if e.event_id == event.event_id:
                    if e.error is None:
                        return False
                    e.error = WEBHOOK_PENDING
                    e.processed_at = event.processed_at
                    return True
            self.db.webhook_events.append(replace(event, error=WEBHOOK_PENDING))
            return True

        async with self._conn() as conn:
            # ON CONFLICT, чтобы повторная доставка вебхука не обработалась дважды
            inserted = await conn.fetchval(
                """
                INSERT INTO webhook_events (event_id, provider, event_type, user_id, processed_at, error, raw_event)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                ON CONFLICT (event_id) DO UPDATE
                SET error=EXCLUDED.error,
                    processed_at=EXCLUDED.processed_at
                WHERE webhook_events.error IS NOT NULL
                RETURNING 1
                """,
                event.event_id,
                event.provider,
                event.event_type,
                event.user_id,
                event.processed_at,
                WEBHOOK_PENDING,
                json.dumps(event.raw_event, ensure_ascii=False),
            )
            return bool(inserted)

    async def mark_webhook_processed(self, event_id: str) -> None:
        if self._is_fake():
            for e in self.db.webhook_events:
                if e.event_id == event_id:
                    e.error = None
            return

        async with self._conn() as conn:
            await conn.execute("UPDATE webhook_events SET error=NULL WHERE event_id=$1", event_id)

    async def mark_webhook_error(self, event_id: str, error: str) -> None:
        if self._is_fake():
            for e in self.db.webhook_events:
                if e.event_id == event_id:
                    e.error = error
            return

        async with self._conn() as conn:
            await conn.execute("UPDATE webhook_events SET error=$2 WHERE event_id=$1", event_id, error)

    # -------------------- ACCOUNT --------------------

    async def delete_user(self, user_id: str) -> None:
        """
        Удаляет лимиты и профиль пользователя.
        """
        if self._is_fake():
            self.db.user_limits.pop(user_id, None)
            self.db.profiles.pop(user_id, None)
            return

        async with self._conn() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM user_limits WHERE user_id=$1", user_id)
                await conn.execute("DELETE FROM profiles WHERE user_id=$1", user_id)
