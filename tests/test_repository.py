import asyncio
from datetime import timedelta

from storytime.db.models import PremiumProfile, PromoCode, UserLimits, WebhookEvent
from storytime.db.repository import WEBHOOK_PENDING
from storytime.utils.time import today_ref, utcnow
from tests.conftest import TZ, run


def test_get_or_create_is_idempotent(repo, db):
    async def scenario():
        return await asyncio.gather(*[repo.get_or_create_limits("u1") for _ in range(5)])

    rows = run(scenario())
    assert len(db.user_limits) == 1
    assert all(r.daily_stories_used == 0 for r in rows)
    assert all(r.last_reset_date == today_ref(TZ) for r in rows)
    assert db.user_limits["u1"].trial_started_at is not None


def test_reset_on_new_day_and_idempotent(repo, db):
    today = today_ref(TZ)
    db.user_limits["u1"] = UserLimits(user_id="u1", daily_stories_used=1, last_reset_date=today - timedelta(days=1))

    async def scenario():
        limits = await repo.get_or_create_limits("u1")
        first = await repo.reset_limits_if_new_day(limits, today)
        second = await repo.reset_limits_if_new_day(limits, today)
        return first, second

    first, second = run(scenario())
    assert first.daily_stories_used == 0 and first.last_reset_date == today
    assert second.daily_stories_used == 0 and second.last_reset_date == today


def test_reset_never_moves_date_backwards(repo, db):
    today = today_ref(TZ)
    db.user_limits["u1"] = UserLimits(user_id="u1", daily_stories_used=1, last_reset_date=today)
    stale = UserLimits(user_id="u1", daily_stories_used=1, last_reset_date=today)

    out = run(repo.reset_limits_if_new_day(stale, today - timedelta(days=1)))
    assert out.daily_stories_used == 1
    assert out.last_reset_date == today


def test_increment_is_conditional(repo, db):
    today = today_ref(TZ)
    db.user_limits["u1"] = UserLimits(user_id="u1", daily_stories_used=0, last_reset_date=today)

    first = run(repo.increment_daily_stories("u1", today, 1))
    second = run(repo.increment_daily_stories("u1", today, 1))
    assert first.daily_stories_used == 1
    assert second is None
    assert db.user_limits["u1"].daily_stories_used == 1


def test_increment_rejects_stale_day(repo, db):
    today = today_ref(TZ)
    db.user_limits["u1"] = UserLimits(user_id="u1", daily_stories_used=0, last_reset_date=today - timedelta(days=1))

    assert run(repo.increment_daily_stories("u1", today, 1)) is None
    assert db.user_limits["u1"].daily_stories_used == 0


def test_upsert_premium_never_writes_active_with_past_expiry(repo, db):
    past = utcnow() - timedelta(hours=1)
    p = run(repo.upsert_premium("u1", active=True, source="apple", expires_at=past))
    assert p.premium_active is False
    assert p.premium_source == "none"
    assert db.profiles["u1"].premium_active is False


def test_upsert_premium_keeps_service_flags(repo, db):
    db.profiles["u1"] = PremiumProfile(user_id="u1", always_unlim=True, influencer_code="KIDS")
    run(repo.upsert_premium("u1", active=False, source="none", expires_at=None))
    assert db.profiles["u1"].always_unlim is True
    assert db.profiles["u1"].influencer_code == "KIDS"


def test_expire_stale_premium(repo, db):
    now = utcnow()
    db.profiles["old"] = PremiumProfile(
        user_id="old", premium_active=True, premium_source="apple", premium_expires_at=now - timedelta(days=1),
    )
    db.profiles["live"] = PremiumProfile(
        user_id="live", premium_active=True, premium_source="stripe", premium_expires_at=None,
    )
    db.profiles["promo"] = PremiumProfile(user_id="promo", premium_trial_expires_at=now - timedelta(minutes=5))

    assert run(repo.expire_stale_premium()) == 2
    assert db.profiles["old"].premium_active is False
    assert db.profiles["old"].premium_source == "none"
    assert db.profiles["live"].premium_active is True
    assert db.profiles["promo"].premium_trial_expires_at is None


def test_apply_promo_code(repo, db):
    db.promo_codes["KIDS10"] = PromoCode(influencer_code="KIDS10", influencer_name="Story Lady")
    db.promo_codes["OLD"] = PromoCode(influencer_code="OLD", influencer_name="Gone", is_active=False)
    expires = utcnow() + timedelta(days=7)

    pc = run(repo.apply_promo_code("u1", " kids10 ", expires))
    assert pc.influencer_name == "Story Lady"
    assert db.profiles["u1"].premium_trial_expires_at == expires
    assert run(repo.apply_promo_code("u1", "old", expires)) is None
    assert run(repo.apply_promo_code("u1", "nope", expires)) is None


def test_webhook_events_dedup_and_retry_after_error(repo, db):
    def event():
        return WebhookEvent(event_id="stripe:evt_1", provider="stripe", event_type="x", processed_at=utcnow())

    assert run(repo.record_webhook_event(event())) is True
    run(repo.mark_webhook_processed("stripe:evt_1"))
    assert run(repo.record_webhook_event(event())) is False

    run(repo.mark_webhook_error("stripe:evt_1", "boom"))
    assert run(repo.record_webhook_event(event())) is True
    assert len(db.webhook_events) == 1


def test_unfinished_webhook_event_is_redelivered(repo, db):
    def event():
        return WebhookEvent(event_id="stripe:evt_2", provider="stripe", event_type="x", processed_at=utcnow())

    # первая доставка записана, но обработка не дошла до mark_webhook_processed
    assert run(repo.record_webhook_event(event())) is True
    assert db.webhook_events[0].error == WEBHOOK_PENDING
    assert run(repo.record_webhook_event(event())) is True

    run(repo.mark_webhook_processed("stripe:evt_2"))
    assert db.webhook_events[0].error is None
    assert run(repo.record_webhook_event(event())) is False


def test_find_user_and_delete(repo, db):
    db.profiles["u1"] = PremiumProfile(user_id="u1", stripe_customer_id="cus_1")
    db.user_limits["u1"] = UserLimits(user_id="u1")

    assert run(repo.find_user_by_stripe_customer("cus_1")) == "u1"
    assert run(repo.find_user_by_stripe_customer("cus_2")) is None

    run(repo.delete_user("u1"))
    assert "u1" not in db.profiles
    assert "u1" not in db.user_limits


def test_get_or_create_uses_given_day(repo, db):
    day = today_ref(TZ) + timedelta(days=1)
    assert run(repo.get_or_create_limits("u1", day)).last_reset_date == day
