import hashlib
import hmac
import json
import time
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from storytime.db.models import PremiumProfile
from storytime.services.errors import AuthError, ValidationError
from storytime.services.oracles import OracleResult
from storytime.services.webhooks import RevenueCatWebhookHandler, StripeWebhookHandler
from storytime.utils.time import utcnow
from tests.conftest import run

SECRET = "whsec_test"


def sign(payload: bytes, secret: str = SECRET) -> str:
    ts = int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def stripe_event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def test_stripe_verify_accepts_valid_signature(repo, reconciler):
    handler = StripeWebhookHandler(repo, reconciler, SECRET)
    payload = json.dumps(stripe_event("ping", {})).encode()
    assert handler.verify(payload, sign(payload))["type"] == "ping"


def test_stripe_verify_rejects_bad_or_missing_signature(repo, reconciler):
    handler = StripeWebhookHandler(repo, reconciler, SECRET)
    payload = json.dumps(stripe_event("ping", {})).encode()
    with pytest.raises(ValidationError):
        handler.verify(payload, sign(payload, "whsec_other"))
    with pytest.raises(ValidationError):
        handler.verify(payload, None)


def test_checkout_completed_grants_stripe_premium(repo, reconciler, db):
    handler = StripeWebhookHandler(repo, reconciler, SECRET)
    event = stripe_event(
        "checkout.session.completed",
        {"id": "cs_1", "client_reference_id": "u1", "customer": "cus_1", "metadata": {}},
    )

    assert run(handler.handle(event)) == {"received": True}
    p = db.profiles["u1"]
    assert p.premium_active is True
    assert p.premium_source == "stripe"
    assert p.stripe_customer_id == "cus_1"

    assert run(handler.handle(event))["duplicate"] is True


def test_subscription_deleted_revokes_premium(repo, reconciler, db):
    db.profiles["u1"] = PremiumProfile(
        user_id="u1", premium_active=True, premium_source="stripe", stripe_customer_id="cus_1",
    )
    handler = StripeWebhookHandler(repo, reconciler, SECRET)

    run(handler.handle(stripe_event("customer.subscription.deleted", {"customer": "cus_1", "status": "canceled"})))
    assert db.profiles["u1"].premium_active is False
    assert db.profiles["u1"].premium_source == "none"


def test_failed_stripe_event_is_marked_and_retryable(repo, reconciler, db):
    handler = StripeWebhookHandler(repo, reconciler, SECRET)
    repo.find_user_by_stripe_customer = AsyncMock(side_effect=RuntimeError("db hiccup"))
    event = stripe_event("customer.subscription.updated", {"customer": "cus_1", "status": "active"}, "evt_9")

    with pytest.raises(RuntimeError):
        run(handler.handle(event))
    assert db.webhook_events[0].error is not None

    repo.find_user_by_stripe_customer = AsyncMock(return_value=None)
    assert run(handler.handle(event)) == {"received": True}


def test_revenuecat_verify(repo, reconciler):
    handler = RevenueCatWebhookHandler(repo, reconciler, "rc-secret")
    handler.verify("Bearer rc-secret")
    with pytest.raises(AuthError):
        handler.verify("Bearer nope")
    with pytest.raises(AuthError):
        handler.verify(None)


def test_revenuecat_event_resyncs_through_reconciler(repo, reconciler, stripe_oracle, db):
    stripe_oracle.result = OracleResult(active=True, detail={"customer_id": "cus_1"})
    handler = RevenueCatWebhookHandler(repo, reconciler, "rc-secret")
    payload = {"event": {"id": "rc_1", "type": "EXPIRATION", "app_user_id": "u1", "event_timestamp_ms": 1700000000000}}

    assert run(handler.handle(payload)) == {"success": True, "active": True}
    # истёкший IAP не снимает премиум, оплаченный через Stripe
    assert db.profiles["u1"].premium_source == "stripe"
    assert run(handler.handle(payload))["duplicate"] is True


def test_revenuecat_payload_validation(repo, reconciler):
    handler = RevenueCatWebhookHandler(repo, reconciler, "rc-secret")
    with pytest.raises(ValidationError):
        run(handler.handle({"event": {"type": "RENEWAL"}}))


def test_stripe_cancel_keeps_iap_premium(repo, reconciler, gate, rc_oracle, db):
    expires = utcnow() + timedelta(days=20)
    rc_oracle.result = OracleResult(
        active=True,
        expires_at=expires,
        detail={"entitlements": {"premium": {"product_identifier": "p"}}, "platform": "ios"},
    )
    db.profiles["u1"] = PremiumProfile(
        user_id="u1",
        premium_active=True,
        premium_source="apple",
        premium_expires_at=expires,
        stripe_customer_id="cus_1",
    )
    handler = StripeWebhookHandler(repo, reconciler, SECRET)

    run(handler.handle(stripe_event("customer.subscription.deleted", {"customer": "cus_1", "status": "canceled"})))

    assert rc_oracle.calls == ["u1"]
    p = db.profiles["u1"]
    assert p.premium_active is True
    assert p.premium_source == "apple"
    assert p.stripe_customer_id == "cus_1"

    d = run(gate.check_and_consume("u1"))
    assert d.can_generate is True
    assert d.remaining is None


def test_stripe_event_is_marked_processed_only_after_handling(repo, reconciler, db):
    handler = StripeWebhookHandler(repo, reconciler, SECRET)
    repo.mark_webhook_processed = AsyncMock()
    event = stripe_event("checkout.session.completed", {"client_reference_id": "u1", "customer": "cus_1"}, "evt_5")

    run(handler.handle(event))
    repo.mark_webhook_processed.assert_awaited_once_with("stripe:evt_5")
    # обработка не подтверждена: повторная доставка не считается дублем
    assert run(handler.handle(event)) == {"received": True}
