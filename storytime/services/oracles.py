"""
Read-only adapters to the external billing authorities.

Both oracles answer ``check_active(user_id) -> OracleResult``:

* "user unknown to the billing system" is ``active=False`` (normal free user);
* unreachable / timed out / malformed upstream raises ``UpstreamOracleError``
  so the reconciler can apply its fail-closed policy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from storytime.services.errors import UpstreamOracleError
from storytime.services.identity import SupabaseAuthClient
from storytime.services.limits import is_expiry_valid
from storytime.services.revenuecat_client import RevenueCatClient
from storytime.services.stripe_client import StripeClient
from storytime.utils.time import parse_iso, utcnow

logger = logging.getLogger(__name__)

# Recognized RevenueCat entitlement identifiers, in precedence order:
# the first identifier present on the subscriber decides, the rest are ignored.
ENTITLEMENT_IDS = ("premium", "premium_annual", "premium_monthly")

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")


@dataclass(frozen=True)
class OracleResult:
    active: bool
    expires_at: Optional[datetime] = None
    detail: dict[str, Any] = field(default_factory=dict)


def pick_entitlement(entitlements: dict[str, Any]) -> tuple[str, dict[str, Any]] | None:
    for key in ENTITLEMENT_IDS:
        ent = entitlements.get(key)
        if ent:
            return key, ent
    return None


def store_platform(entitlement: dict[str, Any], subscriber: dict[str, Any]) -> str | None:
    """app_store -> ios, play_store -> android (по подписке, к которой привязан entitlement)."""
    product = entitlement.get("product_identifier")
    sub = (subscriber.get("subscriptions") or {}).get(product) or {}
    store = sub.get("store")
    if store == "app_store":
        return "ios"
    if store == "play_store":
        return "android"
    return None


def entitlement_from_subscriber(subscriber: dict[str, Any] | None, now: datetime) -> OracleResult:
    if not subscriber:
        return OracleResult(active=False, detail={"entitlements": {}})

    entitlements = subscriber.get("entitlements") or {}
    if not isinstance(entitlements, dict):
        raise UpstreamOracleError("revenuecat", "malformed entitlements")

    picked = pick_entitlement(entitlements)
    if picked is None:
        return OracleResult(active=False, detail={"entitlements": entitlements})

    key, ent = picked
    try:
        expires_at = parse_iso(ent.get("expires_date"))
    except ValueError as e:
        raise UpstreamOracleError("revenuecat", f"bad expires_date for {key}") from e

    return OracleResult(
        active=is_expiry_valid(expires_at, now),
        expires_at=expires_at,
        detail={
            "entitlement": key,
            "entitlements": entitlements,
            "platform": store_platform(ent, subscriber),
        },
    )


def has_qualifying_purchase(
    subscriptions: list[dict[str, Any]],
    payment_intents: list[dict[str, Any]],
    min_one_time_amount: int,
) -> tuple[bool, str | None]:
    """(active, kind): kind = "subscription" | "one_time" | None."""
    for s in subscriptions:
        if s.get("status") in ACTIVE_SUBSCRIPTION_STATUSES:
            return True, "subscription"
    for pi in payment_intents:
        if pi.get("status") == "succeeded" and int(pi.get("amount") or 0) >= min_one_time_amount:
            return True, "one_time"
    return False, None


class SubscriptionOracle:
    """Stripe: user id -> email -> customer -> active/trialing subscription or lifetime purchase."""

    name = "stripe"

    def __init__(self, identity: SupabaseAuthClient, stripe: StripeClient, min_one_time_amount: int):
        self.identity = identity
        self.stripe = stripe
        self.min_one_time_amount = min_one_time_amount

    async def check_active(self, user_id: str, email: str | None = None) -> OracleResult:
        if not self.stripe.configured:
            logger.info("Stripe is not configured, treating %s as not subscribed", user_id)
            return OracleResult(active=False, detail={"reason": "not_configured"})

        email = email or await self.identity.get_email(user_id)
        if not email:
            return OracleResult(active=False, detail={"reason": "no_email"})

        customer_id = await self.stripe.find_customer_id(email)
        if customer_id is None:
            return OracleResult(active=False, detail={"reason": "no_customer"})

        subscriptions = await self.stripe.list_subscriptions(customer_id)
        payment_intents: list[dict[str, Any]] = []
        if not any(s.get("status") in ACTIVE_SUBSCRIPTION_STATUSES for s in subscriptions):
            payment_intents = await self.stripe.list_payment_intents(customer_id)

        active, kind = has_qualifying_purchase(subscriptions, payment_intents, self.min_one_time_amount)
        return OracleResult(active=active, detail={"customer_id": customer_id, "kind": kind})


class EntitlementOracle:
    """RevenueCat: app user id == наш user id."""

    name = "revenuecat"

    def __init__(self, revenuecat: RevenueCatClient):
        self.revenuecat = revenuecat

    async def check_active(self, user_id: str) -> OracleResult:
        if not self.revenuecat.configured:
            logger.info("RevenueCat is not configured, treating %s as not entitled", user_id)
            return OracleResult(active=False, detail={"reason": "not_configured", "entitlements": {}})

        subscriber = await self.revenuecat.get_subscriber(user_id)
        return entitlement_from_subscriber(subscriber, utcnow())
