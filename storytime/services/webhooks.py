from __future__ import annotations

import hmac
import json
import logging
from typing import Any

import stripe

from storytime.db.models import WebhookEvent
from storytime.db.repository import Repository
from storytime.services.entitlements import EntitlementReconciler
from storytime.services.errors import AuthError, ValidationError
from storytime.utils.time import utcnow

logger = logging.getLogger(__name__)


class StripeWebhookHandler:
    """Асинхронный путь обновления кэша премиума по событиям Stripe."""

    def __init__(self, repo: Repository, reconciler: EntitlementReconciler, webhook_secret: str):
        self.repo = repo
        self.reconciler = reconciler
        self.webhook_secret = webhook_secret

    def verify(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        if not signature:
            raise ValidationError("stripe-signature", "Missing signature")
        if not self.webhook_secret:
            raise AuthError("Stripe webhook secret is not configured")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise ValidationError("stripe-signature", "Invalid signature") from e
        except ValueError as e:
            raise ValidationError("body", "Invalid payload") from e
        return json.loads(payload)

    async def handle(self, event: dict[str, Any]) -> dict[str, Any]:
        event_id = event.get("id") or ""
        event_type = event.get("type") or ""
        obj = (event.get("data") or {}).get("object") or {}

        fresh = await self.repo.record_webhook_event(
            WebhookEvent(
                event_id=f"stripe:{event_id}",
                provider="stripe",
                event_type=event_type,
                processed_at=utcnow(),
                raw_event=event,
            )
        )
        if not fresh:
            logger.info("Stripe event %s already processed", event_id)
            return {"received": True, "duplicate": True}

        logger.info("Stripe webhook received: %s (%s)", event_type, event_id)
        try:
            if event_type == "checkout.session.completed":
                await self._checkout_completed(obj)
            elif event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
                await self._subscription_changed(obj)
            else:
                logger.info("Unhandled Stripe event type: %s", event_type)
        except Exception as e:
            await self.repo.mark_webhook_error(f"stripe:{event_id}", repr(e))
            raise

        await self.repo.mark_webhook_processed(f"stripe:{event_id}")
        return {"received": True}

    async def _checkout_completed(self, session: dict[str, Any]) -> None:
        metadata = session.get("metadata") or {}
        user_id = metadata.get("user_id") or session.get("client_reference_id")
        if not user_id:
            logger.warning("checkout.session.completed without user_id: %s", session.get("id"))
            return
        # у подписки Stripe нет фиксированного срока: действует до события отмены
        await self.repo.upsert_premium(
            user_id,
            active=True,
            source="stripe",
            expires_at=None,
            stripe_customer_id=session.get("customer"),
        )

    async def _subscription_changed(self, sub: dict[str, Any]) -> None:
        customer_id = sub.get("customer")
        user_id = await self.repo.find_user_by_stripe_customer(customer_id) if customer_id else None
        if not user_id:
            logger.warning("No profile for Stripe customer %s", customer_id)
            return

        # у пользователя может быть ещё и IAP: перечитываем обе системы, а не пишем статус Stripe напрямую
        d = await self.reconciler.refresh(user_id)
        logger.info("Stripe subscription %s for %s: premium=%s source=%s", sub.get("status"), user_id, d.active, d.source)


class RevenueCatWebhookHandler:
    """RevenueCat шлёт только факт изменения: актуальные entitlements перечитываем сами."""

    def __init__(self, repo: Repository, reconciler: EntitlementReconciler, auth_secret: str):
        self.repo = repo
        self.reconciler = reconciler
        self.auth_secret = auth_secret

    def verify(self, authorization: str | None) -> None:
        if not self.auth_secret:
            raise AuthError("RevenueCat webhook secret is not configured")
        token = (authorization or "").removeprefix("Bearer ").strip()
        if not hmac.compare_digest(token, self.auth_secret):
            raise AuthError("Invalid webhook authorization")

    async def handle(self, payload: dict[str, Any]) -> dict[str, Any]:
        event = payload.get("event") or {}
        app_user_id = event.get("app_user_id")
        if not app_user_id or not event.get("event_timestamp_ms"):
            raise ValidationError("event", "Invalid payload")

        event_id = event.get("id") or f"{app_user_id}:{event.get('event_timestamp_ms')}"
        fresh = await self.repo.record_webhook_event(
            WebhookEvent(
                event_id=f"revenuecat:{event_id}",
                provider="revenuecat",
                event_type=event.get("type") or "",
                user_id=app_user_id,
                processed_at=utcnow(),
                raw_event=payload,
            )
        )
        if not fresh:
            return {"success": True, "duplicate": True}

        logger.info("RevenueCat webhook %s for %s", event.get("type"), app_user_id)
        try:
            d = await self.reconciler.refresh(app_user_id)
        except Exception as e:
            await self.repo.mark_webhook_error(f"revenuecat:{event_id}", repr(e))
            raise
        await self.repo.mark_webhook_processed(f"revenuecat:{event_id}")
        return {"success": True, "active": d.active}
