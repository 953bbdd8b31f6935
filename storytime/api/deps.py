from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request

from storytime.config import Settings
from storytime.db.repository import Repository
from storytime.services.entitlements import EntitlementReconciler
from storytime.services.errors import AuthError
from storytime.services.generation import GenerationOrchestrator
from storytime.services.identity import Identity, SupabaseAuthClient
from storytime.services.oracles import SubscriptionOracle
from storytime.services.quota import QuotaGate
from storytime.services.webhooks import RevenueCatWebhookHandler, StripeWebhookHandler


@dataclass
class Services:
    """Всё, что нужно роутам. Собирается один раз в create_app / lifespan."""
    settings: Settings
    repo: Repository
    identity: SupabaseAuthClient
    subscriptions: SubscriptionOracle
    reconciler: EntitlementReconciler
    gate: QuotaGate
    orchestrator: GenerationOrchestrator
    stripe_webhooks: StripeWebhookHandler
    revenuecat_webhooks: RevenueCatWebhookHandler


def get_services(request: Request) -> Services:
    return request.app.state.services


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthError("Authorization required")
    token = authorization[7:].strip()
    if not token:
        raise AuthError("Authorization required")
    return token


async def current_identity(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Identity:
    services = get_services(request)
    user = await services.identity.get_user(bearer_token(authorization))
    if user is None:
        raise AuthError("Invalid authorization")
    return user


def is_service_call(services: Services, authorization: Optional[str]) -> bool:
    key = services.settings.supabase_service_role_key
    if not key or not authorization:
        return False
    token = authorization[7:].strip() if authorization.lower().startswith("bearer ") else ""
    return hmac.compare_digest(token, key)
