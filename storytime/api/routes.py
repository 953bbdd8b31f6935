# HTTP-эндпоинты: тонкий слой поверх services/

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from storytime.api.deps import Services, current_identity, get_services, is_service_call
from storytime.api.schemas import (
    CheckSubscriptionBody,
    ConfirmPurchaseBody,
    GenerateStoryBody,
    PromoCodeBody,
    StoryResponse,
)
from storytime.services.errors import (
    AuthError,
    GenerationError,
    NotFoundError,
    QuotaExceeded,
    StorageError,
    StorytimeError,
    ValidationError,
)
from storytime.services.generation import LIMIT_REACHED, NOT_AUTHENTICATED, Rejection
from storytime.services.identity import Identity
from storytime.utils.time import utcnow

logger = logging.getLogger("api")

router = APIRouter()

PURCHASE_SOURCES = ("apple", "google", "revenuecat", "stripe")


async def storytime_error_handler(request: Request, exc: StorytimeError) -> JSONResponse:
    body = {"error": exc.message, "code": exc.code}
    if isinstance(exc, QuotaExceeded):
        body["limitReached"] = True
    if isinstance(exc, ValidationError):
        body["field"] = exc.field
    if isinstance(exc, StorageError):
        body["retryable"] = True
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=body)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    field = ".".join(str(p) for p in errors[0]["loc"][1:]) if errors else "body"
    return JSONResponse(
        status_code=400,
        content={"error": f"Invalid field: {field}", "code": ValidationError.code, "field": field},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "code": "INTERNAL_ERROR"})


@router.get("/health")
async def health():
    return {"status": "healthy", "service": "storytime"}


@router.post("/generate-story", response_model=StoryResponse)
async def generate_story(
    body: GenerateStoryBody,
    user: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    result = await services.orchestrator.generate(body.to_request(user.user_id))
    if isinstance(result, Rejection):
        if result.code == LIMIT_REACHED:
            raise QuotaExceeded(result.message)
        if result.code == NOT_AUTHENTICATED:
            raise AuthError(result.message)
        raise GenerationError(result.message)
    return StoryResponse(title=result.title, content=result.content)


@router.post("/get-user-limits")
async def get_user_limits(
    user: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    usage = await services.gate.usage(user.user_id)
    limits = usage.limits
    return {
        "daily_stories_used": limits.daily_stories_used,
        "trial_started_at": limits.trial_started_at.isoformat() if limits.trial_started_at else None,
        "trial_used": limits.trial_used,
        "last_reset_date": limits.last_reset_date.isoformat() if limits.last_reset_date else None,
        "remaining": usage.remaining,
        "premium": usage.premium,
        "premium_source": usage.premium_source,
    }


@router.post("/refresh-entitlements")
async def refresh_entitlements(
    user: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    logger.info("Refreshing entitlements for user: %s", user.user_id)
    d = await services.reconciler.refresh(user.user_id)
    return {
        "entitlements": d.entitlements or {},
        "active": d.active,
        "source": d.source,
        "degraded": d.degraded,
    }


@router.post("/confirm-purchase")
async def confirm_purchase(
    body: ConfirmPurchaseBody,
    user: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    if body.source not in PURCHASE_SOURCES:
        raise ValidationError("source", f"Unknown purchase source: {body.source}")
    d = await services.reconciler.confirm_purchase(user.user_id, body.source)
    return {"active": d.active, "source": d.source}


@router.post("/check-subscription")
async def check_subscription(
    request: Request,
    body: Optional[CheckSubscriptionBody] = None,
    authorization: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
):
    # server-to-server: {userId} + service key; иначе проверка самого себя по токену
    if body is not None and body.userId:
        if not is_service_call(services, authorization):
            raise AuthError("Service authorization required")
        user_id, email = body.userId, None
    else:
        user = await current_identity(request, authorization)
        user_id, email = user.user_id, user.email

    result = await services.subscriptions.check_active(user_id, email=email)
    logger.info("Subscription check for %s: %s", user_id, result.active)
    return {"subscribed": result.active}


@router.post("/validate-promo-code")
async def validate_promo_code(
    body: PromoCodeBody,
    user: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    code = (body.code or "").strip()
    if not code:
        raise ValidationError("code", "Invalid code format")

    expires_at = utcnow() + timedelta(days=services.settings.promo_trial_days)
    promo = await services.repo.apply_promo_code(user.user_id, code, expires_at)
    if promo is None:
        raise NotFoundError("Invalid or inactive promo code")

    logger.info("Promo code %s applied for %s", promo.influencer_code, user.user_id)
    return {
        "success": True,
        "message": "Promo code applied successfully!",
        "expiresAt": expires_at.isoformat(),
        "influencerName": promo.influencer_name,
    }


@router.post("/delete-account")
async def delete_account(
    user: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    # сначала identity provider: если он упадёт, локальные лимиты и профиль останутся целы
    await services.identity.delete_user(user.user_id)
    await services.repo.delete_user(user.user_id)
    logger.info("Account deleted: %s", user.user_id)
    return {"success": True, "message": "Account deleted successfully"}


@router.post("/stripe-webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
):
    payload = await request.body()
    event = services.stripe_webhooks.verify(payload, stripe_signature)
    return await services.stripe_webhooks.handle(event)


@router.post("/revenuecat-webhook")
async def revenuecat_webhook(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
):
    services.revenuecat_webhooks.verify(authorization)
    try:
        payload = await request.json()
    except ValueError as e:
        raise ValidationError("body", "Invalid payload") from e
    if not isinstance(payload, dict):
        raise ValidationError("body", "Invalid payload")
    return await services.revenuecat_webhooks.handle(payload)
