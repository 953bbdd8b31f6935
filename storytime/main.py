import logging
from contextlib import asynccontextmanager

import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from storytime.api.deps import Services
from storytime.api.routes import (
    request_validation_handler,
    router,
    storytime_error_handler,
    unhandled_error_handler,
)
from storytime.config import Settings, settings as default_settings
from storytime.db.connection import close_db, get_db
from storytime.db.repository import Repository
from storytime.services.entitlements import EntitlementReconciler
from storytime.services.errors import StorytimeError
from storytime.services.generation import GenerationOrchestrator
from storytime.services.identity import SupabaseAuthClient, SupabaseAuthConfig
from storytime.services.openai_client import OpenAIClient
from storytime.services.oracles import EntitlementOracle, SubscriptionOracle
from storytime.services.quota import QuotaGate
from storytime.services.revenuecat_client import RevenueCatClient, RevenueCatConfig
from storytime.services.stripe_client import StripeClient, StripeConfig
from storytime.services.webhooks import RevenueCatWebhookHandler, StripeWebhookHandler

logger = logging.getLogger("storytime")


def build_services(settings: Settings, db, llm=None) -> Services:
    repo = Repository(db=db, tz=settings.tz)
    identity = SupabaseAuthClient(
        SupabaseAuthConfig(
            url=settings.supabase_url,
            anon_key=settings.supabase_anon_key,
            service_role_key=settings.supabase_service_role_key,
            timeout=settings.oracle_timeout,
        )
    )
    subscriptions = SubscriptionOracle(
        identity=identity,
        stripe=StripeClient(
            StripeConfig(
                secret_key=settings.stripe_secret_key,
                price_id=settings.stripe_price_id,
                timeout=settings.oracle_timeout,
            )
        ),
        min_one_time_amount=settings.stripe_min_one_time_amount,
    )
    entitlements = EntitlementOracle(
        RevenueCatClient(RevenueCatConfig(api_key=settings.revenuecat_api_key, timeout=settings.oracle_timeout))
    )
    reconciler = EntitlementReconciler(
        repo=repo,
        subscriptions=subscriptions,
        entitlements=entitlements,
        cache_ttl=settings.premium_cache_ttl,
    )
    gate = QuotaGate(
        repo=repo,
        reconciler=reconciler,
        tz=settings.tz,
        daily_limit=settings.daily_limit,
        bypass=settings.bypass_limits,
    )
    if llm is None:
        llm = OpenAIClient(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            base_url=settings.openai_base_url,
            timeout=settings.generation_timeout,
        )
    orchestrator = GenerationOrchestrator(gate=gate, llm=llm, timeout=settings.generation_timeout)

    return Services(
        settings=settings,
        repo=repo,
        identity=identity,
        subscriptions=subscriptions,
        reconciler=reconciler,
        gate=gate,
        orchestrator=orchestrator,
        stripe_webhooks=StripeWebhookHandler(
            repo=repo, reconciler=reconciler, webhook_secret=settings.stripe_webhook_secret,
        ),
        revenuecat_webhooks=RevenueCatWebhookHandler(
            repo=repo, reconciler=reconciler, auth_secret=settings.revenuecat_webhook_secret,
        ),
    )


def create_app(settings: Settings = default_settings, services: Services | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = None
        scheduler = None
        if getattr(app.state, "services", None) is None:
            db = await get_db(use_fake=settings.use_fake_db, dsn=settings.pg_dsn, init_schema=settings.init_schema)
            app.state.services = build_services(settings, db)

            repo = app.state.services.repo
            scheduler = AsyncIOScheduler(timezone=settings.tz)

            async def daily_job():
                n = await repo.expire_stale_premium()
                logger.info("Expired premium cleanup: %s profiles updated", n)

            scheduler.add_job(daily_job, CronTrigger(hour=0, minute=0))
            scheduler.start()

        if settings.bypass_limits:
            logger.warning("BYPASS_LIMITS=1: daily limits are NOT enforced")

        yield

        if scheduler is not None:
            scheduler.shutdown(wait=False)
        await app.state.services.reconciler.drain()
        if db is not None:
            await close_db(db)

    app = FastAPI(title="storytime", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StorytimeError, storytime_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router)
    return app


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    uvicorn.run(create_app(default_settings), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
