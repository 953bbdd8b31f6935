import asyncio

import pytest

from storytime.config import Settings
from storytime.db.connection import FakeDatabase
from storytime.db.repository import Repository
from storytime.services.entitlements import EntitlementReconciler
from storytime.services.errors import UpstreamOracleError
from storytime.services.oracles import OracleResult
from storytime.services.quota import QuotaGate

TZ = "Etc/GMT+6"


class FakeOracle:
    """Oracle double: returns a fixed result or raises; yields to the loop once per call."""

    def __init__(self, name, result=None, error=None):
        self.name = name
        self.result = result or OracleResult(active=False)
        self.error = error
        self.calls = []

    async def check_active(self, user_id, email=None):
        self.calls.append(user_id)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.result


class FakeLLM:
    def __init__(self, text="", error=None, delay=0.0):
        self.text = text
        self.error = error
        self.delay = delay
        self.calls = []

    async def generate_text(self, prompt, *, max_tokens):
        self.calls.append((prompt, max_tokens))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.text


def run(coro):
    return asyncio.run(coro)


def oracle_down(name):
    return UpstreamOracleError(name, "connection refused")


@pytest.fixture
def settings():
    return Settings(
        use_fake_db=True,
        tz=TZ,
        daily_limit=1,
        bypass_limits=False,
        premium_cache_ttl=300,
        promo_trial_days=7,
        supabase_service_role_key="service-key",
        stripe_webhook_secret="whsec_test",
        revenuecat_webhook_secret="rc-secret",
    )


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def repo(db):
    return Repository(db=db, tz=TZ)


@pytest.fixture
def stripe_oracle():
    return FakeOracle("stripe")


@pytest.fixture
def rc_oracle():
    return FakeOracle("revenuecat")


@pytest.fixture
def reconciler(repo, stripe_oracle, rc_oracle):
    return EntitlementReconciler(repo=repo, subscriptions=stripe_oracle, entitlements=rc_oracle, cache_ttl=300)


@pytest.fixture
def gate(repo, reconciler):
    return QuotaGate(repo=repo, reconciler=reconciler, tz=TZ, daily_limit=1)
