from dataclasses import dataclass
import os
from dotenv import load_dotenv

load_dotenv()

@dataclass(frozen=True)
class Settings:
    use_fake_db: bool = os.getenv("USE_FAKE_DB", "1") == "1"
    init_schema: bool = os.getenv("INIT_SCHEMA", "0") == "1"

    # "сегодня" для лимитов считается в фиксированном CST (UTC-6), без перехода на летнее время
    tz: str = os.getenv("LIMITS_TZ", "Etc/GMT+6")
    daily_limit: int = int(os.getenv("DAILY_LIMIT", "1"))
    bypass_limits: bool = os.getenv("BYPASS_LIMITS", "0") == "1"
    premium_cache_ttl: int = int(os.getenv("PREMIUM_CACHE_TTL", "300"))
    promo_trial_days: int = int(os.getenv("PROMO_TRIAL_DAYS", "7"))

    # Postgres
    pg_host: str = os.getenv("PG_HOST", "localhost")
    pg_port: int = int(os.getenv("PG_PORT", "5432"))
    pg_user: str = os.getenv("PG_USER", "postgres")
    pg_password: str = os.getenv("PG_PASSWORD", "")
    pg_database: str = os.getenv("PG_DATABASE", "postgres")
    pg_sslmode: str = os.getenv("PG_SSLMODE", "disable")

    # Stripe
    stripe_secret_key: str = os.getenv("STRIPE_SECRET_KEY", "")
    stripe_price_id: str = os.getenv("STRIPE_PRICE_ID", "")
    stripe_min_one_time_amount: int = int(os.getenv("STRIPE_MIN_ONE_TIME_AMOUNT", "999"))
    stripe_webhook_secret: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")

    # RevenueCat
    revenuecat_api_key: str = os.getenv("REVENUECAT_API_KEY", "")
    revenuecat_webhook_secret: str = os.getenv("REVENUECAT_WEBHOOK_SECRET", "")

    # Supabase auth (identity provider)
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_anon_key: str = os.getenv("SUPABASE_ANON_KEY", "")
    supabase_service_role_key: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

    # LLM
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_model: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "")

    # таймауты, секунды
    oracle_timeout: float = float(os.getenv("ORACLE_TIMEOUT", "5"))
    generation_timeout: float = float(os.getenv("GENERATION_TIMEOUT", "60"))

    @property
    def pg_dsn(self) -> str:
        return (
            f"postgresql://{self.pg_user}:{self.pg_password}"
            f"@{self.pg_host}:{self.pg_port}/{self.pg_database}"
            f"?sslmode={self.pg_sslmode}"
        )

settings = Settings()
