from datetime import datetime, date, timezone
from zoneinfo import ZoneInfo

REFERENCE_TZ = "Etc/GMT+6"  # CST, UTC-6 круглый год

def now_ref(tz_name: str = REFERENCE_TZ) -> datetime:
    return datetime.now(tz=ZoneInfo(tz_name))

def today_ref(tz_name: str = REFERENCE_TZ) -> date:
    return now_ref(tz_name).date()

def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)

def parse_iso(value: str | None) -> datetime | None:
    """ISO-строка от Stripe/RevenueCat -> aware datetime (UTC, если зона не указана)."""
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
