from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from storytime.db.models import PremiumProfile, PromoCode, UserLimits, WebhookEvent

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

@dataclass
class FakeDatabase:
    user_limits: Dict[str, UserLimits] = field(default_factory=dict)       # key = user_id
    profiles: Dict[str, PremiumProfile] = field(default_factory=dict)      # key = user_id
    promo_codes: Dict[str, PromoCode] = field(default_factory=dict)        # key = influencer_code
    webhook_events: List[WebhookEvent] = field(default_factory=list)

async def get_db(use_fake: bool, dsn: str, init_schema: bool = False):
    """
    Если use_fake=True -> FakeDatabase.
    Иначе -> asyncpg pool.
    """
    if use_fake:
        return FakeDatabase()

    import asyncpg  # чтобы проект запускался без asyncpg, если FakeDB
    pool = await asyncpg.create_pool(dsn=dsn, min_size=1, max_size=10)
    if init_schema:
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
    return pool

async def close_db(db) -> None:
    if isinstance(db, FakeDatabase):
        return
    await db.close()
