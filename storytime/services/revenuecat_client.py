from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from storytime.services.http import request_json


@dataclass(frozen=True)
class RevenueCatConfig:
    api_key: str
    timeout: float = 5.0


class RevenueCatClient:
    BASE_URL = "https://api.revenuecat.com"

    def __init__(self, cfg: RevenueCatConfig):
        self.cfg = cfg
        self._headers = {
            "Authorization": f"Bearer {cfg.api_key}",
            "Content-Type": "application/json",
        }

    @property
    def configured(self) -> bool:
        return bool(self.cfg.api_key)

    async def get_subscriber(self, app_user_id: str) -> dict[str, Any] | None:
        """
        Returns: subscriber object, or None if RevenueCat has never seen this user.
        """
        data = await request_json(
            "revenuecat",
            "GET",
            f"{self.BASE_URL}/v1/subscribers/{quote(app_user_id, safe='')}",
            headers=self._headers,
            timeout=self.cfg.timeout,
            not_found_ok=True,
        )
        if data is None:
            return None
        return data.get("subscriber") or {}
