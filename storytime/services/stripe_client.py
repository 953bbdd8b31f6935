from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable

import stripe

from storytime.services.errors import UpstreamOracleError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StripeConfig:
    secret_key: str
    price_id: str = ""
    timeout: float = 5.0


class StripeClient:
    """Только чтение из Stripe через официальный SDK (async-методы поверх aiohttp)."""

    def __init__(self, cfg: StripeConfig):
        self.cfg = cfg
        self._client = (
            stripe.StripeClient(cfg.secret_key, http_client=stripe.AIOHTTPClient(timeout=cfg.timeout))
            if cfg.secret_key
            else None
        )

    @property
    def configured(self) -> bool:
        return self._client is not None

    async def _list(self, what: str, call: Awaitable[Any]) -> list[dict[str, Any]]:
        try:
            result = await asyncio.wait_for(call, timeout=self.cfg.timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamOracleError("stripe", f"{what}: timeout") from e
        except stripe.StripeError as e:
            logger.warning("Stripe %s failed: %s", what, e)
            raise UpstreamOracleError("stripe", f"{what}: {e}", http_status=e.http_status) from e
        return [obj.to_dict() for obj in result.data]

    async def find_customer_id(self, email: str) -> str | None:
        customers = await self._list(
            "customers.list",
            self._client.customers.list_async(params={"email": email, "limit": 1}),
        )
        return customers[0].get("id") if customers else None

    async def list_subscriptions(self, customer_id: str) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"customer": customer_id, "status": "all", "limit": 10}
        if self.cfg.price_id:
            params["price"] = self.cfg.price_id
        return await self._list("subscriptions.list", self._client.subscriptions.list_async(params=params))

    async def list_payment_intents(self, customer_id: str) -> list[dict[str, Any]]:
        return await self._list(
            "payment_intents.list",
            self._client.payment_intents.list_async(params={"customer": customer_id, "limit": 20}),
        )
