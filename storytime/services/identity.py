from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from storytime.services.errors import UpstreamOracleError
from storytime.services.http import request_json


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class SupabaseAuthConfig:
    url: str
    anon_key: str
    service_role_key: str
    timeout: float = 5.0


class SupabaseAuthClient:
    """Внешний identity provider: токен -> пользователь, id -> email, удаление аккаунта."""

    def __init__(self, cfg: SupabaseAuthConfig):
        self.cfg = cfg
        self._base = cfg.url.rstrip("/") + "/auth/v1"
        self._admin_headers = {
            "apikey": cfg.service_role_key,
            "Authorization": f"Bearer {cfg.service_role_key}",
        }

    async def get_user(self, access_token: str) -> Identity | None:
        """None -> токен невалиден или просрочен."""
        headers = {
            "apikey": self.cfg.anon_key or self.cfg.service_role_key,
            "Authorization": f"Bearer {access_token}",
        }
        try:
            data = await request_json(
                "identity", "GET", f"{self._base}/user",
                headers=headers, timeout=self.cfg.timeout, not_found_ok=True,
            )
        except UpstreamOracleError as e:
            # 401/403 от GoTrue это невалидный токен, а не недоступность
            if e.http_status in (401, 403):
                return None
            raise
        if not data or not data.get("id"):
            return None
        return Identity(user_id=str(data["id"]), email=data.get("email"))

    async def get_email(self, user_id: str) -> str | None:
        data = await request_json(
            "identity", "GET", f"{self._base}/admin/users/{user_id}",
            headers=self._admin_headers, timeout=self.cfg.timeout, not_found_ok=True,
        )
        if not data:
            return None
        return data.get("email")

    async def delete_user(self, user_id: str) -> None:
        await request_json(
            "identity", "DELETE", f"{self._base}/admin/users/{user_id}",
            headers=self._admin_headers, timeout=self.cfg.timeout, not_found_ok=True,
        )
