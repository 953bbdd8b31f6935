from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import aiohttp

from storytime.services.errors import UpstreamOracleError

logger = logging.getLogger(__name__)


async def request_json(
    upstream: str,
    method: str,
    url: str,
    *,
    headers: dict[str, str],
    params: Optional[dict[str, Any]] = None,
    timeout: float = 5.0,
    not_found_ok: bool = False,
) -> Optional[dict[str, Any]]:
    """
    Returns parsed JSON body, or None on 404 when not_found_ok.
    Network errors, timeouts, status >= 400 and non-JSON bodies raise UpstreamOracleError.
    """
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.request(method, url, headers=headers, params=params) as r:
                request_id = r.headers.get("Request-Id") or r.headers.get("X-Request-Id")
                text = await r.text()

                if r.status == 404 and not_found_ok:
                    return None

                if r.status >= 400:
                    logger.warning(
                        "%s %s %s failed: http_status=%s request_id=%s body=%s",
                        upstream, method, url, r.status, request_id, text[:500],
                    )
                    raise UpstreamOracleError(upstream, f"http {r.status}", http_status=r.status)

                if not text:
                    return {}
                try:
                    data = json.loads(text)
                except ValueError as e:
                    raise UpstreamOracleError(upstream, "non-JSON response body") from e
                if not isinstance(data, dict):
                    raise UpstreamOracleError(upstream, "unexpected response shape")
                return data
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise UpstreamOracleError(upstream, repr(e)) from e
