"""METRIQ — Authenticated Integration Fetcher.

Every third-party call goes through the connection broker. Relative
endpoints are sent through the broker's proxy; full URLs are called
directly with an access token obtained from the broker. Handles
placeholder substitution, retry and backoff.
"""

import asyncio
import json
import re
from datetime import date, timedelta
from typing import Any, Dict, Optional, Sequence

import httpx
from pydantic import BaseModel

from metriq.config import settings
from metriq.core.errors import FetchFailure
from metriq.core.logging import get_logger

logger = get_logger("fetcher")

RETRY_BASE_DELAY = 2  # seconds
# GitHub answers /stats/ endpoints with 202 while it computes them
STATS_RETRY_DELAYS = (2, 4, 6)

_DAYS_AGO = re.compile(r"\b(\d+)daysAgo\b")
_TODAY = re.compile(r"\btoday\b")


class FetchResponse(BaseModel):
    data: Any = None
    status: int = 200


def _date_string(days_ago: int) -> str:
    return (date.today() - timedelta(days=days_ago)).isoformat()


def resolve_endpoint(endpoint: str, params: Optional[Dict[str, str]] = None) -> str:
    """Substitute ``{PARAM}`` placeholders and ``NdaysAgo`` / ``today`` date tokens."""
    resolved = _DAYS_AGO.sub(lambda m: _date_string(int(m.group(1))), endpoint)
    resolved = _TODAY.sub(_date_string(0), resolved)
    for key, value in (params or {}).items():
        resolved = resolved.replace(f"{{{key}}}", str(value))
    return resolved


def resolve_body(body: Any, params: Optional[Dict[str, str]] = None) -> Any:
    """Fill placeholders in a string body and parse it as JSON when possible."""
    if not isinstance(body, str):
        return body
    for key, value in (params or {}).items():
        body = body.replace(f"{{{key}}}", str(value))
    try:
        return json.loads(body)
    except ValueError:
        return body


def _is_empty(resp: httpx.Response) -> bool:
    if resp.status_code == 202:
        return True
    try:
        return resp.json() in ({}, None)
    except ValueError:
        return not resp.content


class IntegrationFetcher:
    """Async HTTP client for broker-authenticated third-party APIs."""

    def __init__(
        self,
        base_url: str | None = None,
        secret_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        max_retries: int | None = None,
        retry_base_delay: float = RETRY_BASE_DELAY,
        stats_retry_delays: Sequence[float] = STATS_RETRY_DELAYS,
    ):
        self.base_url = (base_url or settings.proxy_base_url).rstrip("/")
        self.secret_key = secret_key if secret_key is not None else settings.proxy_secret_key
        self.max_retries = max_retries or settings.fetch_max_retries
        self.retry_base_delay = retry_base_delay
        self.stats_retry_delays = tuple(stats_retry_delays)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=settings.fetch_timeout_seconds, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Core Request Method ──

    async def _request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any = None,
    ) -> httpx.Response:
        """Make a request with retry + rate-limit handling."""
        client = await self._get_client()
        kwargs: Dict[str, Any] = {"headers": headers}
        if body is not None:
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = body

        for attempt in range(1, self.max_retries + 1):
            wait = self.retry_base_delay * (2 ** (attempt - 1))
            try:
                resp = await client.request(method, url, **kwargs)

                if resp.status_code == 429 and attempt < self.max_retries:
                    logger.warning(
                        f"Rate limited (429). Retrying in {wait}s (attempt {attempt}/{self.max_retries})"
                    )
                    await asyncio.sleep(wait)
                    continue

                resp.raise_for_status()
                return resp

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if attempt < self.max_retries and status >= 500:
                    logger.warning(f"Server error {status}. Retrying in {wait}s")
                    await asyncio.sleep(wait)
                    continue
                raise FetchFailure(_error_message(e.response), status) from e

            except httpx.RequestError as e:
                if attempt < self.max_retries:
                    logger.warning(f"Request error: {e}. Retrying in {wait}s")
                    await asyncio.sleep(wait)
                    continue
                raise FetchFailure(
                    f"Connection failed after {self.max_retries} retries: {e}"
                ) from e

        raise FetchFailure("Max retries exhausted")

    # ── Broker ──

    def _broker_headers(self) -> Dict[str, str]:
        if not self.secret_key:
            raise FetchFailure("Connection broker secret key not configured")
        return {"Authorization": f"Bearer {self.secret_key}"}

    async def get_access_token(self, integration_id: str, connection_id: str) -> str:
        """Fetch a fresh provider access token for a direct (non-proxied) call."""
        url = f"{self.base_url}/connection/{connection_id}"
        resp = await self._request(
            "GET",
            f"{url}?provider_config_key={integration_id}",
            self._broker_headers(),
        )
        payload = resp.json()
        token = (payload.get("credentials") or {}).get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise FetchFailure("Failed to retrieve access token from connection broker")
        return token

    # ── Public API ──

    async def fetch(
        self,
        integration_id: str,
        connection_id: str,
        endpoint: str,
        method: str = "GET",
        params: Optional[Dict[str, str]] = None,
        body: Any = None,
    ) -> FetchResponse:
        """Perform one authorized call against a third-party API.

        Raises:
            FetchFailure: transport, auth or source-API error.
        """
        final_endpoint = resolve_endpoint(endpoint, params)
        final_body = resolve_body(body, params)
        method = method.upper()

        if final_endpoint.startswith(("http://", "https://")):
            token = await self.get_access_token(integration_id, connection_id)
            headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
            resp = await self._request(method, final_endpoint, headers, final_body)
        else:
            url = f"{self.base_url}/proxy{final_endpoint}"
            headers = {
                **self._broker_headers(),
                "Connection-Id": connection_id,
                "Provider-Config-Key": integration_id,
            }
            resp = await self._request(method, url, headers, final_body)

            if integration_id == "github" and "/stats/" in final_endpoint:
                for delay in self.stats_retry_delays:
                    if not _is_empty(resp):
                        break
                    logger.info(f"GitHub is computing statistics. Retrying in {delay}s")
                    await asyncio.sleep(delay)
                    resp = await self._request(method, url, headers, final_body)

        logger.info(f"Fetched {method} {final_endpoint} ({resp.status_code})")
        try:
            data = resp.json()
        except ValueError:
            data = resp.text
        return FetchResponse(data=data, status=resp.status_code)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if body.get("message"):
            return str(body["message"])
    return f"HTTP {response.status_code} from {response.request.url}"
