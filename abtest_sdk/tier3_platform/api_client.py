"""
abtest_sdk.tier3_platform.api_client
──────────────────────────────────────
HTTP client for the events collector. One call, one batch:

    POST <endpoint>/events
    X-API-Key: <api key>
    x-shop-id: <shop id>
    [ {event}, {event}, ... ]

Success is a 2xx response with a JSON body. Anything else (connection error,
non-2xx, unparsable body) raises TransientDeliveryError so the retry executor
counts it as a failed attempt.

Backed by: httpx (async HTTP). Tests inject ``httpx.MockTransport``.
"""
from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx

from abtest_sdk.tier0_core.config import ABTestConfig
from abtest_sdk.tier0_core.errors import ConfigurationError, TransientDeliveryError
from abtest_sdk.tier0_core.logging import get_logger

logger = get_logger(__name__)


class EventsClient:
    """
    Async client for the events collector.

    Usage::

        client = EventsClient.from_config(get_config())
        body = await client.post_events(batch)
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        shop_id: str = "",
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._api_key = api_key
        self._shop_id = shop_id
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(
        cls,
        config: ABTestConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "EventsClient":
        missing = [name for name in ("api_endpoint", "api_key") if not getattr(config, name)]
        if missing:
            raise ConfigurationError(
                user_message=f"Collector configuration incomplete: {', '.join(missing)}",
                missing=missing,
            )
        return cls(
            config.api_endpoint,
            config.api_key,
            config.shop_id,
            timeout=config.retry_timeout,
            transport=transport,
        )

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def _build_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "X-API-Key": self._api_key,
        }
        if self._shop_id:
            headers["x-shop-id"] = self._shop_id
        return headers

    async def post_events(self, events: Sequence[dict[str, Any]]) -> Any:
        """Send one batch; return the decoded JSON body."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._endpoint, json=list(events), headers=self._build_headers())
        except httpx.HTTPError as exc:
            raise TransientDeliveryError(
                "network_error",
                user_message=f"Request to collector failed: {exc}",
            ) from exc

        if not response.is_success:
            raise TransientDeliveryError(
                "http_error",
                user_message=f"Collector responded {response.status_code}",
                status_code=response.status_code,
                body=response.text[:500],
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise TransientDeliveryError(
                "invalid_response",
                user_message="Collector response was not JSON",
                status_code=response.status_code,
            ) from exc

        logger.debug("collector.accepted", count=len(events), status=response.status_code)
        return body


__all__ = ["EventsClient"]
