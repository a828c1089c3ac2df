"""HTTP Action Executor - Default side-effect executor backed by httpx"""
from typing import Any, Dict, Optional

import httpx

from ..config.settings import settings
from ..domain.errors import ExternalServiceError, UnsupportedActionError
from ..utils.logger import get_logger, get_correlation_id

logger = get_logger(__name__)

_DIRECT_CALLS = {"api_call", "webhook"}


class HttpActionExecutor:
    """
    Executes actions over HTTP

    ``api_call`` and ``webhook`` actions hit the URL in their config
    directly. Every other action type (tags, scores, assignments, alerts,
    emails...) is forwarded as JSON to the CRM's action webhook, which
    owns those side effects.
    """

    def __init__(
        self,
        action_webhook_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.action_webhook_url = action_webhook_url or settings.action_webhook_url
        self.timeout = timeout or settings.http_timeout_seconds
        self._transport = transport

    async def execute(self, action_type: str, config: Dict[str, Any], record: Dict[str, Any]) -> Any:
        if action_type in _DIRECT_CALLS:
            return await self._call_url(config, record)
        return await self._forward(action_type, config, record)

    async def _call_url(self, config: Dict[str, Any], record: Dict[str, Any]) -> Any:
        url = config.get("url")
        if not url:
            raise UnsupportedActionError("api_call action requires a url")
        method = str(config.get("method", "POST")).upper()
        body = config.get("body")
        if body is None and method != "GET":
            body = record

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.request(
                    method,
                    url,
                    headers=self._headers(config.get("headers")),
                    json=body if method != "GET" else None,
                )
            except httpx.TimeoutException:
                raise ExternalServiceError(f"Request to {url} timed out", details={"url": url})
            except httpx.RequestError as e:
                raise ExternalServiceError(f"Request to {url} failed: {e}", details={"url": url})

        if response.status_code >= 400:
            raise ExternalServiceError(
                f"{method} {url} returned {response.status_code}",
                details={"url": url, "status_code": response.status_code}
            )

        logger.info(f"API call {method} {url} -> {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            data = response.text
        return {"status_code": response.status_code, "data": data}

    async def _forward(self, action_type: str, config: Dict[str, Any], record: Dict[str, Any]) -> Any:
        if not self.action_webhook_url:
            raise UnsupportedActionError(f"No action webhook configured for '{action_type}'")

        payload = {"action_type": action_type, "config": config, "record": record}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(self.action_webhook_url, json=payload, headers=self._headers())
            except httpx.RequestError as e:
                raise ExternalServiceError(f"Action webhook failed: {e}", details={"action_type": action_type})

        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Action webhook returned {response.status_code}",
                details={"action_type": action_type, "status_code": response.status_code}
            )
        try:
            return response.json()
        except ValueError:
            return {"status_code": response.status_code}

    def _headers(self, extra: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id
        for key, value in (extra or {}).items():
            headers[str(key)] = str(value)
        return headers
