"""Webhook Message Sender - Posts outbound messages to the messaging gateway"""
from typing import Any, Dict, Optional

import httpx

from ..config.settings import settings
from ..domain.models import SendResult
from ..utils.logger import get_logger, get_correlation_id

logger = get_logger(__name__)


class WebhookMessageSender:
    """
    Delivers flow and drip messages through an HTTP gateway

    The gateway owns channel specifics (WhatsApp templates, media upload).
    A non-2xx answer or a transport error becomes an unsuccessful
    SendResult; the caller decides whether to retry.
    """

    def __init__(
        self,
        gateway_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.gateway_url = gateway_url or settings.message_gateway_url
        self.timeout = timeout or settings.http_timeout_seconds
        self._transport = transport

    async def send(self, contact: Dict[str, Any], content: Dict[str, Any]) -> SendResult:
        if not self.gateway_url:
            return SendResult(success=False, error="No message gateway configured")
        if not contact.get("phone") and not contact.get("contact_id"):
            return SendResult(success=False, error="Contact has no phone or id")

        headers = {"Content-Type": "application/json"}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    self.gateway_url,
                    json={"to": contact, "message": content},
                    headers=headers,
                )
            except httpx.TimeoutException:
                return SendResult(success=False, error="Message gateway timeout")
            except httpx.RequestError as e:
                logger.warning(f"Message gateway request failed: {e}", extra={"contact_id": contact.get("contact_id")})
                return SendResult(success=False, error=str(e))

        if response.status_code >= 400:
            return SendResult(success=False, error=f"Message gateway returned {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        return SendResult(success=True, message_id=data.get("message_id") or data.get("id"))
