"""
SMS gateway client — submits messages and looks up delivery status.

The provider speaks JSON over HTTPS:
  POST /sms              {"from", "to", "text"}  → {"messageId"|"message_id", "status"}
  GET  /sms/{messageId}                           → {"deliveryStatus", "updatedAt"}

Errors are classified so the queue knows what to do with them:
  timeouts, connection errors, 429 and 5xx  → TransientGatewayError (retry)
  any other 4xx / malformed response         → PermanentGatewayError (give up)

Sends are never retried inside the client: a timed-out POST may still have
been accepted, and the queue's bounded retry is the only retry loop.
Status lookups are idempotent and retried here with tenacity.
"""
from __future__ import annotations

import abc
import uuid
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import GatewayConfig, get_settings
from core.errors import GatewayError, PermanentGatewayError, TransientGatewayError
from models.schemas import GatewayMessageStatus, SendResult

logger = structlog.get_logger()


class SmsGateway(abc.ABC):
    """Abstract interface for the SMS provider."""

    name: str = "gateway"

    @abc.abstractmethod
    async def send(self, sender: str, to: str, text: str) -> SendResult:
        """Submit one message. Raises GatewayError."""
        ...

    @abc.abstractmethod
    async def get_status(self, message_id: str) -> GatewayMessageStatus:
        """Current provider-side status of a submitted message."""
        ...

    async def close(self):
        pass


def _classify(response: httpx.Response) -> Optional[GatewayError]:
    code = response.status_code
    if code < 400:
        return None
    detail = response.text[:200]
    if code == 429 or code >= 500:
        return TransientGatewayError(f"Gateway returned {code}: {detail}", status_code=code)
    return PermanentGatewayError(f"Gateway rejected request ({code}): {detail}", status_code=code)


# ──────────────────────────────────────────────────────────────
#  HTTP implementation
# ──────────────────────────────────────────────────────────────

class HttpSmsGateway(SmsGateway):
    name = "mitto"

    def __init__(self, config: GatewayConfig = None, transport: httpx.AsyncBaseTransport = None):
        self.config = config or get_settings().gateway
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={
                    "x-mitto-api-key": self.config.api_key,
                    "Content-Type": "application/json",
                },
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self.client

    async def _request(self, method: str, url: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientGatewayError(f"Gateway timeout: {e}") from e
        except httpx.TransportError as e:
            raise TransientGatewayError(f"Gateway connection error: {e}") from e

        error = _classify(response)
        if error is not None:
            raise error
        try:
            return response.json()
        except ValueError as e:
            raise PermanentGatewayError(f"Gateway returned invalid JSON: {e}",
                                        status_code=response.status_code) from e

    async def send(self, sender: str, to: str, text: str) -> SendResult:
        data = await self._request("POST", "/sms", json={"from": sender, "to": to, "text": text})
        message_id = data.get("messageId") or data.get("message_id")
        if not message_id:
            raise PermanentGatewayError("Gateway response carried no message id")
        logger.info("sms_submitted", provider=self.name, to=to, message_id=message_id)
        return SendResult(message_id=str(message_id), status=data.get("status") or "Queued")

    @retry(
        retry=retry_if_exception_type(TransientGatewayError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        reraise=True,
    )
    async def get_status(self, message_id: str) -> GatewayMessageStatus:
        data = await self._request("GET", f"/sms/{message_id}")
        return GatewayMessageStatus(
            message_id=message_id,
            delivery_status=data.get("deliveryStatus") or data.get("delivery_status"),
            updated_at=data.get("updatedAt") or data.get("updated_at"),
        )

    async def close(self):
        if self.client:
            await self.client.aclose()


# ──────────────────────────────────────────────────────────────
#  Mock implementation
# ──────────────────────────────────────────────────────────────

class MockSmsGateway(SmsGateway):
    """
    In-process gateway for development and tests.

    Records every submission; ``fail_numbers`` maps a phone number to the
    exception raised when sending to it, ``statuses`` overrides the status
    returned for a message id.
    """

    name = "mock"

    def __init__(self, default_status: str = "Delivered"):
        self.default_status = default_status
        self.sent: list[dict[str, Any]] = []
        self.fail_numbers: dict[str, Exception] = {}
        self.statuses: dict[str, str] = {}

    async def send(self, sender: str, to: str, text: str) -> SendResult:
        if to in self.fail_numbers:
            raise self.fail_numbers[to]
        message_id = f"mock_{uuid.uuid4().hex[:12]}"
        self.sent.append({"from": sender, "to": to, "text": text, "message_id": message_id})
        return SendResult(message_id=message_id, status="Queued")

    async def get_status(self, message_id: str) -> GatewayMessageStatus:
        return GatewayMessageStatus(
            message_id=message_id,
            delivery_status=self.statuses.get(message_id, self.default_status),
            updated_at=datetime.now(timezone.utc),
        )


def create_sms_gateway(config: GatewayConfig = None) -> SmsGateway:
    """Factory function to create the configured gateway."""
    config = config or get_settings().gateway
    if config.provider == "http" and config.base_url:
        return HttpSmsGateway(config)
    logger.warning("using_mock_gateway", reason="gateway provider is not http or base_url empty")
    return MockSmsGateway()
