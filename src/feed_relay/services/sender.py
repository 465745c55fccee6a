"""Message sender boundary and the HTTP gateway client.

The dispatch core only depends on the MessageSender protocol. The shipped
implementation talks to a messaging gateway over HTTP and maps its failures
onto retriable and permanent send errors. It includes:

- Lazily created httpx client guarded by a lock
- Circuit breaker that fails fast while the gateway keeps erroring
- Session start and stop calls used by the lease holder
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import httpx

from feed_relay.core.errors import PermanentSendError, RetriableSendError, SendError
from feed_relay.core.settings import settings
from feed_relay.models import Destination
from feed_relay.schemas.dispatch import DeliveryOptions

logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_OK = 200
HTTP_TOO_MANY_REQUESTS = 429
HTTP_INTERNAL_SERVER_ERROR = 500
HTTP_BAD_REQUEST = 400


class SenderStatus(Enum):
    """Local view of the messaging session."""

    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    ERROR = "error"


class CircuitState(Enum):
    """Circuit breaker states for the gateway connection."""

    CLOSED = "closed"      # Normal operation - requests allowed
    OPEN = "open"          # Circuit is open - requests blocked
    HALF_OPEN = "half_open"  # Testing if gateway is back - limited requests allowed


@dataclass
class CircuitBreaker:
    """Circuit breaker for gateway operations."""

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    success_threshold: int = 2
    clock: Callable[[], float] = time.monotonic

    _state: CircuitState = CircuitState.CLOSED
    _failure_count: int = 0
    _success_count: int = 0
    _last_failure_time: float = 0.0

    def is_open(self) -> bool:
        """Check if circuit is open."""
        if self._state == CircuitState.OPEN:
            if self.clock() - self._last_failure_time > self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
            return self._state == CircuitState.OPEN
        return False

    def record_success(self) -> None:
        """Record a successful operation."""
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self) -> None:
        """Record a failed operation."""
        self._failure_count += 1
        self._last_failure_time = self.clock()
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN

    @property
    def state(self) -> CircuitState:
        """Return the current circuit breaker state."""
        return self._state


@dataclass(frozen=True)
class OutboundMessage:
    """Rendered content handed to the sender."""

    text: str
    options: DeliveryOptions = field(default_factory=DeliveryOptions)


@dataclass(frozen=True)
class SendReceipt:
    """Transport acknowledgement for an accepted message."""

    external_message_id: str | None


class MessageSender(Protocol):
    """Boundary for the external messaging session."""

    @property
    def status(self) -> SenderStatus:
        """Return the current session status."""
        ...

    async def start(self) -> None:
        """Open the external session; called only by the lease holder."""
        ...

    async def close(self) -> None:
        """Close the external session."""
        ...

    async def send(self, destination: Destination, message: OutboundMessage) -> SendReceipt:
        """Deliver one message; raise RetriableSendError or PermanentSendError."""
        ...


@dataclass(frozen=True)
class SenderConfig:
    """Immutable configuration for the gateway client."""

    base_url: str | None
    token: str | None
    timeout_seconds: float
    instance_id: str


def load_sender_config() -> SenderConfig:
    """Build configuration object from global settings."""
    return SenderConfig(
        base_url=settings.sender_gateway_url,
        token=settings.sender_gateway_token,
        timeout_seconds=float(settings.sender_http_timeout_seconds),
        instance_id=settings.instance_id,
    )


class HttpMessageSender:
    """HTTP client wrapper for the messaging gateway."""

    def __init__(
        self,
        config: SenderConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_sender_config()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._circuit_breaker = CircuitBreaker()
        self._status = SenderStatus.STOPPED

    @property
    def enabled(self) -> bool:
        return bool(self.config.base_url)

    @property
    def status(self) -> SenderStatus:
        return self._status

    async def _ensure_client(self) -> httpx.AsyncClient:
        if not self.enabled:
            raise SendError("Messaging gateway is not configured")

        async with self._client_lock:
            if self._client is None:
                headers = {"X-Relay-Instance-Id": self.config.instance_id}
                if self.config.token:
                    headers["Authorization"] = f"Bearer {self.config.token}"
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url or "",
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    headers=headers,
                    transport=self._transport,
                )
        return self._client

    async def _request(
        self, method: str, path: str, json_data: dict[str, Any] | None = None
    ) -> httpx.Response:
        if self._circuit_breaker.is_open():
            raise RetriableSendError("Gateway circuit breaker is open - service unavailable")

        client = await self._ensure_client()
        try:
            response = await client.request(method, path, json=json_data)
        except httpx.TimeoutException as exc:
            self._circuit_breaker.record_failure()
            raise RetriableSendError(f"Gateway request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            self._circuit_breaker.record_failure()
            raise RetriableSendError(f"Gateway request failed: {exc}") from exc

        if response.status_code >= HTTP_INTERNAL_SERVER_ERROR:
            self._circuit_breaker.record_failure()
        else:
            self._circuit_breaker.record_success()
        return response

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or f"HTTP {response.status_code}"
        if isinstance(body, dict):
            return str(body.get("error") or body.get("detail") or body)
        return str(body)

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < HTTP_BAD_REQUEST:
            return
        detail = self._error_detail(response)
        if status == HTTP_TOO_MANY_REQUESTS or status >= HTTP_INTERNAL_SERVER_ERROR:
            raise RetriableSendError(f"Gateway responded with {status}: {detail}")
        raise PermanentSendError(f"Gateway rejected message ({status}): {detail}")

    async def start(self) -> None:
        """Open the gateway session for this instance."""
        self._status = SenderStatus.STARTING
        try:
            response = await self._request("POST", "/session/start")
            self._raise_for_status(response)
        except SendError:
            self._status = SenderStatus.ERROR
            raise
        self._status = SenderStatus.READY
        logger.info("Messaging session started for %s", self.config.instance_id)

    async def send(self, destination: Destination, message: OutboundMessage) -> SendReceipt:
        """Send one message to ``destination`` through the gateway.

        Raises:
            PermanentSendError: For rejected destinations or content
            RetriableSendError: For timeouts, rate limits and gateway errors
        """
        if self._status is not SenderStatus.READY:
            raise RetriableSendError("Messaging session is not ready")

        payload = {
            "to": destination.address,
            "kind": destination.kind.value,
            "text": message.text,
            "options": message.options.model_dump(),
        }
        response = await self._request("POST", "/messages", payload)
        self._raise_for_status(response)

        try:
            body = response.json()
        except ValueError:
            body = {}
        message_id = body.get("id") if isinstance(body, dict) else None
        return SendReceipt(external_message_id=str(message_id) if message_id else None)

    async def close(self) -> None:
        """Stop the gateway session and release HTTP client resources."""
        async with self._client_lock:
            client = self._client
            self._client = None
        if client is not None:
            if self._status is SenderStatus.READY:
                try:
                    await client.post("/session/stop")
                except httpx.HTTPError as exc:
                    logger.warning("Failed to stop messaging session cleanly: %s", exc)
            await client.aclose()
        self._status = SenderStatus.STOPPED

    async def health_check(self) -> dict[str, Any]:
        """Report gateway reachability for the system endpoints."""
        if not self.enabled:
            return {"status": "disabled", "enabled": False}
        try:
            response = await self._request("GET", "/health")
        except SendError as exc:
            return {"status": "error", "enabled": True, "error": str(exc)}
        return {
            "status": "healthy" if response.status_code == HTTP_OK else "unhealthy",
            "enabled": True,
            "session": self._status.value,
            "circuit_breaker": self._circuit_breaker.state.value,
        }


class _SenderSingleton:
    """Singleton wrapper for HttpMessageSender."""

    _instance: HttpMessageSender | None = None

    @classmethod
    def get_instance(cls) -> HttpMessageSender:
        """Get or create the singleton sender instance."""
        if cls._instance is None:
            cls._instance = HttpMessageSender()
        return cls._instance


def get_message_sender() -> HttpMessageSender:
    """Return a singleton message sender instance."""
    return _SenderSingleton.get_instance()
