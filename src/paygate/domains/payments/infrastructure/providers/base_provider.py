"""Base gateway adapter with the shared HTTP plumbing."""

import asyncio
from abc import ABC
from typing import Any, Dict, Optional, Tuple, Union

import httpx
import structlog

from .....infrastructure.config.settings import GatewayConfig
from ...domain.exceptions import SignatureError
from ...domain.services import GatewayAdapter
from ...domain.value_objects import GatewayError

logger = structlog.get_logger(__name__)


class BaseGatewayAdapter(GatewayAdapter, ABC):
    """Base class for HTTP gateway adapters.

    Every outbound call goes through ``_make_request``, which never raises for
    vendor-side problems: timeouts, connection errors, 5xx and 429 come back as
    retryable ``GatewayError`` values, other 4xx as terminal ones.
    """

    default_base_url = ""

    def __init__(
        self,
        api_key: str,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        retry_backoff_seconds: float = 0.5,
        allow_unsigned_webhooks: bool = False,
        webhook_tolerance_seconds: int = 300,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.allow_unsigned_webhooks = allow_unsigned_webhooks
        self.webhook_tolerance_seconds = webhook_tolerance_seconds

        # HTTP client
        self._client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "BaseGatewayAdapter":
        credentials = config.active_credentials
        return cls(
            api_key=credentials.api_key.get_secret_value(),
            webhook_secret=config.webhook_secret_value,
            base_url=credentials.base_url,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            allow_unsigned_webhooks=config.allow_unsigned_webhooks,
            webhook_tolerance_seconds=config.webhook_tolerance_seconds,
            http_client=http_client,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_default_headers(self) -> Dict[str, str]:
        """Get default headers for API requests."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        json: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        idempotent: bool = False,
    ) -> Union[Dict[str, Any], GatewayError]:
        """Make HTTP request; retry transient failures only when ``idempotent``."""
        url = f"{self.base_url}{endpoint}"
        request_headers = {**self._get_default_headers(), **(headers or {})}
        retries = 0

        while True:
            error = await self._attempt(method, url, json, data, params, request_headers)
            if not isinstance(error, GatewayError):
                return error
            if not (error.retryable and idempotent and retries < self.max_retries):
                return error

            delay = self.retry_backoff_seconds * (2 ** retries)  # Exponential backoff
            logger.info(
                "Retrying gateway request",
                gateway=self.name,
                method=method,
                endpoint=endpoint,
                attempt=retries + 1,
                delay_seconds=delay,
            )
            await asyncio.sleep(delay)
            retries += 1

    async def _attempt(
        self,
        method: str,
        url: str,
        json: Optional[Dict[str, Any]],
        data: Optional[Dict[str, Any]],
        params: Optional[Any],
        headers: Dict[str, str],
    ) -> Union[Dict[str, Any], GatewayError]:
        try:
            response = await self.client.request(
                method,
                url,
                json=json,
                data=data,
                params=params,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            logger.warning("Gateway request timed out", gateway=self.name, url=url)
            return GatewayError.unavailable(self.name, f"Request timed out: {e}")
        except httpx.HTTPError as e:
            logger.warning("Gateway unreachable", gateway=self.name, url=url, error=str(e))
            return GatewayError.unavailable(self.name, f"Gateway unreachable: {e}")

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 500 or response.status_code == 429:
            message, code = self._extract_error(body)
            logger.warning(
                "Gateway temporarily unavailable",
                gateway=self.name,
                status_code=response.status_code,
                vendor_code=code,
            )
            return GatewayError.unavailable(
                self.name,
                message or f"Gateway returned HTTP {response.status_code}",
                status_code=response.status_code,
                vendor_code=code,
                raw_response=body if isinstance(body, dict) else None,
            )

        if response.status_code >= 400:
            message, code = self._extract_error(body)
            logger.info(
                "Gateway rejected request",
                gateway=self.name,
                status_code=response.status_code,
                vendor_code=code,
            )
            return GatewayError.rejected(
                self.name,
                message or f"Gateway returned HTTP {response.status_code}",
                status_code=response.status_code,
                vendor_code=code,
                raw_response=body if isinstance(body, dict) else None,
            )

        if not isinstance(body, dict):
            return GatewayError.unavailable(
                self.name,
                "Malformed response body",
                status_code=response.status_code,
            )

        return body

    def _extract_error(self, body: Any) -> Tuple[Optional[str], Optional[str]]:
        """Vendor error message and code from an error body."""
        if isinstance(body, dict):
            return body.get("message"), body.get("code")
        return None, None

    def _malformed(self, reason: str, body: Dict[str, Any]) -> GatewayError:
        logger.warning("Malformed gateway response", gateway=self.name, reason=reason)
        return GatewayError.unavailable(self.name, f"Malformed response: {reason}", raw_response=body)

    def _require_secret(self) -> Optional[str]:
        """Webhook secret, or None when unsigned deliveries are explicitly allowed."""
        if self.webhook_secret:
            return self.webhook_secret
        if self.allow_unsigned_webhooks:
            logger.warning("Accepting unsigned webhook by configuration", gateway=self.name)
            return None
        raise SignatureError(self.name, "No webhook secret configured")
