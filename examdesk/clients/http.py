import logging
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from examdesk.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class ServiceClient:
    """Base for JSON services reached over HTTP."""

    service_name = "service"

    def __init__(self, base_url: str, timeout: float = 60.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        logger.debug("%s API call: %s %s", self.service_name, method, path)
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{self.service_name} unreachable: {e}")
            raise ExternalServiceError(f"{self.service_name} unreachable")
        if response.is_error:
            logger.error("%s API error: %s - %s", self.service_name, response.status_code, response.text)
            raise ExternalServiceError(f"{self.service_name} error: {response.status_code}")
        try:
            return response.json()
        except ValueError:
            raise ExternalServiceError(f"{self.service_name} returned invalid JSON")

    async def _get(self, path: str, **kwargs) -> Any:
        """GET with retries; only idempotent calls go through here."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(ExternalServiceError),
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=0.2, max=2),
            reraise=True,
        ):
            with attempt:
                return await self._request("GET", path, **kwargs)

    async def _post(self, path: str, **kwargs) -> Any:
        return await self._request("POST", path, **kwargs)

    async def close(self) -> None:
        await self.client.aclose()
