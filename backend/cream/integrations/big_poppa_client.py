"""big-poppa organization registry client."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cream.core.config import settings
from cream.core.exceptions import ExternalServiceError, NotFoundException
from cream.core.logging import logger
from cream.schemas import Organization, OrganizationFilter, OrganizationUpdate

SERVICE_NAME = "big-poppa"


class BigPoppaRateLimitError(Exception):
    """Custom exception for big-poppa rate limit errors."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        """Initialize big-poppa rate limit error.

        Args:
            message: Error message
            retry_after: Number of seconds to wait before retrying
        """
        super().__init__(message)
        self.retry_after = retry_after


class BigPoppaClient:
    """Client for the big-poppa organization API.

    Rate-limited requests are retried here, with exponential back-off. Once
    retries are exhausted, or on any other failure, the error is raised as an
    ``ExternalServiceError`` (or ``NotFoundException`` for 404s).
    """

    MAX_RETRIES = 5
    MIN_RETRY_WAIT = 1  # seconds
    MAX_RETRY_WAIT = 30  # seconds

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the big-poppa client.

        Args:
            base_url: Registry URL, defaults to ``settings.big_poppa_url``.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = (base_url or settings.big_poppa_url).rstrip("/")
        self.timeout = timeout or settings.BIG_POPPA_TIMEOUT
        self.transport = transport

    def _get_retry_after(self, response: httpx.Response) -> Optional[int]:
        """Extract retry-after header value from response."""
        retry_after = response.headers.get("retry-after")
        if retry_after:
            try:
                return int(retry_after)
            except ValueError:
                logger.warning(f"Invalid retry-after header value: {retry_after}")
        return None

    @retry(
        retry=retry_if_exception_type(BigPoppaRateLimitError),
        stop=stop_after_attempt(MAX_RETRIES),
        wait=wait_exponential(multiplier=1, min=MIN_RETRY_WAIT, max=MAX_RETRY_WAIT),
        before_sleep=before_sleep_log(logger, logging.INFO),
        reraise=True,
    )
    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, str]] = None,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Make a request to big-poppa, retrying on rate limits."""
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self.transport
        ) as client:
            response = await client.request(method, endpoint, params=params, json=json_data)

        if response.status_code == 429:
            retry_after = self._get_retry_after(response)
            error_msg = "big-poppa rate limit exceeded"
            if retry_after:
                logger.warning(f"{error_msg}. Retry after {retry_after} seconds.")
                await asyncio.sleep(retry_after)
            raise BigPoppaRateLimitError(error_msg, retry_after)

        if response.status_code == 404:
            raise NotFoundException(f"{method} {endpoint} returned 404", endpoint=endpoint)

        response.raise_for_status()
        return response.json()

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        """Make a request and translate transport failures."""
        try:
            return await self._make_request(method, endpoint, **kwargs)
        except NotFoundException:
            raise
        except BigPoppaRateLimitError as e:
            raise ExternalServiceError(SERVICE_NAME, f"{method} {endpoint}: {e}") from e
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                SERVICE_NAME,
                f"{method} {endpoint} returned {e.response.status_code}",
            ) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(SERVICE_NAME, f"{method} {endpoint} failed: {e}") from e

    async def get_organizations(self, filter: OrganizationFilter) -> List[Organization]:
        """Return organizations matching every predicate in ``filter``."""
        data = await self._request("GET", "/organization/", params=filter.to_query_params())
        return [Organization.model_validate(item) for item in data or []]

    async def get_organization(self, organization_id: int) -> Organization:
        """Return one organization.

        Raises:
            NotFoundException: If the organization does not exist.
        """
        data = await self._request("GET", f"/organization/{organization_id}")
        return Organization.model_validate(data)

    async def update_organization(
        self, organization_id: int, update: OrganizationUpdate
    ) -> Organization:
        """Patch the fields set on ``update`` and return the updated organization."""
        data = await self._request(
            "PATCH", f"/organization/{organization_id}", json_data=update.to_payload()
        )
        logger.debug(f"Updated organization {organization_id}: {sorted(update.to_payload())}")
        return Organization.model_validate(data)
