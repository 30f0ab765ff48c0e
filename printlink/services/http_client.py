"""
Shared HTTP client with fixed connect/read timeouts for the storefront platforms and the production API.
Failures are surfaced as typed ExternalApiError kinds; nothing here retries.
"""
import logging
from typing import Any, Optional

import httpx

from printlink.config import settings
from printlink.errors import ExternalApiError

logger = logging.getLogger(__name__)


def default_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        settings.HTTP_READ_TIMEOUT,
        connect=settings.HTTP_CONNECT_TIMEOUT,
        read=settings.HTTP_READ_TIMEOUT,
    )


def async_client(transport: Optional[httpx.AsyncBaseTransport] = None, **kwargs: Any) -> httpx.AsyncClient:
    """AsyncClient with the configured timeouts. Tests pass an httpx.MockTransport."""
    kwargs.setdefault("timeout", default_timeout())
    if transport is not None:
        kwargs["transport"] = transport
    return httpx.AsyncClient(**kwargs)


async def send_request(
    method: str,
    url: str,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **kwargs: Any,
) -> httpx.Response:
    """
    Single-attempt request. Timeouts and connection failures raise ExternalApiError(kind="transport");
    HTTP status codes are returned to the caller to classify.
    """
    try:
        async with async_client(transport) as client:
            return await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        logger.warning("HTTP %s %s timed out: %s", method, url, e)
        raise ExternalApiError("Request timed out", kind=ExternalApiError.TRANSPORT) from e
    except httpx.TransportError as e:
        logger.warning("HTTP %s %s connection failed: %s", method, url, e)
        raise ExternalApiError("Connection error", kind=ExternalApiError.TRANSPORT) from e
