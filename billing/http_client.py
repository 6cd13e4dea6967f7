"""Shared httpx.AsyncClient used by the provider gateways."""

import logging

import httpx

from billing.constants import HTTP_CONNECT_TIMEOUT, HTTP_TOTAL_TIMEOUT
from billing.errors import ProviderUnavailable

logger = logging.getLogger(__name__)

_client: httpx.AsyncClient | None = None


def _build_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(HTTP_TOTAL_TIMEOUT, connect=HTTP_CONNECT_TIMEOUT),
        headers={"User-Agent": "marketup-billing"},
    )


def get_http_client() -> httpx.AsyncClient:
    """Return the shared client, creating it lazily outside the app lifespan."""
    global _client
    if _client is None:
        _client = _build_client()
    return _client


async def init_http_client() -> None:
    global _client
    _client = _build_client()


async def close_http_client() -> None:
    global _client
    if _client:
        await _client.aclose()
        _client = None


async def send_provider_request(provider: str, method: str, url: str, **kwargs) -> httpx.Response:
    """Send a request to a provider API.

    Transport errors and 5xx answers become ProviderUnavailable. 4xx responses are
    returned to the caller, which knows what the provider's error bodies mean.
    """
    client = get_http_client()
    try:
        resp = await client.request(method, url, **kwargs)
    except httpx.HTTPError as e:
        logger.error("%s API request failed: %s %s: %s", provider, method, url, e)
        raise ProviderUnavailable(f"{provider} API unreachable") from e

    if resp.status_code >= 500:
        logger.error("%s API error %s for %s %s", provider, resp.status_code, method, url)
        raise ProviderUnavailable(f"{provider} API returned {resp.status_code}")
    return resp


def provider_json(provider: str, resp: httpx.Response, what: str) -> dict:
    """Decode a provider response body that must be a JSON object.

    Anything else means the provider misbehaved and becomes ProviderUnavailable.
    """
    try:
        body = resp.json()
    except ValueError as e:
        logger.error("%s %s response is not JSON (status %s)", provider, what, resp.status_code)
        raise ProviderUnavailable(f"{provider} returned an unreadable {what} response") from e
    if not isinstance(body, dict):
        logger.error("%s %s response is not an object (status %s)", provider, what, resp.status_code)
        raise ProviderUnavailable(f"{provider} returned an unreadable {what} response")
    return body
