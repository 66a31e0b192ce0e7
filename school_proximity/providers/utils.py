"""
Shared utilities for provider modules.
"""
import asyncio
import aiohttp
from typing import Optional, Dict, Any

from school_proximity.providers.base import ProviderError, ProviderAuthError, MalformedResponseError


AUTH_STATUSES = (401, 403)


async def _read_json(resp, url: str) -> Any:
    if resp.status in AUTH_STATUSES:
        raise ProviderAuthError(f"{url} rejected credentials (HTTP {resp.status})")
    if not 200 <= resp.status < 300:
        raise ProviderError(f"{url} returned HTTP {resp.status}")
    try:
        return await resp.json(content_type=None)
    except ValueError as e:
        raise MalformedResponseError(f"{url} returned invalid JSON: {e}") from e


async def http_get_json(
    session: aiohttp.ClientSession,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 15,
) -> Any:
    """
    GET a JSON document.

    Raises:
        ProviderAuthError: on HTTP 401/403
        ProviderError: on any other non-2xx status, network error or timeout
        MalformedResponseError: when the body is not JSON
    """
    try:
        async with session.get(url, params=params, headers=headers,
                               timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            return await _read_json(resp, url)
    except asyncio.TimeoutError as e:
        raise ProviderError(f"GET {url} timed out after {timeout}s") from e
    except aiohttp.ClientError as e:
        raise ProviderError(f"GET {url} failed: {e}") from e


async def http_post_json(
    session: aiohttp.ClientSession,
    url: str,
    data: Optional[Dict[str, Any]] = None,
    json_data: Optional[Any] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 15,
) -> Any:
    """
    POST form data or a JSON payload and read a JSON answer.

    Raises the same errors as ``http_get_json``.
    """
    try:
        async with session.post(url, data=data, json=json_data, headers=headers,
                                timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            return await _read_json(resp, url)
    except asyncio.TimeoutError as e:
        raise ProviderError(f"POST {url} timed out after {timeout}s") from e
    except aiohttp.ClientError as e:
        raise ProviderError(f"POST {url} failed: {e}") from e
