"""
Process-wide aiohttp session shared by discovery, routing and the result store.

Providers receive the session by reference and never close it; the owner
(the Quart app or the CLI) closes it through this manager.
"""

import asyncio
from typing import Optional

import aiohttp

from school_proximity import __version__
from school_proximity.config import Config, get_config


def connection_limits(config: Config) -> dict:
    """Connector limits sized for the widest routing fan-out a run can reach."""
    routing = config.routing_config
    if routing.global_concurrency > 0:
        per_host = routing.global_concurrency
    else:
        per_host = routing.concurrency * config.batch_config.max_size
    # discovery and persistence share the pool with routing
    return {"limit": per_host + config.batch_config.max_size + 10, "limit_per_host": per_host}


class SessionManager:
    """Lazily opens one session and hands it to every caller."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = self._open()
            return self._session

    def _open(self) -> aiohttp.ClientSession:
        # providers pass their own per-request timeouts; this only caps a stuck request
        return aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.get_timeout('session')),
            connector=aiohttp.TCPConnector(ttl_dns_cache=300, **connection_limits(self.config)),
            headers={
                'User-Agent': f'SchoolProximity/{__version__}',
                'Accept': 'application/json',
            },
        )

    async def close(self) -> None:
        async with self._lock:
            session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()

    async def __aenter__(self) -> aiohttp.ClientSession:
        return await self.get_session()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
