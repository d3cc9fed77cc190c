"""Shared aiohttp plumbing for the orchestrator and storage clients."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional, Tuple

import aiohttp
from aiohttp import ClientConnectorError, ClientError

from upletworker.utils.errors import NetworkError

logger = logging.getLogger(__name__)


class BasicAuthClient:
    """HTTP client bound to one service with basic auth and a per-request timeout."""

    def __init__(
        self,
        base_url: str,
        user: str,
        password: str,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth = aiohttp.BasicAuth(user, password)
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def url(self, *parts: Any) -> str:
        return "/".join([self.base_url] + [str(p).strip("/") for p in parts])

    async def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(auth=self.auth, timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def request(self, method: str, url: str, **kwargs: Any) -> Tuple[int, bytes]:
        """Send a request and return ``(status, body)``.

        Connection failures and timeouts surface as :class:`NetworkError`.
        """
        session = await self.session()
        if not self._owns_session:
            kwargs.setdefault("auth", self.auth)
        try:
            async with session.request(method, url, **kwargs) as response:
                body = await response.read()
                return response.status, body
        except asyncio.TimeoutError as e:
            raise NetworkError(f"{method} timed out", url=url, original_error=e) from e
        except ClientConnectorError as e:
            raise NetworkError(f"cannot connect: {e}", url=url, original_error=e) from e
        except ClientError as e:
            raise NetworkError(f"{method} failed: {e}", url=url, original_error=e) from e

    @staticmethod
    def error_message(body: bytes) -> str:
        """Extract the ``{"error": ...}`` message a service returns, else the raw body."""
        text = body.decode("utf-8", errors="replace")
        try:
            payload = json.loads(text)
        except ValueError:
            return text
        if isinstance(payload, dict) and "error" in payload:
            return str(payload["error"])
        return text

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None
