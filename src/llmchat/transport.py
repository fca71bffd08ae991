"""HTTP transport for the chat-completions endpoint."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

import aiohttp

from .errors import APIError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.groq.com/openai/v1/chat/completions"


class ChatTransport(ABC):
    """Sends one request and exposes the streamed response body as lines."""

    @abstractmethod
    def stream_lines(self, payload: dict[str, Any]) -> AsyncIterator[bytes]:
        """POST ``payload`` and yield the response body line by line.

        Raises:
            TransportError: connection failure or timeout.
            APIError: the endpoint answered with a non-200 status.
        """

    async def close(self) -> None:  # noqa: B027
        """Release any pooled connections."""


class AiohttpTransport(ChatTransport):
    """:class:`ChatTransport` backed by an ``aiohttp.ClientSession``.

    The session is created lazily on first use and carries the bearer
    credential. Cancelling the task that consumes :meth:`stream_lines`
    aborts the in-flight request.
    """

    def __init__(
        self,
        api_key: str,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._api_url = api_url
        self._timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    @property
    def api_url(self) -> str:
        return self._api_url

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._session

    async def stream_lines(self, payload: dict[str, Any]) -> AsyncIterator[bytes]:
        session = self._get_session()
        try:
            async with session.post(self._api_url, json=payload) as response:
                if response.status != 200:
                    body = await response.text()
                    raise APIError(response.status, body)
                async for line in response.content:
                    yield line
        except TimeoutError as exc:
            msg = f"request timed out after {self._timeout}s"
            raise TransportError(msg) from exc
        except aiohttp.ClientError as exc:
            msg = f"error making request: {exc}"
            raise TransportError(msg) from exc

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        # Give the connector a tick to close its sockets.
        await asyncio.sleep(0)
