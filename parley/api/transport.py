"""Streaming HTTP transport for provider adapters.

POSTs a request body and feeds every response line to the adapter, in
arrival order, on the calling task. Adapters never see httpx.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

import httpx

from parley.config import Settings
from parley.events import Callbacks
from parley.providers.base import Provider, ProviderError

logger = logging.getLogger(__name__)


class StreamTransport:
    """Owns one httpx.AsyncClient shared by all conversations."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = client

    async def start(self) -> None:
        """Initialize the httpx client with timeout settings."""
        if self._http is not None:
            return
        timeout = httpx.Timeout(
            connect=self._settings.api_timeout_connect,
            read=self._settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(timeout=timeout, limits=limits)
        logger.info("httpx client initialized")

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    async def send(
        self, provider: Provider, request_body: dict[str, Any], callbacks: Callbacks
    ) -> None:
        """Stream one request through ``provider``.

        An authentication error is retried once with fresh credentials and
        is not reported unless the retry fails too.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        for attempt in range(2):
            errors: list[str] = []
            retry_auth = attempt == 0

            def on_error(message: str) -> None:
                errors.append(message)
                if retry_auth and provider.is_auth_error(message):
                    return
                callbacks.on_error(message)

            await self._attempt(provider, request_body, replace(callbacks, on_error=on_error))

            if retry_auth and errors and provider.is_auth_error(errors[0]):
                logger.warning("%s authentication failed, refreshing credentials", provider.name)
                provider.reset(auth_only=True)
                continue
            return

    async def _attempt(
        self, provider: Provider, request_body: dict[str, Any], callbacks: Callbacks
    ) -> None:
        provider.reset()
        reported: list[str] = []

        def on_error(message: str) -> None:
            reported.append(message)
            callbacks.on_error(message)

        tracked = replace(callbacks, on_error=on_error)
        try:
            url = provider.endpoint()
            headers = provider.headers()
        except ProviderError as e:
            tracked.on_error(str(e))
            return

        try:
            async with self._http.stream("POST", url, json=request_body, headers=headers) as response:
                if response.status_code != 200:
                    logger.warning("%s returned HTTP %d", provider.name, response.status_code)
                body: list[str] = []
                async for line in response.aiter_lines():
                    if response.status_code != 200:
                        body.append(line)
                    provider.process_response_line(line, tracked)
                provider.finalize_response(tracked)
                if response.status_code != 200 and not reported:
                    text = "\n".join(body).strip()
                    tracked.on_error(f"HTTP {response.status_code}: {text[:500]}")
        except httpx.HTTPError as e:
            logger.error("%s request failed: %s", provider.name, e)
            tracked.on_error(f"HTTP error: {e}")
