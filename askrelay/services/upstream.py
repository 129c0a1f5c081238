"""HTTP client for the upstream chat-completion provider.

One `UpstreamClient` is built at process start and shared read-only by every
request. Keep-alive is switched off, so each request opens (and closes) its
own connection to the provider. There is no pooling: under real load this is
the first place to look.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from askrelay.config import Settings
from askrelay.services.errors import UpstreamError

logger = logging.getLogger(__name__)


class UpstreamStream:
    """An open, successful streaming response from the provider."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    @property
    def is_closed(self) -> bool:
        return self._response.is_closed

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        """Yield raw body chunks exactly as the transport delivers them."""
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Upstream stream interrupted: {exc}") from exc

    async def aclose(self) -> None:
        if not self._response.is_closed:
            await self._response.aclose()


class UpstreamClient:
    """Thin wrapper around ``httpx.AsyncClient`` for streamed completions."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = settings.upstream_url
        self.model = settings.upstream_model
        self.system_prompt = settings.system_prompt

        headers = {
            "Authorization": f"Bearer {settings.upstream_api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        # Optional attribution headers understood by OpenRouter
        if settings.upstream_referer:
            headers["HTTP-Referer"] = settings.upstream_referer
        if settings.upstream_title:
            headers["X-Title"] = settings.upstream_title

        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(
                settings.upstream_read_timeout,
                connect=settings.upstream_connect_timeout,
            ),
            limits=httpx.Limits(max_keepalive_connections=0),
            transport=transport,
        )
        logger.info("Upstream client ready: url=%s model=%s", self.url, self.model)

    def build_payload(self, question: str) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": question},
            ],
            "stream": True,
        }

    async def open_stream(self, question: str) -> UpstreamStream:
        """Start a streamed completion for *question*.

        Raises ``UpstreamError`` when the provider cannot be reached or
        answers with a non-success status; in the latter case the raw error
        body is captured on the exception and the response is closed.
        """
        request = self._client.build_request("POST", self.url, json=self.build_payload(question))
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            logger.error("Upstream connection failed: %s", exc)
            raise UpstreamError(f"Upstream connection failed: {exc}") from exc

        if not response.is_success:
            try:
                raw = await response.aread()
            except httpx.HTTPError:
                raw = b""
            finally:
                await response.aclose()
            body = raw.decode("utf-8", errors="replace")
            logger.error("Upstream API error %s: %s", response.status_code, body)
            raise UpstreamError(
                f"Upstream returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=body,
            )

        return UpstreamStream(response)

    async def aclose(self) -> None:
        await self._client.aclose()
