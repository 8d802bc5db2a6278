"""Best-effort reachability checks for URLs found in tool arguments."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

import httpx

logger = logging.getLogger(__name__)

URL_PATTERN = re.compile(
    r"https?://(?:www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b[-a-zA-Z0-9()@:%_+.~#?&/=]*",
    re.IGNORECASE,
)
USER_AGENT = "vbox-mcp-url-guard/1.0"


def extract_urls(args: Any) -> list[str]:
    text = json.dumps(args, default=str)
    seen: dict[str, None] = {}
    for match in URL_PATTERN.findall(text):
        seen.setdefault(match, None)
    return list(seen)


class UrlGuard:
    """HEAD every URL in a payload; failures become warnings, never errors."""

    def __init__(
        self,
        *,
        timeout: float = 5.0,
        enabled: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.enabled = enabled
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            verify=False,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
            transport=self._transport,
        )

    async def _probe(self, client: httpx.AsyncClient, url: str) -> str | None:
        try:
            response = await client.head(url)
        except httpx.HTTPError as exc:
            return f"Could not verify '{url}': {exc.__class__.__name__}: {exc}. Proceeding anyway."
        if response.status_code >= 400:
            return f"Could not verify '{url}': HTTP {response.status_code}. Proceeding anyway."
        return None

    async def check(self, args: Any) -> list[str]:
        if not self.enabled:
            return []
        urls = extract_urls(args)
        if not urls:
            return []
        async with self._client() as client:
            outcomes = await asyncio.gather(*(self._probe(client, url) for url in urls))
        warnings = [item for item in outcomes if item]
        for warning in warnings:
            logger.warning(warning)
        return warnings

    async def content_length(self, url: str) -> int | None:
        """Return the advertised Content-Length of ``url`` or ``None``."""

        try:
            async with self._client() as client:
                response = await client.head(url)
        except httpx.HTTPError as exc:
            logger.debug("Content-Length lookup failed", extra={"url": url, "error": str(exc)})
            return None
        if response.status_code >= 400:
            return None
        raw = response.headers.get("content-length")
        if raw and raw.isdigit() and int(raw) > 0:
            return int(raw)
        return None


__all__ = ["UrlGuard", "URL_PATTERN", "extract_urls"]
