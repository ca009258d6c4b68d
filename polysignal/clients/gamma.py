"""Gamma API client for Polymarket market metadata.

Only used to label trades with a category (sports, politics, ...) so alerts
can be routed to the right channel.
"""
from __future__ import annotations

import logging

import httpx

from polysignal.config import GammaConfig
from polysignal.shared.categories import infer_category_from_tags

log = logging.getLogger("tracker")


class GammaClient:
    def __init__(
        self,
        config: GammaConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or GammaConfig()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._category_cache: dict[str, str | None] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self._client

    async def get_market_by_slug(self, slug: str, include_tag: bool = True) -> dict | None:
        """Fetch a market by slug. Returns None when not found or on error."""
        params = {"include_tag": "true"} if include_tag else None
        try:
            resp = await self.client.get(f"/markets/slug/{slug}", params=params)
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning(f"Gamma market lookup failed for {slug!r}: {e}")
            return None
        return data if isinstance(data, dict) else None

    async def get_market_category(self, slug: str | None) -> str | None:
        """Category inferred from the market's tags, cached per slug."""
        if not slug:
            return None
        if slug in self._category_cache:
            return self._category_cache[slug]

        market = await self.get_market_by_slug(slug, include_tag=True)
        if market is None:
            # not cached, retry on the next trade for this market
            return None

        category = infer_category_from_tags(market.get("tags") or [])
        self._category_cache[slug] = category
        return category

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
