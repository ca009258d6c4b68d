"""Async Data API client: recent trades, open positions, closed positions.

This is the trade/position source the reconciler polls. Requests are retried
with exponential backoff; rows that fail validation are logged and dropped.
"""
from __future__ import annotations

import logging
from typing import Any, Iterable

import httpx
from pydantic import BaseModel, ValidationError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from polysignal.clients.models import ClosedPosition, Position, Trade
from polysignal.config import DataAPIConfig

log = logging.getLogger("data_api")


class DataAPIError(Exception):
    """Data API request failed after retries or returned an unusable payload."""


class RateLimitError(Exception):
    """HTTP 429 from the Data API."""


class ServerError(Exception):
    """HTTP 5xx from the Data API."""


def _batches(items: list[str], size: int) -> Iterable[list[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class DataAPIClient:
    def __init__(
        self,
        config: DataAPIConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or DataAPIConfig()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=httpx.Timeout(self.config.timeout),
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def __aenter__(self) -> "DataAPIClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    @retry(
        retry=(
            retry_if_exception_type(httpx.TransportError)
            | retry_if_exception_type((RateLimitError, ServerError))
        ),
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=1, min=1, max=30),
        before_sleep=before_sleep_log(log, logging.WARNING),
        reraise=True,
    )
    async def _get(self, endpoint: str, params: dict[str, Any]) -> Any:
        resp = await self.client.get(endpoint, params=params)

        if resp.status_code == 429:
            raise RateLimitError(
                f"Rate limited on {endpoint} (retry-after={resp.headers.get('Retry-After', '?')})"
            )
        if 500 <= resp.status_code < 600:
            raise ServerError(f"Server error {resp.status_code} on {endpoint}")

        resp.raise_for_status()
        return resp.json()

    async def _get_list(self, endpoint: str, params: dict[str, Any]) -> list[dict]:
        try:
            payload = await self._get(endpoint, params)
        except (httpx.HTTPError, RateLimitError, ServerError) as e:
            raise DataAPIError(f"GET {endpoint} failed: {e}") from e
        except ValueError as e:
            raise DataAPIError(f"GET {endpoint} returned invalid JSON: {e}") from e

        if not isinstance(payload, list):
            raise DataAPIError(f"GET {endpoint} returned {type(payload).__name__}, expected list")
        return payload

    @staticmethod
    def _parse(rows: list[dict], model: type[BaseModel], what: str) -> list:
        parsed = []
        for row in rows:
            try:
                parsed.append(model.model_validate(row))
            except ValidationError as e:
                log.error(f"Failed to parse {what}: {e.error_count()} error(s)")
                log.debug(f"{what} data: {row}")
        return parsed

    async def get_recent_trades(self, wallet: str, limit: int = 50) -> list[Trade]:
        """Fetch the wallet's most recent taker trades (newest first)."""
        rows = await self._get_list(
            "/trades",
            {"user": wallet, "limit": limit, "offset": 0, "takerOnly": "true"},
        )
        return self._parse(rows, Trade, "trade")

    async def get_positions(
        self,
        wallet: str,
        condition_ids: Iterable[str] | None = None,
    ) -> list[Position]:
        """Fetch open positions, batching condition ids to keep URLs short."""
        ids = sorted(set(condition_ids or []))
        if not ids:
            rows = await self._get_list(
                "/positions",
                {"user": wallet, "limit": self.config.positions_limit},
            )
            return self._parse(rows, Position, "position")

        positions: list[Position] = []
        for batch in _batches(ids, self.config.condition_batch_size):
            rows = await self._get_list(
                "/positions",
                {
                    "user": wallet,
                    "market": ",".join(batch),
                    "limit": self.config.positions_limit,
                },
            )
            positions.extend(self._parse(rows, Position, "position"))
        return positions

    async def get_closed_positions(
        self,
        wallet: str,
        condition_ids: Iterable[str] | None = None,
    ) -> list[ClosedPosition]:
        """Fetch closed position summaries for the given markets."""
        ids = sorted(set(condition_ids or []))
        if not ids:
            rows = await self._get_list(
                "/closed-positions",
                {"user": wallet, "limit": self.config.positions_limit},
            )
            return self._parse(rows, ClosedPosition, "closed position")

        closed: list[ClosedPosition] = []
        for batch in _batches(ids, self.config.condition_batch_size):
            rows = await self._get_list(
                "/closed-positions",
                {
                    "user": wallet,
                    "market": ",".join(batch),
                    "limit": self.config.positions_limit,
                },
            )
            closed.extend(self._parse(rows, ClosedPosition, "closed position"))
        return closed
