"""Discord bot REST client used as the alert sink.

Handles are ``"<channel_id>:<message_id>"``; an alert posted to several
channels gets the per-channel handles joined by commas.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from polysignal.config import DiscordConfig
from polysignal.tracking.alerts import Alert, build_embed, route_channels

log = logging.getLogger("notify")


def split_handle(handle: str) -> list[tuple[str, str]]:
    """``"c1:m1,c2:m2"`` -> ``[("c1", "m1"), ("c2", "m2")]``. Bad parts are skipped."""
    parts = []
    for part in (handle or "").split(","):
        channel_id, sep, message_id = part.strip().partition(":")
        if sep and channel_id and message_id:
            parts.append((channel_id, message_id))
    return parts


def join_handles(parts: list[tuple[str, str]]) -> Optional[str]:
    return ",".join(f"{c}:{m}" for c, m in parts) if parts else None


class DiscordNotifier:
    def __init__(
        self,
        config: DiscordConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.api_url,
                timeout=self.config.timeout,
                headers={
                    "Authorization": f"Bot {self.config.token}",
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def _post(self, channel_id: str, payload: dict[str, Any]) -> Optional[str]:
        try:
            resp = await self.client.post(f"/channels/{channel_id}/messages", json=payload)
            resp.raise_for_status()
            message_id = resp.json().get("id")
        except (httpx.HTTPError, ValueError) as e:
            log.error(f"Discord send to channel {channel_id} failed: {e}")
            return None
        return str(message_id) if message_id else None

    async def send(self, alert: Alert) -> Optional[str]:
        channels = route_channels(self.config, alert)
        if not channels:
            log.warning(
                f"No Discord channel for {alert.kind} alert "
                f"(whale={alert.whale_category}, category={alert.trade_category})"
            )
            return None

        payload = {"embeds": [build_embed(alert)]}
        sent = []
        for channel_id in channels:
            message_id = await self._post(channel_id, payload)
            if message_id:
                sent.append((channel_id, message_id))
        return join_handles(sent)

    async def update(self, handle: str, alert: Alert) -> bool:
        parts = split_handle(handle)
        if not parts:
            return False
        payload = {"embeds": [build_embed(alert)]}
        ok = True
        for channel_id, message_id in parts:
            try:
                resp = await self.client.patch(
                    f"/channels/{channel_id}/messages/{message_id}", json=payload,
                )
                resp.raise_for_status()
            except httpx.HTTPError as e:
                log.error(f"Discord edit of {channel_id}:{message_id} failed: {e}")
                ok = False
        return ok

    async def reply(self, handle: str, alert: Alert) -> Optional[str]:
        embed = build_embed(alert)
        sent = []
        for channel_id, message_id in split_handle(handle):
            payload = {
                "embeds": [embed],
                "message_reference": {"message_id": message_id, "fail_if_not_exists": False},
            }
            reply_id = await self._post(channel_id, payload)
            if reply_id:
                sent.append((channel_id, reply_id))
        return join_handles(sent)
