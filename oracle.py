# oracle.py
"""
TikShot — OracleFeedClient (Pyth Hermes).

latest_update() returns the signed accumulator update(s) the receiver program
needs plus the parsed price; stream_prices() follows the SSE endpoint for live
display.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional
import base64
import json

import httpx

from config import settings
from errors import OracleUnavailable


@dataclass(frozen=True)
class PriceUpdate:
    feed_id: str
    price: int
    conf: int
    expo: int
    publish_time: int
    binary: List[bytes] = field(default_factory=list)


def _norm_id(feed_id: str) -> str:
    v = (feed_id or "").strip().lower()
    return v[2:] if v.startswith("0x") else v


def _parse_price(item: dict) -> PriceUpdate:
    p = item.get("price") or {}
    return PriceUpdate(
        feed_id=_norm_id(item.get("id", "")),
        price=int(p["price"]),
        conf=int(p.get("conf", 0)),
        expo=int(p["expo"]),
        publish_time=int(p.get("publish_time", 0)),
    )


class OracleFeedClient:
    def __init__(
        self,
        base_url: str = settings.HERMES_URL,
        feed_id: str = settings.PYTH_FEED_ID,
        timeout: float = settings.HERMES_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.feed_id = _norm_id(feed_id)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "OracleFeedClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def latest_update(self) -> PriceUpdate:
        """Latest signed update for the feed; OracleUnavailable on any failure or empty answer."""
        try:
            r = await self._client.get(
                "/v2/updates/price/latest",
                params={"ids[]": self.feed_id, "encoding": "base64", "parsed": "true"},
            )
            r.raise_for_status()
            body = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise OracleUnavailable(f"Hermes request failed: {e}") from e

        data = ((body or {}).get("binary") or {}).get("data") or []
        if not data:
            raise OracleUnavailable(f"Hermes returned no update for feed {self.feed_id}")
        parsed = [x for x in (body.get("parsed") or []) if _norm_id(x.get("id", "")) == self.feed_id]
        if not parsed:
            raise OracleUnavailable(f"Hermes response has no parsed price for feed {self.feed_id}")

        try:
            base = _parse_price(parsed[0])
            binary = [base64.b64decode(d) for d in data]
        except (KeyError, TypeError, ValueError) as e:
            raise OracleUnavailable(f"Malformed Hermes payload: {e}") from e
        return PriceUpdate(base.feed_id, base.price, base.conf, base.expo, base.publish_time, binary)

    async def stream_prices(self) -> AsyncIterator[PriceUpdate]:
        """Parsed prices from the SSE stream, one per `data:` event for this feed."""
        params = {
            "ids[]": self.feed_id,
            "parsed": "true",
            "allow_unordered": "true",
            "benchmarks_only": "false",
        }
        try:
            async with self._client.stream("GET", "/v2/updates/price/stream", params=params, timeout=None) as r:
                r.raise_for_status()
                async for line in r.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        event = json.loads(line[5:].strip())
                    except ValueError:
                        continue
                    for item in event.get("parsed") or []:
                        if _norm_id(item.get("id", "")) == self.feed_id:
                            yield _parse_price(item)
        except httpx.HTTPError as e:
            raise OracleUnavailable(f"Hermes stream failed: {e}") from e
