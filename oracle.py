# oracle.py
"""
Pyth Hermes price client.

Prices are handed to the program as integer cents, so the float-free
conversion lives here:

    cents = round(mantissa * 10**expo * 100)     (half-up)

e.g. mantissa=13196000000, expo=-8  ->  131.96  ->  13196
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal, DecimalException
from typing import Any, Optional, Union

import httpx

from errors import OracleUnavailable

logger = logging.getLogger(__name__)


def price_to_cents(mantissa: Union[int, str], expo: int) -> int:
    """Exact decimal conversion of a Pyth (price, expo) pair to cents."""
    try:
        value = Decimal(int(mantissa)).scaleb(int(expo) + 2)
        return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    except (TypeError, ValueError, DecimalException) as e:
        raise OracleUnavailable(f"Bad price fields: price={mantissa!r} expo={expo!r}") from e


class PythOracle:
    """Fetches the latest price for one feed id. No caching, no retries."""

    def __init__(
        self,
        base_url: str,
        feed_id: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.feed_id = feed_id
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def url(self) -> str:
        return f"{self.base_url}/v2/updates/price/latest"

    async def fetch_price(self) -> int:
        """Return the current price in cents or raise OracleUnavailable."""
        try:
            resp = await self._client.get(self.url, params={"ids[]": self.feed_id})
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPError as e:
            raise OracleUnavailable(f"Price fetch failed: {e}") from e
        except ValueError as e:
            raise OracleUnavailable(f"Price payload is not JSON: {e}") from e

        price = _extract_price(payload)
        cents = price_to_cents(price.get("price"), price.get("expo"))
        if cents <= 0:
            raise OracleUnavailable(f"Non-positive price from oracle: {cents}")
        logger.debug("oracle price %s cents (feed %s...)", cents, self.feed_id[:8])
        return cents

    async def aclose(self) -> None:
        await self._client.aclose()


def _extract_price(payload: Any) -> dict:
    # {"parsed": [{"id": ..., "price": {"price": "13196000000", "expo": -8, ...}}]}
    try:
        price = payload["parsed"][0]["price"]
    except (KeyError, IndexError, TypeError) as e:
        raise OracleUnavailable(f"Malformed oracle payload: missing parsed[0].price ({e})") from e
    if not isinstance(price, dict) or "price" not in price or "expo" not in price:
        raise OracleUnavailable("Malformed oracle payload: price/expo missing")
    return price
