"""Pyth Network price feed that refreshes the in-process price oracle."""
import logging
import ssl

import aiohttp
import certifi

from ..config import PythConfig
from ..models import PRICE_PRECISION
from ..venues.oracle import StaticPriceOracle

logger = logging.getLogger(__name__)

PRICE_DECIMALS = 18


def scale_price(raw: int, expo: int) -> int:
    """Convert a Pyth ``(price, expo)`` pair to an 18-decimal integer without floats."""
    shift = PRICE_DECIMALS + expo
    if shift >= 0:
        return raw * 10**shift
    return raw // 10**-shift


class PythPriceFeed:
    """Fetch prices from Pyth Hermes, keyed by the asset symbols in ``feeds``."""

    def __init__(self, config: PythConfig, timeout: float = 15.0) -> None:
        self.hermes_url = config.hermes_url
        self.price_feeds = dict(config.feeds)
        self.timeout = timeout

    async def fetch_prices(self, symbols: list[str] | None = None) -> dict[str, int]:
        """Fetch current prices as 18-decimal integers.

        Args:
            symbols: Optional list of symbols to fetch. If None, fetches all
                     configured feeds.

        Returns an empty mapping on HTTP or network errors; the caller keeps
        whatever prices it already had.
        """
        prices: dict[str, int] = {}

        feeds = self.price_feeds
        if symbols is not None:
            feeds = {k: v for k, v in self.price_feeds.items() if k in symbols}

        feed_ids = sorted(set(feeds.values()))
        if not feed_ids:
            return prices

        query_params = "&".join(f"ids[]={fid}" for fid in feed_ids)
        url = f"{self.hermes_url}?{query_params}"

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        id_to_assets: dict[str, list[str]] = {}
        for asset, feed_id in feeds.items():
            id_to_assets.setdefault(feed_id.lower().removeprefix("0x"), []).append(asset)

        try:
            async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        logger.error("Error fetching prices from Pyth: HTTP %s", response.status)
                        return prices

                    data = await response.json()

            for item in data.get("parsed", []):
                feed_id = str(item.get("id", "")).lower().removeprefix("0x")
                price_data = item.get("price", {})
                price = scale_price(int(price_data.get("price", 0)), int(price_data.get("expo", 0)))
                if price <= 0:
                    logger.warning("Pyth returned non-positive price for feed %s", feed_id)
                    continue
                for asset in id_to_assets.get(feed_id, []):
                    prices[asset] = price

        except Exception as e:
            logger.error("Error fetching prices from Pyth: %s", e)
            return {}

        for asset, price in sorted(prices.items()):
            logger.info("  %s: %.4f", asset, price / PRICE_PRECISION)
        return prices

    async def refresh(self, oracle: StaticPriceOracle) -> int:
        """Push fresh prices into ``oracle``; return how many were updated."""
        prices = await self.fetch_prices()
        for asset, price in prices.items():
            oracle.set_price(asset, price)
        return len(prices)
