"""Unit tests for the Pyth price feed — response parsing, scaling and error handling."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rwa_exposure.config import PythConfig
from rwa_exposure.oracles.pyth import PythPriceFeed, scale_price
from rwa_exposure.venues import StaticPriceOracle, to_price


@pytest.fixture()
def feed() -> PythPriceFeed:
    return PythPriceFeed(
        PythConfig(
            hermes_url="https://hermes.example.com/v2/updates/price/latest",
            feeds={"RWA": "0xAAA111", "USDC": "bbb222"},
        )
    )


def _mock_session(response: AsyncMock | None = None, error: Exception | None = None) -> AsyncMock:
    session = AsyncMock()
    if error is not None:
        session.get = MagicMock(side_effect=error)
    else:
        session.get = MagicMock(return_value=response)
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=None)
    return session


def _mock_response(status: int, data: dict | None = None) -> AsyncMock:
    response = AsyncMock()
    response.status = status
    response.json = AsyncMock(return_value=data or {})
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=None)
    return response


class TestScalePrice:
    def test_negative_exponent(self) -> None:
        assert scale_price(350_000_000, -8) == 35 * 10**17

    def test_exponent_beyond_precision_truncates(self) -> None:
        assert scale_price(123, -20) == 1

    def test_positive_exponent(self) -> None:
        assert scale_price(2, 1) == 20 * 10**18


class TestPythPriceFeedFetch:
    @pytest.mark.asyncio
    async def test_parses_response(self, feed: PythPriceFeed) -> None:
        data = {
            "parsed": [
                {"id": "aaa111", "price": {"price": "10050000000", "expo": "-8"}},
                {"id": "0xbbb222", "price": {"price": "100000000", "expo": "-8"}},
            ]
        }
        session = _mock_session(_mock_response(200, data))

        with patch("rwa_exposure.oracles.pyth.aiohttp.ClientSession", return_value=session):
            with patch("rwa_exposure.oracles.pyth.aiohttp.TCPConnector"):
                prices = await feed.fetch_prices()

        assert prices["RWA"] == to_price("100.5")
        assert prices["USDC"] == to_price(1)

    @pytest.mark.asyncio
    async def test_symbol_filter_limits_request(self, feed: PythPriceFeed) -> None:
        data = {"parsed": [{"id": "aaa111", "price": {"price": "100", "expo": "0"}}]}
        session = _mock_session(_mock_response(200, data))

        with patch("rwa_exposure.oracles.pyth.aiohttp.ClientSession", return_value=session):
            with patch("rwa_exposure.oracles.pyth.aiohttp.TCPConnector"):
                prices = await feed.fetch_prices(["RWA"])

        url = session.get.call_args[0][0]
        assert "0xAAA111" in url
        assert "bbb222" not in url
        assert prices == {"RWA": to_price(100)}

    @pytest.mark.asyncio
    async def test_skips_non_positive_price(self, feed: PythPriceFeed) -> None:
        data = {"parsed": [{"id": "aaa111", "price": {"price": "0", "expo": "-8"}}]}
        session = _mock_session(_mock_response(200, data))

        with patch("rwa_exposure.oracles.pyth.aiohttp.ClientSession", return_value=session):
            with patch("rwa_exposure.oracles.pyth.aiohttp.TCPConnector"):
                prices = await feed.fetch_prices()

        assert prices == {}

    @pytest.mark.asyncio
    async def test_handles_http_error(self, feed: PythPriceFeed) -> None:
        session = _mock_session(_mock_response(500))

        with patch("rwa_exposure.oracles.pyth.aiohttp.ClientSession", return_value=session):
            with patch("rwa_exposure.oracles.pyth.aiohttp.TCPConnector"):
                prices = await feed.fetch_prices()

        assert prices == {}

    @pytest.mark.asyncio
    async def test_handles_network_error(self, feed: PythPriceFeed) -> None:
        session = _mock_session(error=ConnectionError("timeout"))

        with patch("rwa_exposure.oracles.pyth.aiohttp.ClientSession", return_value=session):
            with patch("rwa_exposure.oracles.pyth.aiohttp.TCPConnector"):
                prices = await feed.fetch_prices()

        assert prices == {}

    @pytest.mark.asyncio
    async def test_no_feeds_skips_request(self) -> None:
        empty = PythPriceFeed(PythConfig(feeds={}))
        with patch("rwa_exposure.oracles.pyth.aiohttp.ClientSession") as session_cls:
            prices = await empty.fetch_prices()
        assert prices == {}
        session_cls.assert_not_called()


class TestPythPriceFeedRefresh:
    @pytest.mark.asyncio
    async def test_refresh_updates_oracle(self, feed: PythPriceFeed) -> None:
        oracle = StaticPriceOracle({"RWA": to_price(100)})
        with patch.object(
            feed, "fetch_prices", AsyncMock(return_value={"RWA": to_price(101)})
        ):
            updated = await feed.refresh(oracle)

        assert updated == 1
        assert oracle.get_price("RWA") == to_price(101)

    @pytest.mark.asyncio
    async def test_refresh_keeps_prices_on_failure(self, feed: PythPriceFeed) -> None:
        oracle = StaticPriceOracle({"RWA": to_price(100)})
        with patch.object(feed, "fetch_prices", AsyncMock(return_value={})):
            updated = await feed.refresh(oracle)

        assert updated == 0
        assert oracle.get_price("RWA") == to_price(100)
