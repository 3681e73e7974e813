"""Tests for the OKX and Bybit public market-data clients."""

from __future__ import annotations

import asyncio
from typing import Callable, Dict

import httpx
import pytest

from arbiter.errors import InvalidQuote, QuoteFetchError
from arbiter.exchanges import BybitMarketData, OkxMarketData, VenueRouter, with_timeout
from arbiter.exchanges._http import to_float
from arbiter.exchanges.okx import okx_spot_inst_id, okx_swap_inst_id

Handler = Callable[[httpx.Request], httpx.Response]


def _client(base_url: str, handler: Handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url, transport=httpx.MockTransport(handler))


def _okx_handler(tickers: Dict[str, tuple], funding: Dict[str, object]) -> Handler:
    def handler(request: httpx.Request) -> httpx.Response:
        inst_id = request.url.params["instId"]
        if request.url.path == "/api/v5/market/ticker":
            if inst_id not in tickers:
                return httpx.Response(200, json={"code": "51001", "msg": "Instrument ID does not exist", "data": []})
            bid, ask = tickers[inst_id]
            return httpx.Response(200, json={"code": "0", "data": [{"instId": inst_id, "bidPx": bid, "askPx": ask}]})
        if request.url.path == "/api/v5/public/funding-rate":
            rate = funding.get(inst_id)
            if rate is None:
                return httpx.Response(503)
            return httpx.Response(200, json={"code": "0", "data": [{"instId": inst_id, "fundingRate": rate}]})
        return httpx.Response(404)

    return handler


def _bybit_handler(tickers: Dict[tuple, dict], ret_code: int = 0) -> Handler:
    def handler(request: httpx.Request) -> httpx.Response:
        key = (request.url.params["category"], request.url.params["symbol"])
        items = [tickers[key]] if key in tickers else []
        return httpx.Response(
            200,
            json={"retCode": ret_code, "retMsg": "OK" if ret_code == 0 else "params error", "result": {"list": items}},
        )

    return handler


class TestHelpers:
    def test_okx_inst_ids(self) -> None:
        assert okx_spot_inst_id("BTCUSDT") == "BTC-USDT"
        assert okx_spot_inst_id("eth-btc") == "ETH-BTC"
        assert okx_swap_inst_id("BTCUSDT") == "BTC-USDT-SWAP"

    def test_to_float(self) -> None:
        assert to_float("100.5") == 100.5
        assert to_float("") is None
        assert to_float(None) is None
        assert to_float("nan") is None


class TestWithTimeout:
    def test_passes_result_through(self) -> None:
        async def call() -> float:
            return 1.5

        assert asyncio.run(with_timeout(call(), 1.0, "okx BTCUSDT")) == 1.5

    def test_expiry_is_fetch_error(self) -> None:
        async def call() -> None:
            await asyncio.sleep(1.0)

        with pytest.raises(QuoteFetchError, match="timed out"):
            asyncio.run(with_timeout(call(), 0.01, "okx BTCUSDT"))

    def test_unexpected_error_is_fetch_error(self) -> None:
        async def call() -> None:
            raise AttributeError("'list' object has no attribute 'get'")

        with pytest.raises(QuoteFetchError, match="okx BTCUSDT: AttributeError"):
            asyncio.run(with_timeout(call(), 1.0, "okx BTCUSDT"))

    def test_invalid_quote_kept(self) -> None:
        async def call() -> None:
            raise InvalidQuote("okx BTCUSDT: crossed book")

        with pytest.raises(InvalidQuote):
            asyncio.run(with_timeout(call(), 1.0, "okx BTCUSDT"))


# ---------------------------------------------------------------------------
# OKX
# ---------------------------------------------------------------------------


class TestOkx:
    def test_spot_quote(self) -> None:
        handler = _okx_handler({"BTC-USDT": ("100.0", "100.1")}, {})
        provider = OkxMarketData(client=_client("https://www.okx.com", handler))

        quote = asyncio.run(provider.get_quote("okx", "BTCUSDT"))

        assert (quote.venue, quote.symbol, quote.bid, quote.ask) == ("okx", "BTCUSDT", 100.0, 100.1)

    def test_carry_quote_with_funding(self) -> None:
        handler = _okx_handler(
            {"BTC-USDT": ("100.0", "100.1"), "BTC-USDT-SWAP": ("100.4", "100.5")},
            {"BTC-USDT-SWAP": "0.0001"},
        )
        provider = OkxMarketData(client=_client("https://www.okx.com", handler))

        quote = asyncio.run(provider.get_carry_quote("okx", "BTCUSDT"))

        assert (quote.spot_bid, quote.spot_ask, quote.perp_bid, quote.perp_ask) == (100.0, 100.1, 100.4, 100.5)
        assert quote.funding_rate == pytest.approx(0.0001)

    def test_funding_failure_yields_none(self) -> None:
        handler = _okx_handler({"BTC-USDT": ("100.0", "100.1"), "BTC-USDT-SWAP": ("100.4", "100.5")}, {})
        provider = OkxMarketData(client=_client("https://www.okx.com", handler))

        quote = asyncio.run(provider.get_carry_quote("okx", "BTCUSDT"))

        assert quote.funding_rate is None

    def test_error_code_raises(self) -> None:
        provider = OkxMarketData(client=_client("https://www.okx.com", _okx_handler({}, {})))
        with pytest.raises(QuoteFetchError, match="does not exist"):
            asyncio.run(provider.get_quote("okx", "NOPEUSDT"))

    def test_crossed_book_invalid(self) -> None:
        handler = _okx_handler({"BTC-USDT": ("100.2", "100.1")}, {})
        provider = OkxMarketData(client=_client("https://www.okx.com", handler))
        with pytest.raises(InvalidQuote):
            asyncio.run(provider.get_quote("okx", "BTCUSDT"))

    def test_http_error_raises_fetch_error(self) -> None:
        provider = OkxMarketData(client=_client("https://www.okx.com", lambda request: httpx.Response(500)))
        with pytest.raises(QuoteFetchError):
            asyncio.run(provider.get_quote("okx", "BTCUSDT"))

    def test_non_object_payload_raises_fetch_error(self) -> None:
        provider = OkxMarketData(client=_client("https://www.okx.com", lambda request: httpx.Response(200, json=[])))
        with pytest.raises(QuoteFetchError, match="unexpected payload"):
            asyncio.run(provider.get_quote("okx", "BTCUSDT"))


# ---------------------------------------------------------------------------
# Bybit
# ---------------------------------------------------------------------------


class TestBybit:
    def test_carry_quote(self) -> None:
        handler = _bybit_handler(
            {
                ("spot", "BTCUSDT"): {"bid1Price": "100.0", "ask1Price": "100.1"},
                ("linear", "BTCUSDT"): {"bid1Price": "100.3", "ask1Price": "100.4", "fundingRate": "0.0002"},
            }
        )
        provider = BybitMarketData(client=_client("https://api.bybit.com", handler))

        quote = asyncio.run(provider.get_carry_quote("bybit", "btcusdt"))

        assert (quote.perp_bid, quote.perp_ask) == (100.3, 100.4)
        assert quote.funding_rate == pytest.approx(0.0002)

    def test_non_zero_ret_code_raises(self) -> None:
        provider = BybitMarketData(client=_client("https://api.bybit.com", _bybit_handler({}, ret_code=10001)))
        with pytest.raises(QuoteFetchError, match="params error"):
            asyncio.run(provider.get_quote("bybit", "BTCUSDT"))

    def test_empty_list_raises(self) -> None:
        provider = BybitMarketData(client=_client("https://api.bybit.com", _bybit_handler({})))
        with pytest.raises(QuoteFetchError, match="empty ticker"):
            asyncio.run(provider.get_quote("bybit", "BTCUSDT"))

    def test_zero_bid_invalid(self) -> None:
        handler = _bybit_handler({("spot", "BTCUSDT"): {"bid1Price": "0", "ask1Price": "100.1"}})
        provider = BybitMarketData(client=_client("https://api.bybit.com", handler))
        with pytest.raises(InvalidQuote):
            asyncio.run(provider.get_quote("bybit", "BTCUSDT"))


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class TestVenueRouter:
    def test_dispatches_by_venue(self, market) -> None:
        market.set_quote("okx", "BTCUSDT", 100.0, 100.1)
        router = VenueRouter({"OKX": market})

        quote = asyncio.run(router.get_quote("okx", "BTCUSDT"))

        assert quote.ask == 100.1

    def test_unsupported_venue(self, market) -> None:
        router = VenueRouter({"okx": market})
        with pytest.raises(QuoteFetchError, match="unsupported venue"):
            asyncio.run(router.get_quote("kraken", "BTCUSDT"))

    def test_aclose_closes_providers(self, market) -> None:
        router = VenueRouter({"okx": market})
        asyncio.run(router.aclose())
        assert market.closed
