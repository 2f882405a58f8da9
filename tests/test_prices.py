"""
Tests for the price updater.
"""

from decimal import Decimal

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from custody_worker.errors import ProviderError
from custody_worker.models import Asset
from custody_worker.prices import PriceUpdater

from conftest import make_settings

BINANCE_PRICES = {"ETHUSDT": "3100.50", "BTCUSDT": "65000", "USDTMXN": "17.25"}


class _Routes:
    """MockTransport handler serving Binance tickers and the forex fallback."""

    def __init__(self, binance: dict = None, fx_status: int = 200):
        self.binance = dict(BINANCE_PRICES if binance is None else binance)
        self.fx_status = fx_status
        self.calls: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.binance.com":
            symbol = request.url.params["symbol"]
            self.calls.append(symbol)
            if symbol not in self.binance:
                return httpx.Response(400, json={"code": -1121, "msg": "Invalid symbol."})
            return httpx.Response(200, json={"symbol": symbol, "price": self.binance[symbol]})
        self.calls.append("fx")
        if self.fx_status != 200:
            return httpx.Response(self.fx_status)
        return httpx.Response(200, json={"base": "USD", "rates": {"MXN": 18.1}})


class _Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def _updater(store, routes: _Routes, clock=None, **settings) -> PriceUpdater:
    return PriceUpdater(
        store,
        make_settings(**settings),
        transport=httpx.MockTransport(routes),
        clock=clock or _Clock(),
    )


class TestQuotes:
    def test_stablecoins_are_pegged(self, store) -> None:
        routes = _Routes()

        assert _updater(store, routes).get_price_usd(Asset.USDT_TRC20) == Decimal("1")
        assert routes.calls == []

    def test_binance_price(self, store) -> None:
        assert _updater(store, _Routes()).get_price_usd(Asset.ETH) == Decimal("3100.50")

    def test_binance_failure_raises(self, store) -> None:
        with pytest.raises(ProviderError):
            _updater(store, _Routes(binance={})).get_price_usd(Asset.BTC)


class TestUsdMxn:
    def test_primary_rate(self, store) -> None:
        assert _updater(store, _Routes()).get_usd_mxn_rate() == Decimal("17.25")

    def test_falls_back_to_forex_api(self, store) -> None:
        routes = _Routes(binance={})

        assert _updater(store, routes).get_usd_mxn_rate() == Decimal("18.1")
        assert routes.calls == ["USDTMXN", "fx"]

    def test_emergency_rate_when_everything_fails(self, store) -> None:
        routes = _Routes(binance={}, fx_status=503)

        rate = _updater(store, routes, fx_emergency_usd_mxn=Decimal("17.5")).get_usd_mxn_rate()

        assert rate == Decimal("17.5")


class TestUpdate:
    def test_update_records_every_asset(self, store) -> None:
        updater = _updater(store, _Routes())

        quotes = updater.update_prices()

        assert set(quotes) == {Asset.USDT_TRC20, Asset.USDT_ERC20, Asset.ETH, Asset.BTC}
        eth = store.latest_price(Asset.ETH)
        assert eth.price_usd == Decimal("3100.50")
        assert eth.price_mxn == Decimal("3100.50") * Decimal("17.25")
        assert eth.source == "binance"
        assert updater.current_price(Asset.USDT_ERC20).price_mxn == Decimal("17.25")

    def test_failed_update_keeps_previous_quotes(self, store) -> None:
        routes = _Routes()
        updater = _updater(store, routes)
        updater.update_prices()

        routes.binance.pop("BTCUSDT")
        assert updater.update_prices() == {}

        assert updater.current_price(Asset.BTC).price_usd == Decimal("65000")

    def test_history_write_failure_keeps_cycle_alive(self, store, monkeypatch) -> None:
        updater = _updater(store, _Routes())

        def locked(quote):
            raise OperationalError("INSERT INTO price_history", {}, Exception("database is locked"))

        monkeypatch.setattr(store, "record_price", locked)

        quotes = updater.update_prices()

        assert set(quotes) == {Asset.USDT_TRC20, Asset.USDT_ERC20, Asset.ETH, Asset.BTC}
        assert updater.current_price(Asset.ETH).price_usd == Decimal("3100.50")

    def test_interval_is_respected(self, store) -> None:
        clock = _Clock()
        routes = _Routes()
        updater = _updater(store, routes, clock=clock, price_interval_seconds=30)

        assert updater.update_if_needed()
        calls = len(routes.calls)

        clock.now += 10
        assert not updater.update_if_needed()
        assert len(routes.calls) == calls

        clock.now += 25
        assert updater.update_if_needed()
        assert len(routes.calls) > calls
