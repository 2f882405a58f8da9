"""
Price updater - keeps USD and MXN reference prices for custodied assets.
"""

import time
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError

from .config import ASSETS, Settings
from .db import CustodyStore
from .errors import ProviderError
from .models import Asset, PriceQuote, format_amount, utcnow

logger = structlog.get_logger()

# Binance base symbol per asset; stablecoins are pegged and never fetched.
BINANCE_SYMBOLS: dict[Asset, str] = {
    Asset.USDT_TRC20: "USDT",
    Asset.USDT_ERC20: "USDT",
    Asset.ETH: "ETH",
    Asset.BTC: "BTC",
}
PEGGED_SYMBOLS = {"USDT"}


class PriceUpdater:
    """Refreshes quotes at most once per ``price_interval_seconds``."""

    def __init__(
        self,
        store: CustodyStore,
        settings: Settings,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.binance_url = settings.binance_api_url.rstrip("/")
        self.fx_fallback_url = settings.fx_fallback_url
        self.emergency_rate = settings.fx_emergency_usd_mxn
        self.interval = settings.price_interval_seconds
        self.client = httpx.Client(timeout=10.0, transport=transport)
        self._clock = clock
        self._last_update: Optional[float] = None
        self.quotes: dict[Asset, PriceQuote] = {}

    def _get_json(self, url: str, **kwargs) -> dict:
        response = self.client.get(url, **kwargs)
        response.raise_for_status()
        return response.json()

    def get_price_usd(self, asset: Asset) -> Decimal:
        symbol = BINANCE_SYMBOLS[asset]
        if symbol in PEGGED_SYMBOLS:
            return Decimal("1")

        try:
            data = self._get_json(f"{self.binance_url}/ticker/price", params={"symbol": f"{symbol}USDT"})
            return Decimal(str(data["price"]))
        except (httpx.HTTPError, KeyError, ValueError, InvalidOperation) as e:
            raise ProviderError("binance", f"{symbol} price: {e}") from e

    def get_usd_mxn_rate(self) -> Decimal:
        """USD to MXN, from Binance with a forex fallback and a fixed last resort."""
        try:
            data = self._get_json(f"{self.binance_url}/ticker/price", params={"symbol": "USDTMXN"})
            return Decimal(str(data["price"]))
        except (httpx.HTTPError, KeyError, ValueError, InvalidOperation) as e:
            logger.warning("usd_mxn_primary_failed", error=str(e))

        try:
            data = self._get_json(self.fx_fallback_url)
            return Decimal(str(data["rates"]["MXN"]))
        except (httpx.HTTPError, KeyError, ValueError, InvalidOperation) as e:
            logger.error(
                "usd_mxn_fallback_failed",
                error=str(e),
                emergency_rate=format_amount(self.emergency_rate),
            )
            return self.emergency_rate

    def update_prices(self) -> dict[Asset, PriceQuote]:
        """Fetch and store a quote for every asset. Failures are logged."""
        try:
            rate = self.get_usd_mxn_rate()
            quotes = {}
            for asset in ASSETS:
                price_usd = self.get_price_usd(asset)
                quotes[asset] = PriceQuote(
                    asset=asset,
                    price_usd=price_usd,
                    price_mxn=price_usd * rate,
                    source="binance",
                    recorded_at=utcnow(),
                )
        except ProviderError as e:
            logger.error("price_update_failed", error=str(e))
            return {}

        self.quotes.update(quotes)
        try:
            for quote in quotes.values():
                self.store.record_price(quote)
        except SQLAlchemyError as e:
            logger.error("price_history_write_failed", error=str(e))

        usdt = quotes.get(Asset.USDT_TRC20)
        logger.info(
            "prices_updated",
            assets=len(quotes),
            usdt_mxn=format_amount(usdt.price_mxn) if usdt else None,
        )
        return quotes

    def update_if_needed(self) -> bool:
        """Refresh when the interval has elapsed. Returns True if it ran."""
        now = self._clock()
        if self._last_update is not None and now - self._last_update < self.interval:
            return False
        self.update_prices()
        self._last_update = now
        return True

    def current_price(self, asset: Asset) -> Optional[PriceQuote]:
        return self.quotes.get(asset) or self.store.latest_price(asset)

    def close(self) -> None:
        self.client.close()
