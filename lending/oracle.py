"""
oracle.py - Price Oracles for Health and Liquidation Math

Provides PriceOracle implementations and the staleness gate every caller must
pass a quote through before using it.

Classes:
- StaticPriceOracle: Fixed prices stamped with an explicit publish time
- TimeSeriesPriceOracle: Historical observations, latest at or before now
- ParityPriceOracle: Every asset at 1.0, published "now"

All prices are ints scaled by PRICE_SCALE (1e8).
"""

from __future__ import annotations
from bisect import bisect_right
from typing import Dict, List, Optional, Tuple

from .core import (
    PRICE_SCALE, ORACLE_STALENESS_THRESHOLD, ClockSource, PriceOracle, PriceQuote,
    InvalidOracle, StalePrice,
)


def fetch_price(
    oracle: PriceOracle,
    asset: str,
    now: int,
    max_age: int = ORACLE_STALENESS_THRESHOLD,
) -> PriceQuote:
    """
    Read a price and reject it if unusable.

    Raises:
        InvalidOracle: If the oracle has no price or the price is not positive
        StalePrice: If the quote is older than max_age seconds
    """
    quote = oracle.price_of(asset)
    if quote is None:
        raise InvalidOracle(f"no price for {asset}")
    if quote.price <= 0:
        raise InvalidOracle(f"non-positive price for {asset}: {quote.price}")
    age = now - quote.as_of
    if age > max_age:
        raise StalePrice(f"price for {asset} is {age}s old (max {max_age}s)")
    return quote


class StaticPriceOracle:
    """
    Oracle with fixed prices.

    Each price carries the time it was published; update_price re-publishes.
    """

    def __init__(self, prices: Optional[Dict[str, int]] = None, as_of: int = 0):
        self.quotes: Dict[str, PriceQuote] = {
            asset: PriceQuote(price=price, as_of=as_of) for asset, price in (prices or {}).items()
        }

    def price_of(self, asset: str) -> PriceQuote:
        if asset not in self.quotes:
            raise InvalidOracle(f"no price for {asset}")
        return self.quotes[asset]

    def update_price(self, asset: str, price: int, as_of: int) -> None:
        self.quotes[asset] = PriceQuote(price=price, as_of=as_of)

    def update_prices(self, prices: Dict[str, int], as_of: int) -> None:
        for asset, price in prices.items():
            self.update_price(asset, price, as_of)

    def __repr__(self):
        return f"StaticPriceOracle({len(self.quotes)} prices)"


class TimeSeriesPriceOracle:
    """
    Oracle replaying historical observations against a clock.

    Returns the most recent observation at or before clock.now(), stamped
    with the observation's own time so staleness is judged correctly.

    Example:
        oracle = TimeSeriesPriceOracle(clock, {
            'SOL': [(0, 150 * PRICE_SCALE), (600, 140 * PRICE_SCALE)],
        })
    """

    def __init__(
        self,
        clock: ClockSource,
        price_paths: Optional[Dict[str, List[Tuple[int, int]]]] = None,
    ):
        self.clock = clock
        self.price_history: Dict[str, List[Tuple[int, int]]] = {}
        if price_paths:
            for asset, path in price_paths.items():
                if path:
                    self.price_history[asset] = sorted(path, key=lambda x: x[0])

    def add_price(self, asset: str, timestamp: int, price: int) -> None:
        history = self.price_history.setdefault(asset, [])
        history.append((timestamp, price))
        history.sort(key=lambda x: x[0])

    def price_of(self, asset: str) -> PriceQuote:
        history = self.price_history.get(asset)
        if not history:
            raise InvalidOracle(f"no price for {asset}")
        timestamps = [ts for ts, _ in history]
        idx = bisect_right(timestamps, self.clock.now())
        if idx == 0:
            raise InvalidOracle(f"no price for {asset} at or before {self.clock.now()}")
        ts, price = history[idx - 1]
        return PriceQuote(price=price, as_of=ts)

    def __repr__(self):
        total = sum(len(h) for h in self.price_history.values())
        return f"TimeSeriesPriceOracle({len(self.price_history)} assets, {total} observations)"


class ParityPriceOracle:
    """Prices every asset at 1.0, always fresh. Useful for single-currency setups."""

    def __init__(self, clock: ClockSource):
        self.clock = clock

    def price_of(self, asset: str) -> PriceQuote:
        return PriceQuote(price=PRICE_SCALE, as_of=self.clock.now())
