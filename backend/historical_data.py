"""
Historical Data Provider for Backtesting

Provides point-in-time views over the stored series.
Key principle: only use data that would have been available on each
historical date.
"""

import logging
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from metrics import (
    EarningsRecord, OwnershipRecord, SymbolMeta, TRADING_DAYS_PER_YEAR,
    bar_dates, empty_bars, trailing_return, weekdays_between,
)

logger = logging.getLogger(__name__)

# Earnings report delay (days after quarter end when data becomes available)
EARNINGS_REPORT_DELAY_DAYS = 45


class HistoricalDataProvider:
    """
    Preloads bars, earnings and ownership for a symbol set from the store
    and answers "as of" questions for the day-by-day simulation.
    """

    def __init__(self, store, symbols: List[str], benchmark: Optional[str] = None,
                 earnings_report_delay_days: int = EARNINGS_REPORT_DELAY_DAYS):
        self.store = store
        self.symbols = list(dict.fromkeys(symbols))
        self.benchmark = benchmark
        self.earnings_delay = timedelta(days=earnings_report_delay_days)

        # {symbol: DataFrame [date, open, high, low, close, volume]}
        self._price_cache: Dict[str, pd.DataFrame] = {}
        # {symbol: numpy datetime64 array} for binary search
        self._date_index: Dict[str, np.ndarray] = {}
        self._earnings: Dict[str, List[EarningsRecord]] = {}
        self._ownership: Dict[str, List[OwnershipRecord]] = {}
        self._meta: Dict[str, SymbolMeta] = {}
        self._benchmark_bars: pd.DataFrame = empty_bars()
        self._is_loaded = False

    def preload_data(self):
        """Load everything the simulation needs in a few bulk queries"""
        self._price_cache = {
            symbol: bars for symbol, bars in self.store.get_bars_bulk(self.symbols).items() if not bars.empty
        }
        self._date_index = {symbol: bar_dates(bars) for symbol, bars in self._price_cache.items()}
        self._earnings = self.store.get_earnings_bulk(self.symbols)
        self._ownership = self.store.get_ownership_bulk(self.symbols)
        self._meta = {m.symbol: m for m in self.store.list_symbols()}

        if self.benchmark:
            self._benchmark_bars = self.store.get_bars(self.benchmark)
            if self._benchmark_bars.empty:
                logger.warning(f"No stored {self.benchmark} bars; market gate will default to open")

        self._is_loaded = True
        logger.info(f"Preloaded {len(self._price_cache)}/{len(self.symbols)} symbols for backtest")

    def has_data_for_ticker(self, symbol: str) -> bool:
        return symbol in self._price_cache

    def get_available_tickers(self) -> List[str]:
        return list(self._price_cache.keys())

    def available_range(self) -> Optional[Tuple[date, date]]:
        """Earliest and latest bar date across the preloaded symbols"""
        if not self._price_cache:
            return None
        first = min(bars["date"].iloc[0] for bars in self._price_cache.values())
        last = max(bars["date"].iloc[-1] for bars in self._price_cache.values())
        return first, last

    @staticmethod
    def get_trading_days(start: date, end: date) -> List[date]:
        """Weekdays in [start, end]; holidays simply have no bars"""
        return weekdays_between(start, end)

    def _cut(self, symbol: str, as_of_date: date) -> int:
        """Number of bars dated on or before as_of_date"""
        dates = self._date_index.get(symbol)
        if dates is None or len(dates) == 0:
            return 0
        return int(np.searchsorted(dates, np.datetime64(as_of_date, "D"), side="right"))

    def get_price_history_up_to(self, symbol: str, as_of_date: date,
                                lookback_days: Optional[int] = None) -> pd.DataFrame:
        """Bars up to and including as_of_date, optionally only the last lookback_days"""
        bars = self._price_cache.get(symbol)
        if bars is None:
            return empty_bars()

        history = bars.iloc[:self._cut(symbol, as_of_date)]
        if lookback_days is not None:
            history = history.tail(lookback_days)
        return history

    def get_bar_on_date(self, symbol: str, as_of_date: date) -> Optional[pd.Series]:
        """The bar dated exactly as_of_date, if the symbol traded that day"""
        cut = self._cut(symbol, as_of_date)
        if cut == 0:
            return None
        bar = self._price_cache[symbol].iloc[cut - 1]
        return bar if bar["date"] == as_of_date else None

    def get_price_on_date(self, symbol: str, as_of_date: date) -> Optional[float]:
        """Close on as_of_date, else the most recent prior close"""
        cut = self._cut(symbol, as_of_date)
        if cut == 0:
            return None
        return float(self._price_cache[symbol]["close"].iloc[cut - 1])

    def get_earnings_as_of(self, symbol: str, as_of_date: date) -> List[EarningsRecord]:
        """Quarters that would have been reported by as_of_date"""
        return [r for r in self._earnings.get(symbol, []) if r.quarter_end + self.earnings_delay <= as_of_date]

    def get_ownership_as_of(self, symbol: str, as_of_date: date) -> List[OwnershipRecord]:
        return [r for r in self._ownership.get(symbol, []) if r.date <= as_of_date]

    def get_returns_as_of(self, as_of_date: date) -> Dict[str, float]:
        """One-year return of every symbol with a full year of bars as of the date"""
        returns = {}
        for symbol, bars in self._price_cache.items():
            cut = self._cut(symbol, as_of_date)
            if cut < TRADING_DAYS_PER_YEAR:
                continue
            returns[symbol] = trailing_return(bars.iloc[:cut])
        return returns

    def get_meta(self, symbol: str) -> SymbolMeta:
        return self._meta.get(symbol) or SymbolMeta(symbol=symbol)

    def get_benchmark_history_up_to(self, as_of_date: date) -> pd.DataFrame:
        bars = self._benchmark_bars
        if bars.empty:
            return bars
        return bars[bars["date"] <= as_of_date]
