"""
Metrics Module
Pure factor calculations for CANSLIM screening.

Every function here is total: sparse or missing data returns the factor's
neutral value instead of raising, so one thin symbol never aborts a batch.

Bar series are pandas DataFrames with columns
[date, open, high, low, close, volume], ascending by date.
"""

import math
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional

import numpy as np
import pandas as pd

BAR_COLUMNS = ["date", "open", "high", "low", "close", "volume"]

TRADING_DAYS_PER_YEAR = 252
VOLUME_LOOKBACK = 50
SAME_QUARTER_WINDOW_DAYS = 45
BREAKOUT_VOLUME_SPIKE = 1.5


@dataclass(frozen=True)
class EarningsRecord:
    """One reported quarter of earnings per share"""
    symbol: str
    quarter_end: date
    eps: float


@dataclass(frozen=True)
class OwnershipRecord:
    """Institutional ownership observation (inst_pct is a 0-1 fraction)"""
    symbol: str
    date: date
    inst_pct: float
    filers_added: int = 0


@dataclass(frozen=True)
class SymbolMeta:
    symbol: str
    name: str = ""
    sector: str = "Unknown"
    industry: str = "Unknown"
    exchange: str = ""
    index: str = ""  # S&P list the name came from, when known


class Liquidity(NamedTuple):
    dollar_volume_50d: float
    avg_price: float


def empty_bars() -> pd.DataFrame:
    return pd.DataFrame({col: pd.Series(dtype="object" if col == "date" else "float64") for col in BAR_COLUMNS})


def bars_frame(rows: Iterable) -> pd.DataFrame:
    """
    Build a normalized bar frame from dicts or an existing DataFrame.
    Sorts ascending by date and keeps the last row for a duplicated date.
    """
    df = rows.copy() if isinstance(rows, pd.DataFrame) else pd.DataFrame(list(rows))
    if df.empty:
        return empty_bars()

    df.columns = [str(c).lower() for c in df.columns]
    for col in BAR_COLUMNS:
        if col not in df.columns:
            df[col] = 0.0

    df["date"] = pd.to_datetime(df["date"]).dt.date
    for col in BAR_COLUMNS[1:]:
        df[col] = pd.to_numeric(df[col], errors="coerce").astype(float)

    df = df.dropna(subset=["close"])
    df = df.sort_values("date", kind="stable").drop_duplicates(subset="date", keep="last")
    return df[BAR_COLUMNS].reset_index(drop=True)


def _length(bars: Optional[pd.DataFrame]) -> int:
    return 0 if bars is None else len(bars)


def _one_year_before(d: date) -> date:
    try:
        return d.replace(year=d.year - 1)
    except ValueError:
        # Feb 29 -> Feb 28
        return d.replace(year=d.year - 1, day=28)


# ============== C / A: earnings ==============

def current_earnings_growth(earnings: List[EarningsRecord]) -> float:
    """
    C - latest quarter EPS vs the same fiscal quarter a year earlier.
    The prior-year quarter is the first older record whose quarter end falls
    within 45 days of (latest quarter end - 1 year).
    """
    if not earnings or len(earnings) < 5:
        return 0.0

    ordered = sorted(earnings, key=lambda r: r.quarter_end, reverse=True)
    latest = ordered[0]
    target = _one_year_before(latest.quarter_end)

    match = next(
        (r for r in ordered[1:] if abs((r.quarter_end - target).days) <= SAME_QUARTER_WINDOW_DAYS),
        None,
    )
    if match is None or match.eps == 0:
        return 0.0

    return float((latest.eps - match.eps) / abs(match.eps))


def annual_earnings_cagr(earnings: List[EarningsRecord]) -> float:
    """
    A - 3 year CAGR of trailing-four-quarter EPS.
    Compares the latest 4 quarters with the 4 quarters ending 3 years earlier.
    """
    if not earnings or len(earnings) < 16:
        return 0.0

    ordered = sorted(earnings, key=lambda r: r.quarter_end, reverse=True)
    current_ttm = sum(r.eps for r in ordered[0:4])
    prior_ttm = sum(r.eps for r in ordered[12:16])

    if prior_ttm <= 0:
        return 0.0
    if current_ttm <= 0:
        # Profits wiped out over the window
        return -1.0

    return float((current_ttm / prior_ttm) ** (1 / 3) - 1)


# ============== N / S: price and volume ==============

def new_high_ratio(bars: Optional[pd.DataFrame]) -> float:
    """N - latest close as a fraction of the trailing 52-week high"""
    if _length(bars) == 0:
        return 0.0

    high_52w = float(bars["high"].tail(TRADING_DAYS_PER_YEAR).max())
    if not math.isfinite(high_52w) or high_52w <= 0:
        return 0.0

    return float(bars["close"].iloc[-1]) / high_52w


def volume_spike(bars: Optional[pd.DataFrame]) -> float:
    """S - latest volume vs the mean of the 50 sessions before it"""
    if _length(bars) < VOLUME_LOOKBACK + 1:
        return 1.0

    volumes = bars["volume"]
    avg_volume = float(volumes.iloc[-(VOLUME_LOOKBACK + 1):-1].mean())
    if not math.isfinite(avg_volume) or avg_volume <= 0:
        return 1.0

    return float(volumes.iloc[-1]) / avg_volume


# ============== L: relative strength ==============

def trailing_return(bars: Optional[pd.DataFrame], periods: int = TRADING_DAYS_PER_YEAR) -> float:
    if _length(bars) < periods or periods <= 0:
        return 0.0

    start_price = float(bars["close"].iloc[-periods])
    end_price = float(bars["close"].iloc[-1])
    if start_price <= 0:
        return 0.0

    return (end_price - start_price) / start_price


def universe_returns(series_by_symbol: Mapping[str, pd.DataFrame]) -> Dict[str, float]:
    """
    Pre-pass for relative strength: trailing one-year return of every symbol
    that has a full year of bars.
    """
    returns = {}
    for symbol, bars in series_by_symbol.items():
        if _length(bars) < TRADING_DAYS_PER_YEAR:
            continue
        value = trailing_return(bars, TRADING_DAYS_PER_YEAR)
        if math.isfinite(value):
            returns[symbol] = value
    return returns


def relative_strength_from_returns(symbol: str, symbol_return: float,
                                   peer_returns: Mapping[str, float]) -> float:
    """Percentage of peers (excluding the symbol itself) strictly beaten"""
    peers = [r for s, r in peer_returns.items() if s != symbol]
    if not peers:
        return 50.0

    beaten = sum(1 for r in peers if symbol_return > r)
    return beaten / len(peers) * 100


def relative_strength_percentile(symbol: str, bars: Optional[pd.DataFrame],
                                 universe_bars: Mapping[str, pd.DataFrame]) -> float:
    """
    L - one-year return percentile against the whole universe snapshot.
    Needs every symbol's series at once; callers scoring many symbols should
    run universe_returns() once and use relative_strength_from_returns().
    """
    if _length(bars) < TRADING_DAYS_PER_YEAR:
        return 50.0

    return relative_strength_from_returns(
        symbol,
        trailing_return(bars, TRADING_DAYS_PER_YEAR),
        universe_returns(universe_bars),
    )


# ============== I: institutional sponsorship ==============

def institutional_delta(ownership: List[OwnershipRecord]) -> float:
    """I - change in institutional ownership fraction between the two latest observations"""
    if not ownership or len(ownership) < 2:
        return 0.0

    ordered = sorted(ownership, key=lambda r: r.date, reverse=True)
    return float(ordered[0].inst_pct - ordered[1].inst_pct)


# ============== Gates and technicals ==============

def liquidity(bars: Optional[pd.DataFrame]) -> Liquidity:
    """50-day average dollar volume and average close. Used as a gate, never scored."""
    if _length(bars) < VOLUME_LOOKBACK:
        return Liquidity(0.0, 0.0)

    last_50 = bars.tail(VOLUME_LOOKBACK)
    avg_volume = float(last_50["volume"].mean())
    avg_price = float(last_50["close"].mean())
    return Liquidity(avg_volume * avg_price, avg_price)


def moving_average(bars: Optional[pd.DataFrame], period: int) -> pd.Series:
    """Trailing simple moving average of close; NaN until the window fills"""
    if _length(bars) == 0:
        return pd.Series(dtype="float64")
    return bars["close"].rolling(window=period, min_periods=period).mean()


def is_breakout_confirmed(bars: Optional[pd.DataFrame]) -> bool:
    """
    Close above the 50-day MA, volume at least 1.5x its 50-day average,
    and the close in the upper half of the day's range.
    """
    if _length(bars) < VOLUME_LOOKBACK + 1:
        return False

    latest = bars.iloc[-1]
    ma_50 = float(moving_average(bars, VOLUME_LOOKBACK).iloc[-1])

    price_breakout = float(latest["close"]) > ma_50
    volume_confirmed = volume_spike(bars) >= BREAKOUT_VOLUME_SPIKE
    upper_half = float(latest["close"]) >= (float(latest["high"]) + float(latest["low"])) / 2

    return bool(price_breakout and volume_confirmed and upper_half)


def is_market_uptrend(index_bars: Optional[pd.DataFrame], ma_short: int = 50, ma_long: int = 200) -> bool:
    """Price > MA(short) > MA(long). Not enough history counts as an uptrend."""
    if _length(index_bars) < ma_long:
        return True

    price = float(index_bars["close"].iloc[-1])
    short_ma = float(moving_average(index_bars, ma_short).iloc[-1])
    long_ma = float(moving_average(index_bars, ma_long).iloc[-1])

    return bool(price > short_ma > long_ma)


def bar_dates(bars: Optional[pd.DataFrame]) -> np.ndarray:
    if _length(bars) == 0:
        return np.array([], dtype="datetime64[D]")
    return np.array(bars["date"].tolist(), dtype="datetime64[D]")


def weekdays_between(start: date, end: date) -> List[date]:
    days = []
    current = start
    while current <= end:
        if current.weekday() < 5:
            days.append(current)
        current += timedelta(days=1)
    return days
