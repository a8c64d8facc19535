"""
Data Fetcher Module
Market data providers behind one capability interface.

- FMPProvider: Financial Modeling Prep /stable/ endpoints (prices, EPS,
  institutional ownership, universe screener)
- YahooProvider: Yahoo chart API for prices, yfinance for quarterly EPS,
  Wikipedia S&P lists for the universe; no ownership data

Partial failures return partial data: a symbol that errors is logged and
left out of the result, it never aborts the batch.
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

import pandas as pd
import requests
import yfinance as yf

from errors import ConfigurationError
from metrics import EarningsRecord, OwnershipRecord, SymbolMeta, bars_frame, empty_bars
from sp500_tickers import get_sp1500_constituents

logger = logging.getLogger(__name__)

FMP_BASE_URL = "https://financialmodelingprep.com/stable"
YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{ticker}"
REQUEST_HEADERS = {"User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"}

EPS_ROW_LABELS = ("Diluted EPS", "Basic EPS")


class MarketDataProvider(ABC):
    """
    Capability interface for market data.
    EPS and ownership are optional; callers check the flags before asking.
    """

    name = "base"
    supports_eps = False
    supports_ownership = False

    @abstractmethod
    def get_universe(self) -> List[SymbolMeta]:
        """Universe candidates, largest companies first"""

    @abstractmethod
    def get_ohlcv(self, symbols: List[str], start: date, end: date) -> Dict[str, pd.DataFrame]:
        """Daily bars per symbol, ascending"""

    def get_quarterly_eps(self, symbols: List[str]) -> Dict[str, List[EarningsRecord]]:
        return {}

    def get_ownership(self, symbols: List[str]) -> Dict[str, List[OwnershipRecord]]:
        return {}

    @abstractmethod
    def get_index_bars(self, ticker: str, start: date, end: date) -> pd.DataFrame:
        """Benchmark bars for the market gate"""

    @abstractmethod
    def test_connection(self) -> bool:
        """Cheap connectivity and credentials check"""


def _parse_date(value) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def _quarter_before(year: int, quarter: int):
    return (year, quarter - 1) if quarter > 1 else (year - 1, 4)


def _quarter_end(year: int, quarter: int) -> date:
    month = quarter * 3
    next_month = date(year + (month == 12), month % 12 + 1, 1)
    return next_month - timedelta(days=1)


class FMPProvider(MarketDataProvider):
    """Financial Modeling Prep, stable API"""

    name = "fmp"
    supports_eps = True
    supports_ownership = True

    def __init__(self, api_key: str, base_url: str = FMP_BASE_URL, request_delay: float = 0.25,
                 timeout: int = 30, session: Optional[requests.Session] = None,
                 clock=None):
        if not api_key:
            raise ConfigurationError("FMP provider requires FMP_API_KEY")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.request_delay = request_delay
        self.timeout = timeout
        self.session = session or requests.Session()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.stats = {"total_requests": 0, "errors_429": 0}

    def _get(self, endpoint: str, **params):
        """GET an endpoint and return parsed JSON; raises on HTTP errors"""
        params["apikey"] = self.api_key
        resp = self.session.get(f"{self.base_url}/{endpoint}", params=params, timeout=self.timeout)
        self.stats["total_requests"] += 1
        if resp.status_code == 429:
            self.stats["errors_429"] += 1
        resp.raise_for_status()
        return resp.json()

    def _pause(self):
        if self.request_delay > 0:
            time.sleep(self.request_delay)

    def get_universe(self) -> List[SymbolMeta]:
        data = self._get(
            "company-screener",
            marketCapMoreThan=100_000_000,
            exchange="NASDAQ,NYSE",
            country="US",
            isActivelyTrading="true",
            limit=5000,
        )
        if not isinstance(data, list):
            return []

        # Largest first so index tags can slice by position
        data = sorted(data, key=lambda t: t.get("marketCap") or 0, reverse=True)
        return [
            SymbolMeta(
                symbol=t["symbol"],
                name=t.get("companyName") or "",
                sector=t.get("sector") or "Unknown",
                industry=t.get("industry") or "Unknown",
                exchange=t.get("exchangeShortName") or t.get("exchange") or "",
            )
            for t in data if t.get("symbol")
        ]

    def get_ohlcv(self, symbols: List[str], start: date, end: date) -> Dict[str, pd.DataFrame]:
        result = {}
        for symbol in symbols:
            try:
                data = self._get("historical-price-eod/full", symbol=symbol,
                                 **{"from": start.isoformat(), "to": end.isoformat()})
                if isinstance(data, list) and data:
                    result[symbol] = bars_frame(data)
            except Exception as e:
                logger.warning(f"FMP OHLCV fetch failed for {symbol}: {e}")
            self._pause()
        return result

    def get_quarterly_eps(self, symbols: List[str]) -> Dict[str, List[EarningsRecord]]:
        result = {}
        for symbol in symbols:
            try:
                data = self._get("income-statement", symbol=symbol, period="quarter", limit=20)
                records = []
                for statement in data if isinstance(data, list) else []:
                    quarter_end = _parse_date(statement.get("date"))
                    eps = statement.get("eps")
                    if eps is None:
                        eps = statement.get("epsDiluted")
                    if quarter_end is None or eps is None:
                        continue
                    records.append(EarningsRecord(symbol=symbol, quarter_end=quarter_end, eps=float(eps)))
                if records:
                    result[symbol] = records
            except Exception as e:
                logger.warning(f"FMP EPS fetch failed for {symbol}: {e}")
            self._pause()
        return result

    def get_ownership(self, symbols: List[str]) -> Dict[str, List[OwnershipRecord]]:
        """
        Institutional ownership from the latest 13F positions summary.
        Filings lag, so the current quarter is tried first, then the one before.
        Each summary yields the current and prior-quarter ownership percent.
        """
        now = self.clock()
        current = (now.year, (now.month - 1) // 3 + 1)
        result = {}

        for symbol in symbols:
            try:
                summary = None
                year, quarter = current
                for _ in range(2):
                    data = self._get("institutional-ownership/symbol-positions-summary",
                                     symbol=symbol, year=str(year), quarter=str(quarter))
                    if isinstance(data, list) and data:
                        summary = data[0]
                        break
                    year, quarter = _quarter_before(year, quarter)

                if summary is None:
                    continue

                as_of = _parse_date(summary.get("date")) or _quarter_end(year, quarter)
                prior_year, prior_quarter = _quarter_before(year, quarter)
                records = []
                if summary.get("ownershipPercent") is not None:
                    records.append(OwnershipRecord(
                        symbol=symbol,
                        date=as_of,
                        inst_pct=float(summary["ownershipPercent"]) / 100,
                        filers_added=int(summary.get("investorsHoldingChange") or 0),
                    ))
                if summary.get("lastOwnershipPercent") is not None:
                    records.append(OwnershipRecord(
                        symbol=symbol,
                        date=_quarter_end(prior_year, prior_quarter),
                        inst_pct=float(summary["lastOwnershipPercent"]) / 100,
                    ))
                if records:
                    result[symbol] = records
            except Exception as e:
                logger.warning(f"FMP ownership fetch failed for {symbol}: {e}")
            self._pause()
        return result

    def get_index_bars(self, ticker: str, start: date, end: date) -> pd.DataFrame:
        try:
            data = self._get("historical-price-eod/light", symbol=ticker,
                             **{"from": start.isoformat(), "to": end.isoformat()})
        except Exception as e:
            logger.warning(f"FMP index fetch failed for {ticker}: {e}")
            return empty_bars()

        if not isinstance(data, list) or not data:
            return empty_bars()

        # Light endpoint only carries a single price per day
        rows = [
            {"date": bar.get("date"), "open": bar.get("price"), "high": bar.get("price"),
             "low": bar.get("price"), "close": bar.get("price"), "volume": bar.get("volume") or 0}
            for bar in data
        ]
        return bars_frame(rows)

    def test_connection(self) -> bool:
        try:
            data = self._get("profile", symbol="AAPL")
            return isinstance(data, list) and len(data) > 0
        except Exception as e:
            logger.warning(f"FMP connection test failed: {e}")
            return False


def parse_chart_response(data: dict) -> pd.DataFrame:
    """Convert a Yahoo chart API payload into a bar frame"""
    result = (data or {}).get("chart", {}).get("result") or []
    if not result:
        return empty_bars()

    timestamps = result[0].get("timestamp") or []
    quote = (result[0].get("indicators", {}).get("quote") or [{}])[0]

    def series(key):
        values = quote.get(key) or []
        return [values[i] if i < len(values) else None for i in range(len(timestamps))]

    frame = pd.DataFrame({
        "date": [datetime.fromtimestamp(ts, tz=timezone.utc).date() for ts in timestamps],
        "open": series("open"),
        "high": series("high"),
        "low": series("low"),
        "close": series("close"),
        "volume": series("volume"),
    })
    if frame.empty:
        return empty_bars()
    frame["volume"] = frame["volume"].fillna(0)
    return bars_frame(frame)


class YahooProvider(MarketDataProvider):
    """Yahoo Finance chart API with yfinance fundamentals"""

    name = "yahoo"
    supports_eps = True
    supports_ownership = False

    def __init__(self, request_delay: float = 0.1, timeout: int = 15,
                 session: Optional[requests.Session] = None):
        self.request_delay = request_delay
        self.timeout = timeout
        self.session = session or requests.Session()

    def _fetch_chart(self, ticker: str, start: date, end: date) -> pd.DataFrame:
        period1 = int(datetime(start.year, start.month, start.day, tzinfo=timezone.utc).timestamp())
        period2 = int(datetime(end.year, end.month, end.day, tzinfo=timezone.utc).timestamp()) + 86400
        resp = self.session.get(
            YAHOO_CHART_URL.format(ticker=ticker),
            params={"interval": "1d", "period1": period1, "period2": period2},
            headers=REQUEST_HEADERS,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        bars = parse_chart_response(resp.json())
        if bars.empty:
            return bars
        return bars[(bars["date"] >= start) & (bars["date"] <= end)].reset_index(drop=True)

    def get_universe(self) -> List[SymbolMeta]:
        return get_sp1500_constituents(session=self.session)

    def get_ohlcv(self, symbols: List[str], start: date, end: date) -> Dict[str, pd.DataFrame]:
        result = {}
        for symbol in symbols:
            try:
                bars = self._fetch_chart(symbol, start, end)
                if not bars.empty:
                    result[symbol] = bars
            except Exception as e:
                logger.warning(f"Yahoo chart fetch failed for {symbol}: {e}")
            if self.request_delay > 0:
                time.sleep(self.request_delay)
        return result

    def get_quarterly_eps(self, symbols: List[str]) -> Dict[str, List[EarningsRecord]]:
        """Quarterly EPS from yfinance income statements (typically 4-5 quarters)"""
        result = {}
        for symbol in symbols:
            try:
                stmt = yf.Ticker(symbol).quarterly_income_stmt
                if stmt is None or stmt.empty:
                    continue
                label = next((l for l in EPS_ROW_LABELS if l in stmt.index), None)
                if label is None:
                    continue

                records = []
                for column, eps in stmt.loc[label].items():
                    if pd.isna(eps):
                        continue
                    records.append(EarningsRecord(
                        symbol=symbol,
                        quarter_end=pd.Timestamp(column).date(),
                        eps=float(eps),
                    ))
                if records:
                    result[symbol] = records
            except Exception as e:
                logger.warning(f"yfinance EPS fetch failed for {symbol}: {e}")
        return result

    def get_index_bars(self, ticker: str, start: date, end: date) -> pd.DataFrame:
        try:
            return self._fetch_chart(ticker, start, end)
        except Exception as e:
            logger.warning(f"Yahoo index fetch failed for {ticker}: {e}")
            return empty_bars()

    def test_connection(self) -> bool:
        today = datetime.now(timezone.utc).date()
        try:
            return not self._fetch_chart("SPY", today - timedelta(days=10), today).empty
        except Exception as e:
            logger.warning(f"Yahoo connection test failed: {e}")
            return False


PROVIDERS = ("fmp", "yahoo")


def get_provider(name: str, settings=None, api_config: Optional[dict] = None) -> MarketDataProvider:
    """Build a provider by tag. settings supplies FMP_API_KEY; api_config the yaml 'api' section."""
    api_config = api_config or {}
    if name == "fmp":
        fmp = api_config.get("fmp", {})
        return FMPProvider(
            api_key=getattr(settings, "FMP_API_KEY", "") if settings else "",
            base_url=fmp.get("base_url", FMP_BASE_URL),
            request_delay=fmp.get("request_delay", 0.25),
            timeout=fmp.get("timeout", 30),
        )
    if name == "yahoo":
        yahoo = api_config.get("yahoo", {})
        return YahooProvider(
            request_delay=yahoo.get("request_delay", 0.1),
            timeout=yahoo.get("timeout", 15),
        )
    raise ConfigurationError(f"Unknown provider: {name}. Expected one of {PROVIDERS}")
