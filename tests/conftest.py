"""
Pytest configuration and fixtures
"""

import pytest
import sys
from datetime import date, datetime, timezone
from pathlib import Path

import numpy as np
import pandas as pd

# Add parent directory to path so we can import modules
parent_dir = Path(__file__).parent.parent
sys.path.insert(0, str(parent_dir))

from data_fetcher import MarketDataProvider
from metrics import SymbolMeta, bars_frame, empty_bars

CONFIG_DIR = parent_dir / "config"

# Monday; bars built by default end the Friday before
FIXED_NOW = datetime(2024, 6, 3, 21, 0, tzinfo=timezone.utc)
LAST_SESSION = date(2024, 5, 31)


def bars_from_closes(closes, end=LAST_SESSION, start=None, volumes=None, spread=0.01):
    """Weekday bars with the given closes; high is `spread` above close, low twice that below"""
    closes = np.asarray(closes, dtype=float)
    n = len(closes)
    if start is not None:
        dates = pd.bdate_range(start=start, periods=n)
    else:
        dates = pd.bdate_range(end=end, periods=n)

    if volumes is None:
        volumes = np.full(n, 1_000_000.0)

    return bars_frame(pd.DataFrame({
        "date": dates,
        "open": closes,
        "high": closes * (1 + spread),
        "low": closes * (1 - 2 * spread),
        "close": closes,
        "volume": np.asarray(volumes, dtype=float),
    }))


def trending_bars(n, start_price=50.0, daily_change=0.0, **kwargs):
    """n bars compounding by daily_change per session"""
    closes = start_price * (1 + daily_change) ** np.arange(n)
    return bars_from_closes(closes, **kwargs)


def quarter_ends(n, last=date(2024, 3, 31)):
    """The last n calendar quarter ends, newest first"""
    ends = [last]
    current = pd.Timestamp(last)
    for _ in range(n - 1):
        current = current - pd.offsets.QuarterEnd(1)
        ends.append(current.date())
    return ends


class FakeProvider(MarketDataProvider):
    """In-memory provider; records every call so tests can assert on fetches"""

    name = "fake"

    def __init__(self, bars=None, eps=None, ownership=None, universe=None, index_bars=None,
                 supports_eps=True, supports_ownership=True, fail_ohlcv=False, connected=True):
        self.bars = dict(bars or {})
        self.eps = dict(eps or {})
        self.ownership = dict(ownership or {})
        self.universe = list(universe or [])
        self.index_bars = index_bars if index_bars is not None else empty_bars()
        self.supports_eps = supports_eps
        self.supports_ownership = supports_ownership
        self.fail_ohlcv = fail_ohlcv
        self.connected = connected
        self.ohlcv_calls = []
        self.index_calls = []

    def get_universe(self):
        return list(self.universe)

    def get_ohlcv(self, symbols, start, end):
        self.ohlcv_calls.append(list(symbols))
        if self.fail_ohlcv:
            raise ConnectionError("provider down")
        return {s: self.bars[s] for s in symbols if s in self.bars}

    def get_quarterly_eps(self, symbols):
        return {s: self.eps[s] for s in symbols if s in self.eps}

    def get_ownership(self, symbols):
        return {s: self.ownership[s] for s in symbols if s in self.ownership}

    def get_index_bars(self, ticker, start, end):
        self.index_calls.append(ticker)
        if isinstance(self.index_bars, Exception):
            raise self.index_bars
        return self.index_bars

    def test_connection(self):
        return self.connected


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def store():
    """Fresh in-memory database per test"""
    from backend.data_store import DataStore
    return DataStore.from_url("sqlite://")


@pytest.fixture
def test_config():
    """YAML defaults plus the test overlay, with the gate off and the whole universe scanned"""
    from config_loader import Config
    return Config(
        config_dir=CONFIG_DIR,
        env="test",
        overrides={"market_gate": {"use": False}, "universe": {"tag": "all"}},
    )


@pytest.fixture
def scan_config(test_config):
    return test_config.scan_config()


@pytest.fixture
def fake_provider():
    return FakeProvider(universe=[
        SymbolMeta(symbol="AAA", name="Alpha Corp", sector="Technology", industry="Semiconductors",
                   exchange="NASDAQ"),
        SymbolMeta(symbol="BBB", name="Beta Inc", sector="Financials", industry="Banks", exchange="NYSE"),
    ])


@pytest.fixture
def app_context(test_config, store, fake_provider, fixed_clock):
    from backend.context import AppContext
    return AppContext(config=test_config, store=store, provider=fake_provider,
                      clock=fixed_clock, sleep=lambda seconds: None)
