"""
Application context: the core API, with its collaborators injected.

Wires one Config, DataStore, provider and clock together and exposes the
operations the HTTP layer (or any other caller) uses.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional, Union

from canslim_scorer import ScoreResult
from config_loader import Config
from data_fetcher import MarketDataProvider, get_provider
from errors import NotFoundError
from backend.backtester import BacktestConfig, BacktestEngine, BacktestReport
from backend.data_store import DataStore
from backend.scanner import LiveScanAccumulator, ScanSession, UniverseScanner, export_results
from backend.universe import refresh_universe

logger = logging.getLogger(__name__)

# Extra benchmark history so the long moving average is defined on day one
BENCHMARK_PADDING_DAYS = 300


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AppContext:
    config: Config
    store: DataStore
    provider: MarketDataProvider
    clock: Callable[[], datetime] = utc_now
    sleep: Callable[[float], None] = time.sleep
    scanner: UniverseScanner = field(init=False)

    def __post_init__(self):
        self.scanner = UniverseScanner(
            self.store, self.provider, self.config.scan_config, self.clock, sleep=self.sleep,
        )

    @classmethod
    def from_settings(cls, settings, config: Optional[Config] = None) -> "AppContext":
        config = config or Config(env=settings.CANSLIM_ENV)
        provider_name = settings.PROVIDER or config.get("universe.provider", "yahoo")
        if settings.PROVIDER:
            config.update({"universe": {"provider": settings.PROVIDER}})
        provider = get_provider(provider_name, settings, config.api)
        store = DataStore.from_url(settings.DATABASE_URL)
        return cls(config=config, store=store, provider=provider)

    # ============== Scans ==============

    def begin_scan(self, mode: str = "daily") -> ScanSession:
        return self.scanner.begin(mode)

    def execute_scan(self, session: ScanSession) -> LiveScanAccumulator:
        return self.scanner.execute(session)

    def run_scan(self, mode: str = "daily") -> int:
        return self.scanner.run_scan(mode)

    def scan_status(self) -> dict:
        return self.scanner.progress

    def _require_run(self, run_id: int) -> dict:
        run = self.store.get_scan_run(run_id)
        if run is None:
            raise NotFoundError(f"Scan run {run_id} not found")
        return run

    def get_results(self, run_id: int) -> List[ScoreResult]:
        """Results of a finished run; a run still in progress answers with its live snapshot"""
        run = self._require_run(run_id)
        if run["status"] == "running":
            live_run_id, results = self.store.get_live_results()
            if live_run_id == run_id:
                return results
        return self.store.get_scan_results(run_id)

    def get_current_accumulator(self) -> LiveScanAccumulator:
        run_id, results = self.store.get_live_results()
        if run_id is None:
            return self.scanner.accumulator
        return LiveScanAccumulator(run_id=run_id, results=tuple(results))

    def export_results(self, run_id: int, fmt: str = "csv") -> bytes:
        return export_results(self.get_results(run_id), fmt)

    def list_runs(self, limit: int = 50) -> List[dict]:
        return self.store.list_scan_runs(limit)

    # ============== Backtests ==============

    def run_backtest(self, backtest_config: Union[BacktestConfig, dict]) -> BacktestReport:
        if isinstance(backtest_config, dict):
            backtest_config = BacktestConfig.from_dict(backtest_config, self.config.backtest)

        scan_config = self.config.scan_config()
        if backtest_config.use_market_gate:
            self._store_benchmark(scan_config.market_gate.symbol,
                                  backtest_config.date_from, backtest_config.date_to)

        engine = BacktestEngine(self.store, scan_config, backtest_config, clock=self.clock)
        return engine.run()

    def _store_benchmark(self, symbol: str, start: date, end: date):
        """Pull benchmark bars for the gate; without them the gate stays open"""
        try:
            bars = self.provider.get_index_bars(symbol, start - timedelta(days=BENCHMARK_PADDING_DAYS), end)
            if bars is not None and not bars.empty:
                self.store.upsert_bars(symbol, bars)
        except Exception as e:
            logger.warning(f"Could not refresh {symbol} benchmark bars: {e}")

    def list_backtests(self, limit: int = 50) -> List[dict]:
        return self.store.list_backtests(limit)

    # ============== Universe / provider ==============

    def refresh_universe(self, tag: Optional[str] = None) -> int:
        tag = tag or self.config.get("universe.tag", "sp1500")
        count = refresh_universe(self.provider, self.store, tag)
        self.config.update({"universe": {"tag": tag}})
        return count

    def test_provider(self) -> bool:
        return self.provider.test_connection()

    def settings(self) -> dict:
        values = self.config.scan_config().to_dict()
        values["backtest"] = self.config.backtest
        values["provider"] = self.provider.name
        return values
