"""
Incremental universe scanner.

Walks the stored universe in fixed-size batches, refreshes only stale
symbols from the provider, scores every symbol of the batch against the
universe-wide relative strength snapshot, and publishes the merged,
re-ranked result set after each batch. Readers always see a complete,
ordered snapshot that only grows while the run is in progress.

One scan at a time: a second start while running is refused.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Union

import pandas as pd

from canslim_scorer import CANSLIMScorer, ScoreResult, rank_results
from config_loader import ScanConfig
from errors import ConfigurationError, ScanInProgressError
from ibd_ratings import IBDRatingsCalculator, rank_industry_groups
from metrics import TRADING_DAYS_PER_YEAR, trailing_return, universe_returns
from backend.market_gate import MarketGateResult, check_market_gate
from backend.universe import validate_universe_tag

logger = logging.getLogger(__name__)

SCAN_MODES = ("daily", "intraday")

EXPORT_COLUMNS = [
    "rank", "symbol", "name", "sector", "industry", "price", "score", "qualified",
    "criteria_met", "disqualification_reasons", "flags",
    "c_qoq", "a_cagr", "pct_52w", "vol_spike", "rs_pct", "i_delta",
    "ibd_rs_rating", "ibd_up_down_ratio", "ibd_ad_rating", "ibd_smr_rating",
    "ibd_composite", "industry_group_rank",
]


class ScanState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"


@dataclass(frozen=True)
class LiveScanAccumulator:
    """Immutable, fully ordered snapshot of one run's results"""
    run_id: Optional[int] = None
    results: Tuple[ScoreResult, ...] = ()

    def merged(self, batch: List[ScoreResult]) -> "LiveScanAccumulator":
        """New snapshot with the batch merged in; a re-scored symbol replaces its old entry"""
        by_symbol: Dict[str, ScoreResult] = {r.symbol: r for r in self.results}
        for result in batch:
            by_symbol[result.symbol] = result
        return LiveScanAccumulator(run_id=self.run_id, results=tuple(rank_results(list(by_symbol.values()))))

    @property
    def symbols(self) -> List[str]:
        return [r.symbol for r in self.results]

    def __len__(self):
        return len(self.results)


@dataclass
class ScanSession:
    """One started run; handed from begin() to execute()"""
    run_id: int
    mode: str
    config: ScanConfig
    universe: List[str]
    started_at: datetime
    gate: MarketGateResult
    batches_total: int = 0
    batches_done: int = 0
    failed_batches: List[int] = field(default_factory=list)
    symbols_fetched: int = 0
    accumulator: LiveScanAccumulator = field(default_factory=LiveScanAccumulator)

    @property
    def gated(self) -> bool:
        return not self.gate.is_open

    @property
    def max_age_days(self) -> int:
        if self.mode == "intraday":
            return self.config.scanner.intraday_max_age_days
        return self.config.scanner.daily_max_age_days


def export_results(results: List[ScoreResult], fmt: str) -> bytes:
    """Serialize ranked results as csv or json"""
    records = []
    for rank, result in enumerate(results, start=1):
        record = result.to_record()
        record["rank"] = rank
        records.append(record)

    if fmt == "json":
        return json.dumps(records, indent=2, default=str).encode("utf-8")

    if fmt == "csv":
        df = pd.DataFrame(records, columns=EXPORT_COLUMNS)
        for column in ("disqualification_reasons", "flags"):
            df[column] = df[column].apply(lambda values: ";".join(values) if isinstance(values, list) else "")
        return df.to_csv(index=False).encode("utf-8")

    raise ConfigurationError(f"Unknown export format: {fmt}. Expected csv or json")


class UniverseScanner:
    """Runs batched scans over the stored universe"""

    def __init__(self, store, provider,
                 config_source: Union[ScanConfig, Callable[[], ScanConfig]],
                 clock: Callable[[], datetime],
                 sleep: Callable[[float], None] = time.sleep,
                 calculator: Optional[IBDRatingsCalculator] = None):
        self.store = store
        self.provider = provider
        self._config_source = config_source
        self.clock = clock
        self.sleep = sleep
        self.calculator = calculator or IBDRatingsCalculator()

        self._lock = threading.Lock()
        self.state = ScanState.IDLE
        self._session: Optional[ScanSession] = None
        self._accumulator = LiveScanAccumulator()
        self.last_error: Optional[str] = None

    def _load_config(self) -> ScanConfig:
        if callable(self._config_source):
            return self._config_source()
        return self._config_source

    @property
    def accumulator(self) -> LiveScanAccumulator:
        """Latest published snapshot"""
        return self._accumulator

    @property
    def progress(self) -> dict:
        session = self._session
        return {
            "state": self.state.value,
            "run_id": session.run_id if session else None,
            "mode": session.mode if session else None,
            "batches_done": session.batches_done if session else 0,
            "batches_total": session.batches_total if session else 0,
            "failed_batches": list(session.failed_batches) if session else [],
            "symbols_fetched": session.symbols_fetched if session else 0,
            "symbols_scored": len(self._accumulator),
            "universe_size": len(session.universe) if session else 0,
            "last_error": self.last_error,
        }

    def run_scan(self, mode: str = "daily") -> int:
        """Start and run a scan to completion; returns the run id"""
        session = self.begin(mode)
        if not session.gated:
            self.execute(session)
        return session.run_id

    def begin(self, mode: str = "daily") -> ScanSession:
        """
        Validate, snapshot configuration, consult the market gate and create
        the run. A closed gate records an empty 'gated' run and releases the
        scanner immediately.
        """
        if mode not in SCAN_MODES:
            raise ConfigurationError(f"Unknown scan mode: {mode}. Expected one of {SCAN_MODES}")

        if not self._lock.acquire(blocking=False):
            raise ScanInProgressError(self._session.run_id if self._session else None)

        try:
            scan_config = self._load_config()
            validate_universe_tag(scan_config.universe.tag)

            universe = [meta.symbol for meta in self.store.list_symbols()]
            if not universe:
                raise ConfigurationError("Universe is empty; refresh universe first")

            now = self.clock()
            gate = check_market_gate(self.provider, scan_config.market_gate, now)

            run_id = self.store.create_scan_run(
                universe=scan_config.universe.tag,
                provider=self.provider.name,
                mode=mode,
                config=scan_config.to_dict(),
                run_at=now,
            )
            batch_size = scan_config.scanner.batch_size
            session = ScanSession(
                run_id=run_id,
                mode=mode,
                config=scan_config,
                universe=universe,
                started_at=now,
                gate=gate,
                batches_total=(len(universe) + batch_size - 1) // batch_size,
                accumulator=LiveScanAccumulator(run_id=run_id),
            )
            self._session = session
            self._accumulator = session.accumulator
            self.last_error = None
            self.store.replace_live_results(run_id, [])

            if session.gated:
                logger.info(f"Scan {run_id} skipped: {gate.reason}")
                self.store.finish_scan_run(run_id, status="gated", result_count=0,
                                           completed_at=self.clock(), gate_reason=gate.reason)
                self.state = ScanState.IDLE
                self._lock.release()
                return session

            self.state = ScanState.RUNNING
            logger.info(f"Scan {run_id} started: {len(universe)} symbols, "
                        f"{session.batches_total} batches, mode={mode}")
            return session

        except Exception:
            self._lock.release()
            raise

    def execute(self, session: ScanSession) -> LiveScanAccumulator:
        """Run every batch of a started session, then finalize the run"""
        if session.gated:
            return session.accumulator
        if session is not self._session or self.state is not ScanState.RUNNING:
            raise ConfigurationError(f"Scan {session.run_id} is not the active run")

        try:
            scan_config = session.config
            batch_size = scan_config.scanner.batch_size

            # RS pre-pass: one-year return of every symbol with a full year of bars
            stored = self.store.get_bars_bulk(session.universe)
            returns = universe_returns(stored)
            industries = {meta.symbol: meta.industry for meta in self.store.list_symbols()}
            del stored

            batches = [session.universe[i:i + batch_size] for i in range(0, len(session.universe), batch_size)]
            for index, batch in enumerate(batches):
                try:
                    self._process_batch(session, batch, returns, industries)
                except Exception as e:
                    logger.error(f"Scan {session.run_id} batch {index + 1}/{len(batches)} failed: {e}")
                    session.failed_batches.append(index)

                session.batches_done += 1
                if index < len(batches) - 1 and scan_config.scanner.batch_delay_seconds > 0:
                    self.sleep(scan_config.scanner.batch_delay_seconds)

            results = list(session.accumulator.results)
            self.store.save_scan_results(session.run_id, results)
            self.store.finish_scan_run(session.run_id, status="completed",
                                       result_count=len(results), completed_at=self.clock())
            self.state = ScanState.IDLE

            qualified = sum(1 for r in results if r.qualified)
            logger.info(f"Scan {session.run_id} completed: {len(results)} scored, {qualified} qualified, "
                        f"{len(session.failed_batches)} failed batches")
            return session.accumulator

        except Exception as e:
            self.state = ScanState.FAILED
            self.last_error = str(e)
            logger.error(f"Scan {session.run_id} failed: {e}")
            try:
                self.store.finish_scan_run(session.run_id, status="failed",
                                           result_count=len(session.accumulator), completed_at=self.clock())
            except Exception as store_error:
                logger.error(f"Could not mark scan {session.run_id} failed: {store_error}")
            raise

        finally:
            self._lock.release()

    def _process_batch(self, session: ScanSession, batch: List[str],
                       returns: Dict[str, float], industries: Dict[str, str]):
        now = self.clock()
        cutoff = now.date() - timedelta(days=session.max_age_days)

        latest = self.store.latest_bar_dates(batch)
        stale = [s for s in batch if latest.get(s) is None or latest[s] < cutoff]
        if stale:
            self._refresh(session, stale, now)

        bars_by_symbol = self.store.get_bars_bulk(batch)
        earnings = self.store.get_earnings_bulk(batch)
        ownership = self.store.get_ownership_bulk(batch)
        in_batch = set(batch)
        metas = {meta.symbol: meta for meta in self.store.list_symbols() if meta.symbol in in_batch}

        # Fold freshly fetched series into the RS snapshot
        for symbol in stale:
            bars = bars_by_symbol.get(symbol)
            if bars is not None and len(bars) >= TRADING_DAYS_PER_YEAR:
                returns[symbol] = trailing_return(bars)

        group_ranks = rank_industry_groups(returns, industries)
        scorer = CANSLIMScorer(session.config, self.calculator)

        scored = []
        for symbol in batch:
            meta = metas.get(symbol)
            scored.append(scorer.evaluate(
                symbol,
                bars_by_symbol.get(symbol),
                earnings.get(symbol, []),
                ownership.get(symbol, []),
                returns,
                meta=meta,
                industry_group_rank=group_ranks.get(meta.industry) if meta else None,
            ))

        accumulator = session.accumulator.merged(scored)
        self.store.replace_live_results(session.run_id, list(accumulator.results))
        session.accumulator = accumulator
        self._accumulator = accumulator

    def _refresh(self, session: ScanSession, symbols: List[str], now: datetime):
        """Fetch and store fresh data for stale symbols; provider errors mean no fresh data"""
        end = now.date()
        start = end - timedelta(days=session.config.scanner.history_days)

        try:
            bars = self.provider.get_ohlcv(symbols, start, end)
        except Exception as e:
            logger.warning(f"OHLCV fetch failed for {len(symbols)} symbols: {e}")
            bars = {}

        for symbol, frame in bars.items():
            if frame is not None and not frame.empty:
                self.store.upsert_bars(symbol, frame)
                session.symbols_fetched += 1

        if self.provider.supports_eps:
            try:
                for symbol, records in self.provider.get_quarterly_eps(symbols).items():
                    self.store.upsert_earnings(symbol, records)
            except Exception as e:
                logger.warning(f"EPS fetch failed for {len(symbols)} symbols: {e}")

        if self.provider.supports_ownership:
            try:
                for symbol, records in self.provider.get_ownership(symbols).items():
                    self.store.upsert_ownership(symbol, records)
            except Exception as e:
                logger.warning(f"Ownership fetch failed for {len(symbols)} symbols: {e}")
