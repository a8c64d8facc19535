"""
CANSLIM Backtesting Engine

Simulates trading the screen day by day over stored history, reusing the
scanner's scoring so backtest entries match what a scan would have shown.
"""

import logging
import math
from dataclasses import dataclass, field, asdict, fields
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from canslim_scorer import CANSLIMScorer, LIQUIDITY_REASONS
from config_loader import ScanConfig
from errors import BacktestDataError, ConfigurationError
from ibd_ratings import IBDRatingsCalculator, rank_industry_groups
from metrics import VOLUME_LOOKBACK, is_breakout_confirmed, is_market_uptrend
from backend.historical_data import EARNINGS_REPORT_DELAY_DAYS, HistoricalDataProvider

logger = logging.getLogger(__name__)

# Exit reasons
STOP_LOSS = "stop-loss"
PROFIT_TARGET = "profit-target"
TIME_LIMIT = "time-limit"
MARKET_GATE = "market-gate"
BACKTEST_END = "backtest-end"


@dataclass
class BacktestConfig:
    date_from: date
    date_to: date
    score_cutoff: float = 70.0
    max_positions: int = 10
    risk_percent: float = 1.0
    stop_percent: float = 8.0
    initial_capital: float = 100_000.0
    use_market_gate: bool = True
    profit_target_percent: Optional[float] = None
    fixed_profit_target_percent: Optional[float] = 15.0
    max_holding_days: int = 30
    earnings_report_delay_days: int = EARNINGS_REPORT_DELAY_DAYS

    def __post_init__(self):
        if isinstance(self.date_from, str):
            self.date_from = date.fromisoformat(self.date_from)
        if isinstance(self.date_to, str):
            self.date_to = date.fromisoformat(self.date_to)
        if self.date_from > self.date_to:
            raise ConfigurationError("date_from must be on or before date_to")
        if self.stop_percent <= 0:
            raise ConfigurationError("stop_percent must be positive")
        if self.max_positions <= 0:
            raise ConfigurationError("max_positions must be positive")
        if self.initial_capital <= 0:
            raise ConfigurationError("initial_capital must be positive")

    @classmethod
    def from_dict(cls, values: dict, defaults: Optional[dict] = None) -> "BacktestConfig":
        """Request values over yaml defaults; unknown keys are ignored"""
        merged = {**(defaults or {}), **{k: v for k, v in values.items() if v is not None}}
        # an explicit null disables the fixed target
        if "fixed_profit_target_percent" in values:
            merged["fixed_profit_target_percent"] = values["fixed_profit_target_percent"]
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in merged.items() if k in known})

    def to_dict(self) -> dict:
        values = asdict(self)
        values["date_from"] = self.date_from.isoformat()
        values["date_to"] = self.date_to.isoformat()
        return values


@dataclass
class SimulatedPosition:
    """In-memory position for simulation"""
    symbol: str
    shares: int
    entry_price: float
    entry_date: date
    entry_score: float


@dataclass(frozen=True)
class Trade:
    symbol: str
    entry_date: date
    entry_price: float
    shares: int
    exit_date: date
    exit_price: float
    exit_reason: str
    return_pct: float
    pnl: float
    score: float
    holding_days: int

    def to_dict(self) -> dict:
        values = asdict(self)
        values["entry_date"] = self.entry_date.isoformat()
        values["exit_date"] = self.exit_date.isoformat()
        return values


@dataclass(frozen=True)
class EquityPoint:
    date: date
    equity: float
    cash: float
    positions: int

    def to_dict(self) -> dict:
        return {"date": self.date.isoformat(), "equity": self.equity, "cash": self.cash,
                "positions": self.positions}


@dataclass
class BacktestReport:
    start_date: date
    end_date: date
    initial_capital: float
    final_equity: float
    total_return: float
    sharpe: float
    max_drawdown: float
    hit_rate: float
    avg_win: float
    avg_loss: float
    profit_factor: float
    largest_win: float
    largest_loss: float
    avg_holding_days: float
    total_trades: int
    symbol_stats: List[dict] = field(default_factory=list)
    trades: List[Trade] = field(default_factory=list)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    range_adjustment: Optional[str] = None
    backtest_id: Optional[int] = None

    def summary(self) -> dict:
        """Headline metrics without the trade list and equity curve"""
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "initial_capital": self.initial_capital,
            "final_equity": self.final_equity,
            "total_return": self.total_return,
            "sharpe": self.sharpe,
            "max_drawdown": self.max_drawdown,
            "hit_rate": self.hit_rate,
            "avg_win": self.avg_win,
            "avg_loss": self.avg_loss,
            "profit_factor": self.profit_factor,
            "largest_win": self.largest_win,
            "largest_loss": self.largest_loss,
            "avg_holding_days": self.avg_holding_days,
            "total_trades": self.total_trades,
            "range_adjustment": self.range_adjustment,
        }

    def to_dict(self) -> dict:
        values = self.summary()
        values.update({
            "backtest_id": self.backtest_id,
            "symbol_stats": self.symbol_stats,
            "trades": [t.to_dict() for t in self.trades],
            "equity_curve": [p.to_dict() for p in self.equity_curve],
        })
        return values


class BacktestEngine:
    """
    Runs a historical simulation of the CANSLIM screen.
    Each engine owns its portfolio state; engines share nothing.
    """

    def __init__(self, store, scan_config: ScanConfig, backtest_config: BacktestConfig,
                 market_condition: Optional[Callable[[date], bool]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.scan_config = scan_config
        self.config = backtest_config
        self.market_condition = market_condition
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.scorer = CANSLIMScorer(scan_config, IBDRatingsCalculator())

        self.data_provider: Optional[HistoricalDataProvider] = None
        self.cash: float = backtest_config.initial_capital
        self.positions: Dict[str, SimulatedPosition] = {}
        self.trades: List[Trade] = []
        self.equity_curve: List[EquityPoint] = []

    def run(self) -> BacktestReport:
        symbols = [m.symbol for m in self.store.list_symbols()]
        self.data_provider = HistoricalDataProvider(
            self.store, symbols,
            benchmark=self.scan_config.market_gate.symbol,
            earnings_report_delay_days=self.config.earnings_report_delay_days,
        )
        self.data_provider.preload_data()

        start, end, adjustment = self._resolve_range(self.data_provider.available_range())
        trading_days = self.data_provider.get_trading_days(start, end)
        logger.info(f"Backtest {start} to {end}: {len(trading_days)} trading days, "
                    f"{len(self.data_provider.get_available_tickers())} symbols")

        for current_date in trading_days:
            self._simulate_day(current_date)

        for symbol in list(self.positions):
            price = self.data_provider.get_price_on_date(symbol, end) or self.positions[symbol].entry_price
            self._execute_sell(symbol, end, price, BACKTEST_END)

        report = self._calculate_final_metrics(start, end, adjustment)
        report.backtest_id = self.store.save_backtest(self.config.to_dict(), report.summary(),
                                                      created_at=self.clock())
        logger.info(f"Backtest {report.backtest_id} done: {report.total_trades} trades, "
                    f"return {report.total_return:.2%}")
        return report

    def _resolve_range(self, available: Optional[Tuple[date, date]]) -> Tuple[date, date, Optional[str]]:
        """Clamp the requested range to the data; no overlap falls back to everything available"""
        if available is None:
            raise BacktestDataError("No historical price data available; run a scan first")

        first, last = available
        requested_from, requested_to = self.config.date_from, self.config.date_to
        start = max(requested_from, first)
        end = min(requested_to, last)

        if start > end:
            note = (f"Requested {requested_from} to {requested_to} has no data; "
                    f"using available range {first} to {last}")
            logger.warning(note)
            return first, last, note

        if (start, end) != (requested_from, requested_to):
            note = f"Requested {requested_from} to {requested_to} clamped to {start} to {end}"
            logger.warning(note)
            return start, end, note

        return start, end, None

    def _market_is_up(self, current_date: date) -> bool:
        if self.market_condition is not None:
            return bool(self.market_condition(current_date))
        gate = self.scan_config.market_gate
        history = self.data_provider.get_benchmark_history_up_to(current_date)
        return is_market_uptrend(history, gate.ma_short, gate.ma_long)

    def _simulate_day(self, current_date: date):
        if self.config.use_market_gate and not self._market_is_up(current_date):
            for symbol in list(self.positions):
                price = self.data_provider.get_price_on_date(symbol, current_date)
                self._execute_sell(symbol, current_date, price or self.positions[symbol].entry_price, MARKET_GATE)
            return

        self._evaluate_sells(current_date)
        if len(self.positions) < self.config.max_positions:
            self._evaluate_buys(current_date)
        self._take_snapshot(current_date)

    def _evaluate_sells(self, current_date: date):
        """Stop-loss, then profit targets, then the holding-period limit"""
        stop = -self.config.stop_percent / 100
        targets = [t / 100 for t in (self.config.profit_target_percent,
                                     self.config.fixed_profit_target_percent) if t is not None]

        for symbol, position in list(self.positions.items()):
            bar = self.data_provider.get_bar_on_date(symbol, current_date)
            if bar is None:
                continue

            price = float(bar["close"])
            change = (price - position.entry_price) / position.entry_price
            holding_days = (current_date - position.entry_date).days

            if change <= stop:
                self._execute_sell(symbol, current_date, price, STOP_LOSS)
            elif any(change >= target for target in targets):
                self._execute_sell(symbol, current_date, price, PROFIT_TARGET)
            elif holding_days > self.config.max_holding_days:
                self._execute_sell(symbol, current_date, price, TIME_LIMIT)

    def _evaluate_buys(self, current_date: date):
        """Score every symbol not held using data up to today and buy the best breakouts"""
        returns = self.data_provider.get_returns_as_of(current_date)
        industries = {s: self.data_provider.get_meta(s).industry for s in returns}
        group_ranks = rank_industry_groups(returns, industries)

        candidates = []
        for symbol in self.data_provider.get_available_tickers():
            if symbol in self.positions:
                continue
            if self.data_provider.get_bar_on_date(symbol, current_date) is None:
                continue

            history = self.data_provider.get_price_history_up_to(symbol, current_date)
            if len(history) < VOLUME_LOOKBACK:
                continue
            if not is_breakout_confirmed(history.tail(VOLUME_LOOKBACK + 1)):
                continue

            meta = self.data_provider.get_meta(symbol)
            result = self.scorer.evaluate(
                symbol, history,
                self.data_provider.get_earnings_as_of(symbol, current_date),
                self.data_provider.get_ownership_as_of(symbol, current_date),
                returns,
                meta=meta,
                industry_group_rank=group_ranks.get(meta.industry),
            )

            if any(reason in LIQUIDITY_REASONS for reason in result.disqualification_reasons):
                continue
            if result.score < self.config.score_cutoff:
                continue
            candidates.append((result.score, symbol, result.price))

        # rank by score, highest first; ties keep universe order
        candidates.sort(key=lambda c: -c[0])

        for score, symbol, price in candidates:
            if len(self.positions) >= self.config.max_positions:
                break
            if price <= 0:
                continue

            risk_amount = self.cash * self.config.risk_percent / 100
            position_value = risk_amount / (self.config.stop_percent / 100)
            shares = math.floor(position_value / price)
            if shares <= 0 or shares * price > self.cash:
                continue

            self._execute_buy(symbol, current_date, price, shares, score)

    def _execute_buy(self, symbol: str, current_date: date, price: float, shares: int, score: float):
        self.cash -= shares * price
        self.positions[symbol] = SimulatedPosition(
            symbol=symbol, shares=shares, entry_price=price, entry_date=current_date, entry_score=score,
        )
        logger.debug(f"BUY {symbol}: {shares} @ {price:.2f} (score {score:.1f})")

    def _execute_sell(self, symbol: str, current_date: date, price: float, reason: str):
        position = self.positions.pop(symbol)
        self.cash += position.shares * price

        self.trades.append(Trade(
            symbol=symbol,
            entry_date=position.entry_date,
            entry_price=position.entry_price,
            shares=position.shares,
            exit_date=current_date,
            exit_price=price,
            exit_reason=reason,
            return_pct=(price - position.entry_price) / position.entry_price,
            pnl=position.shares * (price - position.entry_price),
            score=position.entry_score,
            holding_days=(current_date - position.entry_date).days,
        ))
        logger.debug(f"SELL {symbol}: {position.shares} @ {price:.2f} ({reason})")

    def _get_portfolio_value(self, current_date: date) -> float:
        """Cash plus positions marked at the latest close, else cost"""
        positions_value = sum(
            pos.shares * (self.data_provider.get_price_on_date(pos.symbol, current_date) or pos.entry_price)
            for pos in self.positions.values()
        )
        return self.cash + positions_value

    def _take_snapshot(self, current_date: date):
        self.equity_curve.append(EquityPoint(
            date=current_date,
            equity=self._get_portfolio_value(current_date),
            cash=self.cash,
            positions=len(self.positions),
        ))

    def _calculate_final_metrics(self, start: date, end: date, adjustment: Optional[str]) -> BacktestReport:
        initial = self.config.initial_capital
        final_equity = self.cash
        returns = np.array([t.return_pct for t in self.trades], dtype=float)

        wins = returns[returns > 0]
        losses = returns[returns <= 0]

        sharpe = 0.0
        if len(returns) > 0 and np.std(returns) > 0:
            # per-trade, not annualized
            sharpe = float(np.mean(returns) / np.std(returns))

        peak = initial
        max_drawdown = 0.0
        for point in self.equity_curve:
            peak = max(peak, point.equity)
            if peak > 0:
                max_drawdown = max(max_drawdown, (peak - point.equity) / peak)

        avg_win = float(np.mean(wins)) if len(wins) else 0.0
        avg_loss = float(abs(np.mean(losses))) if len(losses) else 0.0

        return BacktestReport(
            start_date=start,
            end_date=end,
            initial_capital=initial,
            final_equity=final_equity,
            total_return=(final_equity - initial) / initial,
            sharpe=sharpe,
            max_drawdown=max_drawdown,
            hit_rate=len(wins) / len(returns) if len(returns) else 0.0,
            avg_win=avg_win,
            avg_loss=avg_loss,
            profit_factor=avg_win / avg_loss if avg_loss > 0 else 0.0,
            largest_win=float(wins.max()) if len(wins) else 0.0,
            largest_loss=float(losses.min()) if len(losses) else 0.0,
            avg_holding_days=float(np.mean([t.holding_days for t in self.trades])) if self.trades else 0.0,
            total_trades=len(self.trades),
            symbol_stats=self._symbol_stats(),
            trades=list(self.trades),
            equity_curve=list(self.equity_curve),
            range_adjustment=adjustment,
        )

    def _symbol_stats(self) -> List[dict]:
        by_symbol: Dict[str, List[Trade]] = {}
        for trade in self.trades:
            by_symbol.setdefault(trade.symbol, []).append(trade)

        stats = []
        for symbol, trades in by_symbol.items():
            returns = [t.return_pct for t in trades]
            stats.append({
                "symbol": symbol,
                "trades": len(trades),
                "win_rate": sum(1 for r in returns if r > 0) / len(returns),
                "avg_return": sum(returns) / len(returns),
                "total_return": sum(returns),
            })
        return sorted(stats, key=lambda s: s["total_return"], reverse=True)


def run_backtest(store, scan_config: ScanConfig, backtest_config: BacktestConfig,
                 market_condition: Optional[Callable[[date], bool]] = None) -> BacktestReport:
    """Run a backtest and return its report"""
    engine = BacktestEngine(store, scan_config, backtest_config, market_condition)
    return engine.run()
