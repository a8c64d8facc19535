"""
Market gate (the M in CANSLIM).

Scans only run while the benchmark index is in a confirmed uptrend:
price above its short moving average, short average above the long one.
The gate fails open: missing data or a provider error never blocks a scan.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from config_loader import MarketGateConfig
from metrics import is_market_uptrend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarketGateResult:
    is_open: bool
    trend_ok: bool
    reason: str


def check_market_gate(provider, gate_config: MarketGateConfig, now: datetime) -> MarketGateResult:
    """Decide whether a scan may run at `now`"""
    if not gate_config.use:
        return MarketGateResult(is_open=True, trend_ok=True, reason="Market gate disabled")

    try:
        end = now.date()
        start = end - timedelta(days=gate_config.lookback_days)
        bars = provider.get_index_bars(gate_config.symbol, start, end)

        if bars is None or len(bars) < gate_config.ma_long:
            count = 0 if bars is None else len(bars)
            logger.warning(
                f"Insufficient {gate_config.symbol} data for market gate "
                f"({count} bars, need {gate_config.ma_long}); defaulting to open"
            )
            return MarketGateResult(is_open=True, trend_ok=False, reason="Insufficient market data")

        trend_ok = is_market_uptrend(bars, gate_config.ma_short, gate_config.ma_long)
        if trend_ok:
            reason = (f"{gate_config.symbol} in uptrend: price > MA{gate_config.ma_short} "
                      f"> MA{gate_config.ma_long}")
        else:
            reason = (f"{gate_config.symbol} not in uptrend: price > MA{gate_config.ma_short} "
                      f"> MA{gate_config.ma_long} not satisfied")
        logger.info(f"Market gate: {reason}")
        return MarketGateResult(is_open=trend_ok, trend_ok=trend_ok, reason=reason)

    except Exception as e:
        logger.error(f"Market gate check failed: {e}")
        return MarketGateResult(is_open=True, trend_ok=False,
                                reason="Market gate check failed, defaulting to open")
