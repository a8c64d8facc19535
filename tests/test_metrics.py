"""
Tests for the pure factor calculations
"""

import pytest
from datetime import date

import pandas as pd

from conftest import bars_from_closes, quarter_ends, trending_bars
from metrics import (
    EarningsRecord, OwnershipRecord, annual_earnings_cagr, bars_frame, current_earnings_growth,
    institutional_delta, is_breakout_confirmed, is_market_uptrend, liquidity, new_high_ratio,
    relative_strength_from_returns, relative_strength_percentile, trailing_return,
    universe_returns, volume_spike,
)


def _earnings(eps_newest_first, last=date(2024, 3, 31)):
    ends = quarter_ends(len(eps_newest_first), last)
    return [EarningsRecord("AAA", q, eps) for q, eps in zip(ends, eps_newest_first)]


def _breakout_bars(last_volume=3_000_000):
    closes = [10.0] * 60 + [11.0]
    volumes = [1_000_000] * 60 + [last_volume]
    return bars_from_closes(closes, volumes=volumes)


class TestNeutralFallbacks:
    """Insufficient data returns the documented neutral value"""

    def test_volume_spike_single_bar(self):
        assert volume_spike(bars_from_closes([10.0])) == 1.0

    def test_volume_spike_none(self):
        assert volume_spike(None) == 1.0

    def test_new_high_ratio_empty(self):
        assert new_high_ratio(None) == 0.0
        assert new_high_ratio(bars_frame([])) == 0.0

    def test_earnings_growth_needs_five_quarters(self):
        assert current_earnings_growth(_earnings([2.0, 1.5, 1.2, 1.0])) == 0.0
        assert current_earnings_growth([]) == 0.0

    def test_cagr_needs_sixteen_quarters(self):
        assert annual_earnings_cagr(_earnings([1.0] * 15)) == 0.0

    def test_relative_strength_short_series(self):
        bars = trending_bars(100, daily_change=0.01)
        assert relative_strength_percentile("AAA", bars, {"AAA": bars}) == 50.0

    def test_institutional_delta_single_observation(self):
        assert institutional_delta([OwnershipRecord("AAA", date(2024, 3, 31), 0.6)]) == 0.0

    def test_liquidity_short_series(self):
        assert liquidity(bars_from_closes([10.0] * 10)) == (0.0, 0.0)

    def test_trailing_return_short_series(self):
        assert trailing_return(bars_from_closes([10.0, 11.0])) == 0.0


class TestEarnings:
    """Tests for the C and A factors"""

    def test_same_quarter_growth(self):
        # newest 1.50 vs 1.00 one year earlier
        records = _earnings([1.5, 1.3, 1.2, 1.1, 1.0])
        assert current_earnings_growth(records) == pytest.approx(0.5)

    def test_growth_from_negative_base_uses_absolute_value(self):
        records = _earnings([0.5, 0.2, 0.0, -0.5, -1.0])
        assert current_earnings_growth(records) == pytest.approx(1.5)

    def test_growth_without_matching_quarter(self):
        # nothing within 45 days of 2023-03-31
        records = [
            EarningsRecord("AAA", date(2024, 3, 31), 2.0),
            EarningsRecord("AAA", date(2023, 12, 31), 1.8),
            EarningsRecord("AAA", date(2023, 9, 30), 1.6),
            EarningsRecord("AAA", date(2023, 6, 30), 1.4),
            EarningsRecord("AAA", date(2022, 12, 31), 1.0),
        ]
        assert current_earnings_growth(records) == 0.0

    def test_growth_ignores_input_order(self):
        records = _earnings([1.5, 1.3, 1.2, 1.1, 1.0])
        assert current_earnings_growth(list(reversed(records))) == current_earnings_growth(records)

    def test_cagr_doubling_ttm(self):
        records = _earnings([2.0] * 4 + [1.5] * 8 + [1.0] * 4)
        assert annual_earnings_cagr(records) == pytest.approx(2 ** (1 / 3) - 1)

    def test_cagr_non_positive_prior(self):
        records = _earnings([2.0] * 12 + [-0.5] * 4)
        assert annual_earnings_cagr(records) == 0.0

    def test_cagr_current_loss(self):
        records = _earnings([-0.5] * 4 + [1.0] * 12)
        assert annual_earnings_cagr(records) == -1.0


class TestPriceVolume:
    """Tests for the N and S factors"""

    def test_new_high_ratio_at_high(self):
        bars = trending_bars(260, daily_change=0.005)
        assert new_high_ratio(bars) == pytest.approx(1 / 1.01)

    def test_new_high_ratio_after_pullback(self):
        bars = bars_from_closes([100.0] * 100 + [80.0], spread=0.0)
        assert new_high_ratio(bars) == pytest.approx(0.8)

    def test_volume_spike(self):
        bars = _breakout_bars(last_volume=3_000_000)
        assert volume_spike(bars) == pytest.approx(3.0)

    def test_liquidity(self):
        bars = bars_from_closes([10.0] * 60, volumes=[1000] * 60)
        liq = liquidity(bars)
        assert liq.dollar_volume_50d == pytest.approx(10_000)
        assert liq.avg_price == pytest.approx(10.0)


class TestRelativeStrength:
    """Tests for the L factor"""

    def test_percent_of_peers_beaten(self):
        peers = {"AAA": 0.5, "BBB": 0.1, "CCC": 0.2, "DDD": 0.6}
        assert relative_strength_from_returns("AAA", 0.5, peers) == pytest.approx(200 / 3)

    def test_symbol_excluded_from_peers(self):
        assert relative_strength_from_returns("AAA", 0.5, {"AAA": 0.5}) == 50.0

    def test_ties_are_not_beaten(self):
        assert relative_strength_from_returns("AAA", 0.2, {"BBB": 0.2, "CCC": 0.2}) == 0.0

    def test_monotonic_in_return(self):
        peers = {f"P{i}": i / 10 for i in range(-5, 6)}
        percentiles = [relative_strength_from_returns("AAA", r / 20, peers) for r in range(-15, 16)]
        assert percentiles == sorted(percentiles)

    def test_percentile_from_bars(self):
        strong = trending_bars(260, daily_change=0.003)
        flat = trending_bars(260)
        weak = trending_bars(260, daily_change=-0.002)
        short = trending_bars(30, daily_change=0.05)
        universe = {"AAA": strong, "BBB": flat, "CCC": weak, "DDD": short}

        assert relative_strength_percentile("AAA", strong, universe) == 100.0
        assert relative_strength_percentile("CCC", weak, universe) == 0.0

    def test_universe_returns_skip_short_series(self):
        returns = universe_returns({"AAA": trending_bars(260, daily_change=0.001),
                                    "BBB": trending_bars(100)})
        assert set(returns) == {"AAA"}
        assert returns["AAA"] == pytest.approx(1.001 ** 251 - 1)


class TestInstitutional:

    def test_delta_between_latest_two(self):
        records = [
            OwnershipRecord("AAA", date(2023, 12, 31), 0.60),
            OwnershipRecord("AAA", date(2024, 3, 31), 0.65),
            OwnershipRecord("AAA", date(2023, 9, 30), 0.40),
        ]
        assert institutional_delta(records) == pytest.approx(0.05)


class TestTechnicals:
    """Breakout confirmation and the market trend check"""

    def test_breakout_confirmed(self):
        assert is_breakout_confirmed(_breakout_bars()) is True

    def test_breakout_needs_volume(self):
        assert is_breakout_confirmed(_breakout_bars(last_volume=1_200_000)) is False

    def test_breakout_needs_history(self):
        assert is_breakout_confirmed(bars_from_closes([10.0] * 20 + [11.0])) is False

    def test_breakout_needs_close_in_upper_half(self):
        bars = _breakout_bars()
        bars.loc[bars.index[-1], "high"] = 14.0
        assert is_breakout_confirmed(bars) is False

    def test_uptrend(self):
        assert is_market_uptrend(trending_bars(260, daily_change=0.002)) is True

    def test_downtrend(self):
        assert is_market_uptrend(trending_bars(260, daily_change=-0.002)) is False

    def test_insufficient_history_counts_as_uptrend(self):
        assert is_market_uptrend(trending_bars(150, daily_change=-0.01)) is True


class TestBarsFrame:

    def test_normalizes_columns_order_and_duplicates(self):
        df = pd.DataFrame({
            "Date": ["2024-01-03", "2024-01-02", "2024-01-03"],
            "Open": [1, 1, 1], "High": [2, 2, 2], "Low": [0.5, 0.5, 0.5],
            "Close": [1.5, 1.2, 1.8], "Volume": [100, 200, 300],
        })
        bars = bars_frame(df)

        assert list(bars.columns) == ["date", "open", "high", "low", "close", "volume"]
        assert bars["date"].tolist() == [date(2024, 1, 2), date(2024, 1, 3)]
        assert bars["close"].tolist() == [1.2, 1.8]


class TestIdempotence:

    def test_repeated_calls_identical(self):
        bars = trending_bars(300, daily_change=0.001, volumes=[1_000_000 + i for i in range(300)])
        first = (new_high_ratio(bars), volume_spike(bars), trailing_return(bars), liquidity(bars))
        second = (new_high_ratio(bars), volume_spike(bars), trailing_return(bars), liquidity(bars))
        assert first == second
