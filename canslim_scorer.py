"""
CANSLIM Scorer Module
Implements weighted scoring for the six screened CANSLIM criteria
(C, A, N, S, L, I), the liquidity and IBD gates, and result ranking.

M (market direction) is not scored per stock; it gates whole scans
through backend/market_gate.py.
"""

import logging
from dataclasses import dataclass, asdict, field
from typing import Dict, List, Mapping, Optional, Tuple

import pandas as pd

from config_loader import ScanConfig
from ibd_ratings import IBDRatings, IBDRatingsCalculator, letter_at_least
from metrics import (
    EarningsRecord, OwnershipRecord, SymbolMeta, TRADING_DAYS_PER_YEAR,
    annual_earnings_cagr, current_earnings_growth, institutional_delta,
    is_breakout_confirmed, liquidity, new_high_ratio, relative_strength_from_returns,
    trailing_return, volume_spike,
)

logger = logging.getLogger(__name__)

FACTOR_KEYS = ("C", "A", "N", "S", "L", "I")
BONUS_FRACTION = 0.5

# Absolute bonus levels for the factors that are not bonused at 2x threshold
NEW_HIGH_BONUS = 0.95
RS_BONUS = 90.0
INSTITUTIONAL_BONUS = 0.05

# Reason codes, in the order they are reported
LOW_DOLLAR_VOLUME = "low-dollar-volume"
LOW_PRICE = "low-price"
RS_RATING_BELOW_MIN = "rs-rating-below-min"
UP_DOWN_BELOW_MIN = "up-down-ratio-below-min"
COMPOSITE_BELOW_MIN = "composite-below-min"
AD_RATING_BELOW_MIN = "ad-rating-below-min"
LIQUIDITY_REASONS = (LOW_DOLLAR_VOLUME, LOW_PRICE)

# Informational flags, never affect qualification
DATA_LIMITED = "data-limited"
NO_BREAKOUT = "no-breakout"


@dataclass(frozen=True)
class FactorSet:
    """Raw factor values for one symbol at one point in time"""
    current_earnings_growth: float = 0.0
    annual_earnings_cagr: float = 0.0
    new_high_ratio: float = 0.0
    volume_spike_ratio: float = 1.0
    relative_strength_percentile: float = 50.0
    institutional_delta: float = 0.0
    has_earnings_history: bool = False


@dataclass(frozen=True)
class ScoreResult:
    """Container for one symbol's score, gates and supporting values"""
    symbol: str
    score: float = 0.0
    qualified: bool = False
    disqualification_reasons: Tuple[str, ...] = ()
    factors: FactorSet = field(default_factory=FactorSet)
    ratings: Optional[IBDRatings] = None
    criteria_met: int = 0
    flags: Tuple[str, ...] = ()
    price: float = 0.0
    name: str = ""
    sector: str = "Unknown"
    industry: str = "Unknown"
    details: Dict[str, str] = field(default_factory=dict, compare=False)

    def to_record(self) -> Dict:
        """Flat dict used by persistence and export"""
        ratings = self.ratings
        return {
            "symbol": self.symbol,
            "name": self.name,
            "sector": self.sector,
            "industry": self.industry,
            "price": round(self.price, 4),
            "score": self.score,
            "qualified": self.qualified,
            "criteria_met": self.criteria_met,
            "disqualification_reasons": list(self.disqualification_reasons),
            "flags": list(self.flags),
            "c_qoq": self.factors.current_earnings_growth,
            "a_cagr": self.factors.annual_earnings_cagr,
            "pct_52w": self.factors.new_high_ratio,
            "vol_spike": self.factors.volume_spike_ratio,
            "rs_pct": self.factors.relative_strength_percentile,
            "i_delta": self.factors.institutional_delta,
            "has_earnings_history": self.factors.has_earnings_history,
            "ibd_rs_rating": ratings.rs_rating if ratings else None,
            "ibd_up_down_ratio": ratings.up_down_ratio if ratings else None,
            "ibd_ad_rating": ratings.ad_rating if ratings else None,
            "ibd_smr_rating": ratings.smr_rating if ratings else None,
            "ibd_composite": ratings.composite if ratings else None,
            "industry_group_rank": ratings.industry_group_rank if ratings else None,
        }

    @classmethod
    def from_record(cls, record: Mapping) -> "ScoreResult":
        ratings = None
        if record.get("ibd_rs_rating") is not None:
            ratings = IBDRatings(
                rs_rating=int(record["ibd_rs_rating"]),
                up_down_ratio=float(record.get("ibd_up_down_ratio") or 0.0),
                ad_rating=record.get("ibd_ad_rating") or "C",
                smr_rating=record.get("ibd_smr_rating") or "C",
                industry_group_rank=record.get("industry_group_rank"),
                composite=int(record.get("ibd_composite") or 50),
            )
        return cls(
            symbol=record["symbol"],
            score=float(record.get("score") or 0.0),
            qualified=bool(record.get("qualified")),
            disqualification_reasons=tuple(record.get("disqualification_reasons") or ()),
            factors=FactorSet(
                current_earnings_growth=float(record.get("c_qoq") or 0.0),
                annual_earnings_cagr=float(record.get("a_cagr") or 0.0),
                new_high_ratio=float(record.get("pct_52w") or 0.0),
                volume_spike_ratio=float(record.get("vol_spike") or 0.0),
                relative_strength_percentile=float(record.get("rs_pct") or 0.0),
                institutional_delta=float(record.get("i_delta") or 0.0),
                has_earnings_history=bool(record.get("has_earnings_history")),
            ),
            ratings=ratings,
            criteria_met=int(record.get("criteria_met") or 0),
            flags=tuple(record.get("flags") or ()),
            price=float(record.get("price") or 0.0),
            name=record.get("name") or "",
            sector=record.get("sector") or "Unknown",
            industry=record.get("industry") or "Unknown",
        )


def compute_factor_set(bars: pd.DataFrame, earnings: List[EarningsRecord],
                       ownership: List[OwnershipRecord], rs_percentile: float) -> FactorSet:
    """Assemble the factor values from raw series and the RS pre-pass"""
    return FactorSet(
        current_earnings_growth=current_earnings_growth(earnings),
        annual_earnings_cagr=annual_earnings_cagr(earnings),
        new_high_ratio=new_high_ratio(bars),
        volume_spike_ratio=volume_spike(bars),
        relative_strength_percentile=rs_percentile,
        institutional_delta=institutional_delta(ownership),
        has_earnings_history=bool(earnings),
    )


def rank_results(results: List[ScoreResult]) -> List[ScoreResult]:
    """Qualified first, then score descending. Stable, so ties keep input order."""
    return sorted(results, key=lambda r: (not r.qualified, -r.score))


class CANSLIMScorer:
    """Calculates weighted CANSLIM scores against one configuration snapshot"""

    def __init__(self, scan_config: ScanConfig, calculator: Optional[IBDRatingsCalculator] = None):
        self.config = scan_config
        self.weights = asdict(scan_config.weights)
        self.thresholds = scan_config.thresholds
        self.calculator = calculator or IBDRatingsCalculator()

    @property
    def max_points(self) -> float:
        return sum(self.weights.values()) * (1 + BONUS_FRACTION)

    def evaluate(self, symbol: str, bars: pd.DataFrame, earnings: List[EarningsRecord],
                 ownership: List[OwnershipRecord], peer_returns: Mapping[str, float],
                 meta: Optional[SymbolMeta] = None,
                 industry_group_rank: Optional[int] = None) -> ScoreResult:
        """
        Full pipeline for one symbol: factors, ratings, score and gates.
        peer_returns is the universe-wide {symbol: 1y return} pre-pass.
        """
        if bars is not None and len(bars) >= TRADING_DAYS_PER_YEAR:
            rs_percentile = relative_strength_from_returns(symbol, trailing_return(bars), peer_returns)
        else:
            rs_percentile = 50.0

        factors = compute_factor_set(bars, earnings, ownership, rs_percentile)
        others = [r for s, r in peer_returns.items() if s != symbol]
        ratings = self.calculator.calculate_all(bars, others, industry_group_rank=industry_group_rank)
        return self.score(symbol, factors, bars, ratings, meta)

    def score(self, symbol: str, factors: FactorSet, bars: pd.DataFrame,
              ratings: Optional[IBDRatings] = None, meta: Optional[SymbolMeta] = None) -> ScoreResult:
        """Calculate the weighted score and apply the gates"""
        scored = {
            "C": self._score_current_earnings(factors),
            "A": self._score_annual_earnings(factors),
            "N": self._score_new_highs(factors),
            "S": self._score_supply_demand(factors),
            "L": self._score_leader(factors),
            "I": self._score_institutional(factors),
        }

        points = 0.0
        criteria_met = 0
        details = {}
        for key in FACTOR_KEYS:
            satisfied, bonus, detail = scored[key]
            weight = self.weights[key]
            if satisfied:
                criteria_met += 1
                points += weight
                if bonus:
                    points += weight * BONUS_FRACTION
            details[key] = detail

        score = points / self.max_points * 100 if self.max_points > 0 else 0.0
        score = round(max(0.0, min(100.0, score)), 2)

        reasons = self._liquidity_reasons(bars) + self._ibd_reasons(ratings)

        flags = []
        if not factors.has_earnings_history:
            flags.append(DATA_LIMITED)
        if not is_breakout_confirmed(bars):
            flags.append(NO_BREAKOUT)

        price = float(bars["close"].iloc[-1]) if bars is not None and len(bars) else 0.0
        meta = meta or SymbolMeta(symbol=symbol)

        return ScoreResult(
            symbol=symbol,
            score=score,
            qualified=not reasons,
            disqualification_reasons=tuple(reasons),
            factors=factors,
            ratings=ratings,
            criteria_met=criteria_met,
            flags=tuple(flags),
            price=price,
            name=meta.name,
            sector=meta.sector,
            industry=meta.industry,
            details=details,
        )

    def _score_current_earnings(self, f: FactorSet) -> Tuple[bool, bool, str]:
        """C - quarterly EPS growth vs the same quarter last year"""
        threshold = self.thresholds.c_yoy
        value = f.current_earnings_growth
        return value >= threshold, value >= 2 * threshold, f"Q/Q YoY: {value:+.0%}"

    def _score_annual_earnings(self, f: FactorSet) -> Tuple[bool, bool, str]:
        """A - 3 year EPS CAGR"""
        threshold = self.thresholds.a_cagr
        value = f.annual_earnings_cagr
        return value >= threshold, value >= 2 * threshold, f"3Y CAGR: {value:+.0%}"

    def _score_new_highs(self, f: FactorSet) -> Tuple[bool, bool, str]:
        value = f.new_high_ratio
        return value >= self.thresholds.n_pct52w, value >= NEW_HIGH_BONUS, f"{value:.0%} of 52w high"

    def _score_supply_demand(self, f: FactorSet) -> Tuple[bool, bool, str]:
        threshold = self.thresholds.s_vol_spike
        value = f.volume_spike_ratio
        return value >= threshold, value >= 2 * threshold, f"Vol {value:.1f}x avg"

    def _score_leader(self, f: FactorSet) -> Tuple[bool, bool, str]:
        value = f.relative_strength_percentile
        return value >= self.thresholds.rs_pct, value >= RS_BONUS, f"RS pct {value:.0f}"

    def _score_institutional(self, f: FactorSet) -> Tuple[bool, bool, str]:
        """
        I - institutional sponsorship.
        Any increase counts. Symbols with no earnings history are given the
        benefit of the doubt, since ownership data tends to be missing there too.
        """
        value = f.institutional_delta
        satisfied = value > 0 or not f.has_earnings_history
        if not f.has_earnings_history and value <= 0:
            return satisfied, False, "No earnings history"
        return satisfied, value >= INSTITUTIONAL_BONUS, f"Inst delta {value:+.1%}"

    def _liquidity_reasons(self, bars: pd.DataFrame) -> List[str]:
        liq = liquidity(bars)
        reasons = []
        if liq.dollar_volume_50d < self.config.liquidity.min_dollar_vol_50d:
            reasons.append(LOW_DOLLAR_VOLUME)
        if liq.avg_price < self.config.liquidity.min_price:
            reasons.append(LOW_PRICE)
        return reasons

    def _ibd_reasons(self, ratings: Optional[IBDRatings]) -> List[str]:
        filters = self.config.ibd_filters
        if not filters.enabled or ratings is None:
            return []

        reasons = []
        if ratings.rs_rating < filters.min_rs_rating:
            reasons.append(RS_RATING_BELOW_MIN)
        if ratings.up_down_ratio < filters.min_up_down_ratio:
            reasons.append(UP_DOWN_BELOW_MIN)
        if ratings.composite < filters.min_composite:
            reasons.append(COMPOSITE_BELOW_MIN)
        if not letter_at_least(ratings.ad_rating, filters.min_ad_rating):
            reasons.append(AD_RATING_BELOW_MIN)
        return reasons
