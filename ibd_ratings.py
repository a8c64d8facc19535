"""
IBD-style auxiliary ratings
RS rating, up/down volume ratio, accumulation/distribution letter,
SMR letter and a weighted composite.

These feed the optional IBD gates in the scorer and are reported alongside
every score. The calculator is stateless; any internal failure yields the
neutral bundle.
"""

import logging
import math
from dataclasses import dataclass, asdict
from typing import Dict, List, Mapping, Optional

import pandas as pd

from metrics import TRADING_DAYS_PER_YEAR, trailing_return

logger = logging.getLogger(__name__)

LETTER_GRADES = ("A", "B", "C", "D", "E")
LETTER_VALUES = {"A": 90, "B": 75, "C": 50, "D": 25, "E": 10}

COMPOSITE_WEIGHTS = {
    "rs": 0.25,
    "ad": 0.20,
    "volume": 0.15,
    "smr": 0.20,
    "group": 0.20,
}

UP_DOWN_WINDOW = 50
AD_WINDOW = 65
AD_VOLUME_AVERAGE = 50
SMR_HURDLE = 0.15


@dataclass(frozen=True)
class Fundamentals:
    """Inputs for the SMR letter (fractions, e.g. 0.18 = 18%)"""
    revenue_growth_3y: Optional[float] = None
    operating_margin: Optional[float] = None
    roe: Optional[float] = None


@dataclass(frozen=True)
class SMRBenchmarks:
    """Peer samples used to percentile-rank the SMR inputs"""
    revenue_growth: List[float]
    operating_margin: List[float]
    roe: List[float]


@dataclass(frozen=True)
class IBDRatings:
    rs_rating: int = 50
    up_down_ratio: float = 1.0
    ad_rating: str = "C"
    smr_rating: str = "C"
    industry_group_rank: Optional[int] = None
    composite: int = 50

    def to_dict(self) -> Dict:
        return asdict(self)


NEUTRAL_RATINGS = IBDRatings(rs_rating=50, up_down_ratio=1.0, ad_rating="C",
                             smr_rating="C", industry_group_rank=50, composite=50)


def _clamp_rating(value: float) -> int:
    # round half up, keep within the 1-99 rating scale
    return int(max(1, min(99, math.floor(value + 0.5))))


def letter_at_least(letter: str, minimum: str) -> bool:
    """A > B > C > D > E; unknown letters never pass"""
    if letter not in LETTER_GRADES or minimum not in LETTER_GRADES:
        return False
    return LETTER_GRADES.index(letter) <= LETTER_GRADES.index(minimum)


def rank_industry_groups(returns: Mapping[str, float],
                         industry_by_symbol: Mapping[str, str]) -> Dict[str, int]:
    """
    Rank industries by the mean one-year return of their members.
    Returns {industry: rank} on a 1 (strongest) to 99 (weakest) scale.
    """
    members: Dict[str, List[float]] = {}
    for symbol, value in returns.items():
        industry = industry_by_symbol.get(symbol)
        if not industry or industry == "Unknown":
            continue
        members.setdefault(industry, []).append(value)

    if not members:
        return {}

    ordered = sorted(members, key=lambda ind: sum(members[ind]) / len(members[ind]), reverse=True)
    span = max(len(ordered) - 1, 1)
    return {industry: 1 + round(98 * position / span) for position, industry in enumerate(ordered)}


class IBDRatingsCalculator:
    """Calculates the auxiliary ratings bundle for one symbol"""

    def calculate_rs_rating(self, symbol_return: float, peer_returns: List[float]) -> int:
        """Share of peer returns strictly beaten, on 1-99. The peers exclude the symbol itself."""
        if not peer_returns:
            return 50

        beaten = sum(1 for r in peer_returns if symbol_return > r)
        return _clamp_rating(beaten / len(peer_returns) * 100)

    def calculate_up_down_ratio(self, bars: pd.DataFrame) -> float:
        """Volume on up days / volume on down days over the trailing 50 bars"""
        if bars is None or len(bars) < UP_DOWN_WINDOW + 1:
            return 0.0

        window = bars.tail(UP_DOWN_WINDOW)
        change = window["close"].diff().iloc[1:]
        volume = window["volume"].iloc[1:]

        up_volume = float(volume[change > 0].sum())
        down_volume = float(volume[change < 0].sum())

        if down_volume <= 0:
            return 0.0
        return up_volume / down_volume

    def calculate_ad_rating(self, bars: pd.DataFrame) -> str:
        """
        Accumulation/distribution letter.
        +1 for each above-average-volume up day and -1 for each
        above-average-volume down day over the trailing 65 bars.
        """
        if bars is None or len(bars) < 2:
            return "C"

        avg_volume = float(bars["volume"].tail(AD_VOLUME_AVERAGE).mean())
        window = bars.tail(AD_WINDOW)
        change = window["close"].diff().iloc[1:]
        heavy = window["volume"].iloc[1:] > avg_volume

        ad_score = int((heavy & (change > 0)).sum()) - int((heavy & (change < 0)).sum())

        if ad_score >= 10:
            return "A"
        if ad_score >= 5:
            return "B"
        if ad_score >= -5:
            return "C"
        if ad_score >= -10:
            return "D"
        return "E"

    def calculate_smr_rating(self, fundamentals: Optional[Fundamentals],
                             benchmarks: Optional[SMRBenchmarks] = None) -> str:
        """Sales growth, margins and return on equity"""
        if fundamentals is None:
            return "C"

        values = (fundamentals.revenue_growth_3y, fundamentals.operating_margin, fundamentals.roe)

        if benchmarks is None:
            passed = sum(1 for v in values if v is not None and v > SMR_HURDLE)
            return ("E", "D", "C", "B")[passed]

        samples = (benchmarks.revenue_growth, benchmarks.operating_margin, benchmarks.roe)
        percentiles = []
        for value, sample in zip(values, samples):
            if value is None or not sample:
                continue
            percentiles.append(sum(1 for s in sample if s <= value) / len(sample) * 100)

        if not percentiles:
            return "C"

        avg = sum(percentiles) / len(percentiles)
        if avg >= 80:
            return "A"
        if avg >= 60:
            return "B"
        if avg >= 40:
            return "C"
        if avg >= 20:
            return "D"
        return "E"

    def calculate_composite(self, rs_rating: Optional[int], ad_rating: Optional[str],
                            up_down_ratio: Optional[float], smr_rating: Optional[str],
                            industry_group_rank: Optional[int]) -> int:
        """Weighted blend, renormalized over the inputs that are present"""
        components = []

        if rs_rating is not None:
            components.append((rs_rating, COMPOSITE_WEIGHTS["rs"]))
        if ad_rating in LETTER_VALUES:
            components.append((LETTER_VALUES[ad_rating], COMPOSITE_WEIGHTS["ad"]))
        if up_down_ratio is not None:
            components.append((max(1.0, min(99.0, up_down_ratio * 30)), COMPOSITE_WEIGHTS["volume"]))
        if smr_rating in LETTER_VALUES:
            components.append((LETTER_VALUES[smr_rating], COMPOSITE_WEIGHTS["smr"]))
        if industry_group_rank is not None:
            components.append((max(1, min(99, 100 - industry_group_rank)), COMPOSITE_WEIGHTS["group"]))

        total_weight = sum(w for _, w in components)
        if total_weight == 0:
            return 50

        return _clamp_rating(sum(v * w for v, w in components) / total_weight)

    def calculate_all(self, bars: pd.DataFrame, peer_returns: List[float],
                      fundamentals: Optional[Fundamentals] = None,
                      industry_group_rank: Optional[int] = None,
                      benchmarks: Optional[SMRBenchmarks] = None) -> IBDRatings:
        try:
            if bars is not None and len(bars) >= TRADING_DAYS_PER_YEAR:
                rs_rating = self.calculate_rs_rating(trailing_return(bars), peer_returns)
            else:
                rs_rating = 50

            up_down_ratio = self.calculate_up_down_ratio(bars)
            ad_rating = self.calculate_ad_rating(bars)
            smr_rating = self.calculate_smr_rating(fundamentals, benchmarks)
            composite = self.calculate_composite(rs_rating, ad_rating, up_down_ratio,
                                                 smr_rating, industry_group_rank)

            return IBDRatings(
                rs_rating=rs_rating,
                up_down_ratio=round(up_down_ratio, 4),
                ad_rating=ad_rating,
                smr_rating=smr_rating,
                industry_group_rank=industry_group_rank,
                composite=composite,
            )
        except Exception as e:
            logger.error(f"IBD rating calculation failed: {e}")
            return NEUTRAL_RATINGS
