"""
Opportunity risk scoring.

A table of named factor functions, each looking at one aspect of a
MarketSnapshot and returning a bounded contribution. The contributions are
summed and clamped to [0, 100]; higher means riskier.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional

from core.models import MarketSnapshot

logger = logging.getLogger(__name__)

MAX_RISK_SCORE = 100.0

EXTREME_RISK_SCORE = 70
HIGH_RISK_SCORE = 50
MEDIUM_RISK_SCORE = 30
LOW_RISK_SCORE = 10

LOW_LIQUIDITY_USD = 1_000.0
THIN_LIQUIDITY_USD = 10_000.0
LOW_HOLDER_COUNT = 100
MIN_TURNOVER_RATIO = 0.05  # 24h volume / liquidity

UNVERIFIED_PENALTY = 30.0
LIQUIDITY_PENALTY = 25.0
HOLDER_PENALTY = 15.0
VOLUME_PENALTY = 10.0
ORGANIC_PENALTY = 20.0

RiskFactor = Callable[[MarketSnapshot], float]


def _verification(snapshot: MarketSnapshot) -> float:
    return 0.0 if snapshot.verified else UNVERIFIED_PENALTY


def _liquidity(snapshot: MarketSnapshot) -> float:
    if snapshot.liquidity_usd < LOW_LIQUIDITY_USD:
        return LIQUIDITY_PENALTY
    if snapshot.liquidity_usd < THIN_LIQUIDITY_USD:
        return LIQUIDITY_PENALTY / 2
    return 0.0


def _holders(snapshot: MarketSnapshot) -> float:
    return HOLDER_PENALTY if snapshot.holder_count < LOW_HOLDER_COUNT else 0.0


def _volume(snapshot: MarketSnapshot) -> float:
    if snapshot.liquidity_usd <= 0:
        return VOLUME_PENALTY
    turnover = snapshot.volume_24h / snapshot.liquidity_usd
    return VOLUME_PENALTY if turnover < MIN_TURNOVER_RATIO else 0.0


def _organic(snapshot: MarketSnapshot) -> float:
    # organic_score is 0-100; low organic activity means wash trading risk
    organic = min(max(snapshot.organic_score, 0.0), 100.0)
    return ORGANIC_PENALTY * (1.0 - organic / 100.0)


RISK_FACTORS: Dict[str, RiskFactor] = {
    "verification": _verification,
    "liquidity": _liquidity,
    "holders": _holders,
    "volume": _volume,
    "organic": _organic,
}

FACTOR_CAPS: Dict[str, float] = {
    "verification": UNVERIFIED_PENALTY,
    "liquidity": LIQUIDITY_PENALTY,
    "holders": HOLDER_PENALTY,
    "volume": VOLUME_PENALTY,
    "organic": ORGANIC_PENALTY,
}


@dataclass(frozen=True)
class RiskAssessment:
    token_address: str
    score: float
    level: str
    factors: Dict[str, float] = field(default_factory=dict)

    @property
    def is_extreme(self) -> bool:
        return self.level == "extreme"


def risk_level(score: float) -> str:
    if score >= EXTREME_RISK_SCORE:
        return "extreme"
    if score >= HIGH_RISK_SCORE:
        return "high"
    if score >= MEDIUM_RISK_SCORE:
        return "medium"
    if score >= LOW_RISK_SCORE:
        return "low"
    return "very_low"


def score_snapshot(
    snapshot: MarketSnapshot,
    factors: Optional[Mapping[str, RiskFactor]] = None,
    caps: Optional[Mapping[str, float]] = None,
) -> RiskAssessment:
    """Run every factor, bound each contribution, sum and clamp."""
    factors = RISK_FACTORS if factors is None else factors
    caps = FACTOR_CAPS if caps is None else caps

    contributions: Dict[str, float] = {}
    for name, factor in factors.items():
        value = max(0.0, factor(snapshot))
        cap = caps.get(name)
        if cap is not None:
            value = min(value, cap)
        contributions[name] = value

    score = min(max(sum(contributions.values()), 0.0), MAX_RISK_SCORE)
    level = risk_level(score)
    logger.debug(f"Risk {snapshot.token_address[:8]}: {score:.1f} ({level}) {contributions}")
    return RiskAssessment(
        token_address=snapshot.token_address,
        score=score,
        level=level,
        factors=contributions,
    )
