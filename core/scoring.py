"""
Confidence scoring for token candidates.

Weighted sum of configurable point buckets. Each bucket reads one metric
from a TokenQuote, walks its bands top-down and awards the points of the
first band the value falls in (strictly above ``min``, strictly below
``max`` when given). Values matching no band get the bucket default; a
metric the source did not report contributes nothing. Points are capped
per bucket, weighted, and the total is clamped to [0, 100].

Default buckets (config/signals.json):
    momentum          24h price change          up to 25
    volume_ratio      volume / market cap       up to 25
    liquidity_ratio   liquidity / market cap    up to 20
    holders           holder count              up to 15
    market_cap        market-cap sweet spot     up to 15

Usage:
    from core.scoring import ConfidenceScorer

    scorer = ConfidenceScorer()
    confidence, breakdown = scorer.score(quote)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from config.loader import get_config
from shared.types import TokenQuote

_ZERO = Decimal("0")
_MAX_SCORE = Decimal("100")


@dataclass(frozen=True)
class ScoreBand:
    min: Decimal
    max: Decimal | None
    points: Decimal

    def contains(self, value: Decimal) -> bool:
        if value <= self.min:
            return False
        return self.max is None or value < self.max


@dataclass(frozen=True)
class ScoreBucket:
    name: str
    metric: str
    bands: tuple[ScoreBand, ...]
    default: Decimal
    cap: Decimal
    weight: Decimal

    def points_for(self, value: Decimal | None) -> Decimal:
        if value is None:
            return _ZERO
        points = self.default
        for band in self.bands:
            if band.contains(value):
                points = band.points
                break
        return min(points, self.cap) * self.weight


def _ratio(numerator: Decimal | None, denominator: Decimal | None) -> Decimal | None:
    if numerator is None or denominator is None or denominator <= 0:
        return None
    return numerator / denominator


def metric_value(quote: TokenQuote, metric: str) -> Decimal | None:
    """Resolve a bucket metric name against a quote. Unknown metrics raise KeyError."""
    if metric == "price_change_24h":
        return quote.price_change_24h
    if metric == "volume_to_market_cap":
        return _ratio(quote.volume_24h, quote.market_cap)
    if metric == "liquidity_to_market_cap":
        return _ratio(quote.liquidity, quote.market_cap)
    if metric == "holders":
        return Decimal(quote.holders) if quote.holders is not None else None
    if metric == "market_cap":
        return quote.market_cap
    if metric == "volume_24h":
        return quote.volume_24h
    if metric == "liquidity":
        return quote.liquidity
    raise KeyError(f"Unknown scoring metric: {metric}")


def parse_bucket(raw: dict[str, Any]) -> ScoreBucket:
    bands = tuple(
        ScoreBand(
            min=Decimal(str(b["min"])),
            max=Decimal(str(b["max"])) if b.get("max") is not None else None,
            points=Decimal(str(b["points"])),
        )
        for b in raw.get("bands", [])
    )
    return ScoreBucket(
        name=str(raw["name"]),
        metric=str(raw["metric"]),
        bands=bands,
        default=Decimal(str(raw.get("default", "0"))),
        cap=Decimal(str(raw.get("cap", "100"))),
        weight=Decimal(str(raw.get("weight", "1"))),
    )


class ConfidenceScorer:
    """Deterministic bucket scorer; identical inputs always give identical scores."""

    def __init__(self, buckets: list[ScoreBucket] | None = None) -> None:
        if buckets is None:
            scoring_cfg = get_config().get_signals_config().get("scoring", {})
            buckets = [parse_bucket(b) for b in scoring_cfg.get("buckets", [])]
        self._buckets = buckets

    @property
    def buckets(self) -> list[ScoreBucket]:
        return list(self._buckets)

    def score(self, quote: TokenQuote) -> tuple[Decimal, dict[str, Decimal]]:
        """Return (confidence in [0, 100], per-bucket points)."""
        breakdown: dict[str, Decimal] = {}
        for bucket in self._buckets:
            breakdown[bucket.name] = bucket.points_for(metric_value(quote, bucket.metric))
        total = sum(breakdown.values(), _ZERO)
        return max(_ZERO, min(_MAX_SCORE, total)), breakdown
