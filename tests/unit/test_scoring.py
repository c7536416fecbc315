"""
Unit tests for core/scoring.py.

Tests verify band matching, bucket defaults, missing metrics, caps,
weights, and the clamped total against the shipped bucket table.
"""

from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path

import pytest

from core.scoring import ConfidenceScorer, ScoreBand, metric_value, parse_bucket
from tests.conftest import make_quote

_SIGNALS_JSON = Path(__file__).resolve().parents[2] / "config" / "signals.json"


@pytest.fixture
def scorer():
    raw = json.loads(_SIGNALS_JSON.read_text())
    return ConfidenceScorer([parse_bucket(b) for b in raw["scoring"]["buckets"]])


# ---------------------------------------------------------------------------
# Bands and buckets
# ---------------------------------------------------------------------------


class TestBands:

    def test_band_bounds_are_exclusive(self):
        band = ScoreBand(min=Decimal("5"), max=Decimal("10"), points=Decimal("1"))
        assert band.contains(Decimal("5")) is False
        assert band.contains(Decimal("7")) is True
        assert band.contains(Decimal("10")) is False

    def test_open_ended_band(self):
        band = ScoreBand(min=Decimal("0"), max=None, points=Decimal("1"))
        assert band.contains(Decimal("1e12")) is True

    def test_bucket_applies_cap_and_weight(self):
        bucket = parse_bucket(
            {
                "name": "b",
                "metric": "price_change_24h",
                "cap": "10",
                "weight": "0.5",
                "bands": [{"min": "0", "points": "30"}],
            }
        )
        assert bucket.points_for(Decimal("1")) == Decimal("5.0")

    def test_unmatched_value_gets_default(self):
        bucket = parse_bucket(
            {"name": "b", "metric": "holders", "default": "3", "bands": [{"min": "100", "points": "9"}]}
        )
        assert bucket.points_for(Decimal("10")) == Decimal("3")

    def test_missing_metric_scores_zero(self):
        bucket = parse_bucket({"name": "b", "metric": "holders", "default": "3"})
        assert bucket.points_for(None) == Decimal("0")


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class TestMetricValue:

    def test_ratio_metrics(self):
        quote = make_quote(volume="600000", market_cap="5000000", liquidity="800000")
        assert metric_value(quote, "volume_to_market_cap") == Decimal("0.12")
        assert metric_value(quote, "liquidity_to_market_cap") == Decimal("0.16")

    def test_ratio_with_zero_market_cap_is_missing(self):
        quote = make_quote(market_cap="0")
        assert metric_value(quote, "volume_to_market_cap") is None

    def test_unknown_metric_raises(self):
        with pytest.raises(KeyError):
            metric_value(make_quote(), "sentiment")


# ---------------------------------------------------------------------------
# Full score
# ---------------------------------------------------------------------------


class TestScore:

    def test_shipped_table(self, scorer):
        quote = make_quote(
            change="12", volume="600000", market_cap="5000000", liquidity="800000", holders=None
        )
        confidence, breakdown = scorer.score(quote)
        assert breakdown == {
            "momentum": Decimal("20"),
            "volume_ratio": Decimal("25"),
            "liquidity_ratio": Decimal("20"),
            "holders": Decimal("0"),
            "market_cap": Decimal("5"),
        }
        assert confidence == Decimal("70")

    def test_deterministic(self, scorer):
        quote = make_quote(change="3", holders=60000)
        assert scorer.score(quote) == scorer.score(quote)

    def test_total_clamped_to_100(self):
        first, second = (
            parse_bucket(
                {"name": name, "metric": "price_change_24h", "bands": [{"min": "0", "points": "80"}]}
            )
            for name in ("a", "b")
        )
        confidence, _ = ConfidenceScorer([first, second]).score(make_quote(change="1"))
        assert confidence == Decimal("100")
