"""
Multi-source signal aggregator for BSC Alpha Engine.

Turns raw token snapshots from several independent market-data sources into
one ranked list of scored candidates per scan cycle.

Pipeline (each stage feeds the next):
    1. Poll   - sources whose own refresh interval elapsed are polled
                concurrently, each under a hard timeout. A failing source is
                recorded and skipped; the others keep their results.
    2. Merge  - results from every healthy source are merged. When every
                candidate-producing source is down, the last good set from
                the fallback cache is used instead (never invented data).
    3. Dedupe - one quote per asset id; the most complete record wins, ties
                go to the higher-priority source.
    4. Filter - incomplete quotes (no price, market cap or liquidity) and
                quotes under the market-cap / liquidity floors are dropped.
    5. Score  - ConfidenceScorer bucket sum, clamped to [0, 100].
    6. Rank   - confidence descending, then 24h volume descending.

Usage:
    aggregator = SignalAggregator(sources, cache=build_candidate_cache())
    candidates = await aggregator.scan()
"""

from __future__ import annotations

import asyncio
import time
from decimal import Decimal
from typing import TYPE_CHECKING

from bot_logging.logger_manager import log_trace, setup_module_logger
from config.loader import get_config
from core.scoring import ConfidenceScorer
from shared.types import Candidate, SourceHealth, TokenQuote

if TYPE_CHECKING:
    from core.market_data import CandidateCache, MarketDataSource


class SignalAggregator:
    """
    Concurrent poller, deduplicator and ranker over market-data sources.

    Keeps per-source health so the engine can report a degraded state when
    it is running on partial data.
    """

    def __init__(
        self,
        sources: list[MarketDataSource],
        scorer: ConfidenceScorer | None = None,
        cache: CandidateCache | None = None,
    ) -> None:
        self._sources = sorted(sources, key=lambda s: s.priority)
        self._scorer = scorer or ConfidenceScorer()
        self._cache = cache

        cfg = get_config()
        signals_cfg = cfg.get_signals_config()
        timing_cfg = cfg.get_timing_config()

        floors = signals_cfg.get("floors", {})
        self._min_market_cap = Decimal(str(floors.get("min_market_cap", "0")))
        self._min_liquidity = Decimal(str(floors.get("min_liquidity", "0")))
        self._max_candidates: int = int(signals_cfg.get("max_candidates", 10))

        self._fetch_timeout: float = timing_cfg.get("sources", {}).get(
            "fetch_timeout_seconds", 10
        )
        self._price_timeout: float = timing_cfg.get("monitor", {}).get(
            "price_timeout_seconds", 8
        )

        # Per-source state
        self._last_poll: dict[str, float] = {}
        self._last_results: dict[str, list[TokenQuote]] = {}
        self._health: dict[str, SourceHealth] = {
            s.name: SourceHealth(s.name, True, None, 0) for s in self._sources
        }

        self._scan_count = 0
        self._last_scan_at: float | None = None
        self._used_fallback = False

        self._logger = setup_module_logger(
            "signal_aggregator", "signal_aggregator.log", module_folder="Signal_Aggregator_Logs"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def last_scan_at(self) -> float | None:
        return self._last_scan_at

    @property
    def used_fallback(self) -> bool:
        """Whether the most recent scan ran on the fallback cache."""
        return self._used_fallback

    def source_health(self) -> list[SourceHealth]:
        return [self._health[s.name] for s in self._sources]

    def sources_down(self) -> list[str]:
        return [h.name for h in self.source_health() if not h.healthy]

    async def scan(self) -> list[Candidate]:
        """Run one scan cycle and return ranked candidates."""
        self._scan_count += 1
        await self._poll_due_sources()

        producers = [s for s in self._sources if s.provides_candidates]
        live = [s for s in producers if self._health[s.name].healthy]

        quotes: list[TokenQuote] = []
        if live:
            self._used_fallback = False
            for source in live:
                quotes.extend(self._last_results.get(source.name, []))
            merged = self.dedupe(quotes)
            if self._cache is not None:
                self._cache.store(merged)
        else:
            merged = await self._fallback_quotes()

        candidates = self.rank(merged)
        self._last_scan_at = time.time()

        self._logger.info(
            "Scan #%d: %d quotes -> %d candidates (sources down: %s%s)",
            self._scan_count,
            len(quotes),
            len(candidates),
            ", ".join(self.sources_down()) or "none",
            ", using fallback cache" if self._used_fallback else "",
        )
        log_trace(
            "candidates_ranked",
            f"scan-{self._scan_count}",
            "signal_aggregator",
            [
                {"symbol": c.symbol, "asset_id": c.asset_id, "confidence": str(c.confidence)}
                for c in candidates
            ],
            next_stage="sizing",
        )
        return candidates

    def rank(self, quotes: list[TokenQuote]) -> list[Candidate]:
        """Filter, score and order deduplicated quotes."""
        candidates: list[Candidate] = []
        for quote in quotes:
            ok, reason = self._is_eligible(quote)
            if not ok:
                self._logger.debug("Skipping %s (%s): %s", quote.symbol, quote.source, reason)
                continue
            confidence, breakdown = self._scorer.score(quote)
            candidates.append(
                Candidate(quote=quote, confidence=confidence, score_breakdown=breakdown)
            )

        candidates.sort(key=lambda c: (c.confidence, c.volume_24h), reverse=True)
        return candidates[: self._max_candidates]

    def dedupe(self, quotes: list[TokenQuote]) -> list[TokenQuote]:
        """One quote per asset id: most complete first, then source priority."""
        priority = {s.name: s.priority for s in self._sources}
        chosen: dict[str, TokenQuote] = {}
        for quote in quotes:
            key = quote.asset_id.lower()
            current = chosen.get(key)
            if current is None:
                chosen[key] = quote
                continue
            if quote.completeness > current.completeness:
                chosen[key] = quote
            elif quote.completeness == current.completeness and priority.get(
                quote.source, 1000
            ) < priority.get(current.source, 1000):
                chosen[key] = quote
        return list(chosen.values())

    async def fetch_quote(self, asset_id: str) -> TokenQuote | None:
        """Live quote for one asset from the first source that has it."""
        for source in self._sources:
            try:
                quote = await asyncio.wait_for(
                    source.get_quote(asset_id), timeout=self._price_timeout
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.warning(
                    "Quote for %s from %s failed: %s", asset_id, source.name, exc
                )
                continue
            if quote is not None and quote.price is not None and quote.price > 0:
                return quote
        return None

    async def close(self) -> None:
        for source in self._sources:
            await source.close()

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _poll_due_sources(self) -> None:
        now = time.monotonic()
        due = [
            s
            for s in self._sources
            if s.name not in self._last_poll or now - self._last_poll[s.name] >= s.refresh_interval
        ]
        if not due:
            return

        results = await asyncio.gather(
            *(self._poll(s) for s in due),
            return_exceptions=True,
        )

        for source, result in zip(due, results, strict=True):
            self._last_poll[source.name] = time.monotonic()
            previous = self._health[source.name]
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                error = str(result) or type(result).__name__
                self._health[source.name] = SourceHealth(
                    name=source.name,
                    healthy=False,
                    last_success=previous.last_success,
                    consecutive_failures=previous.consecutive_failures + 1,
                    last_error=error,
                )
                self._last_results.pop(source.name, None)
                self._logger.warning(
                    "Source %s failed (%d in a row): %s",
                    source.name,
                    previous.consecutive_failures + 1,
                    error,
                )
                continue

            self._last_results[source.name] = result
            self._health[source.name] = SourceHealth(
                name=source.name,
                healthy=True,
                last_success=time.time(),
                consecutive_failures=0,
            )

    async def _poll(self, source: MarketDataSource) -> list[TokenQuote]:
        return await asyncio.wait_for(source.get_candidates(), timeout=self._fetch_timeout)

    async def _fallback_quotes(self) -> list[TokenQuote]:
        self._used_fallback = False
        if self._cache is None:
            self._logger.error("All candidate sources down and no fallback cache configured")
            return []
        try:
            quotes = await self._cache.get_candidates()
        except Exception as exc:
            self._logger.error("All candidate sources down; fallback unavailable: %s", exc)
            return []
        self._used_fallback = True
        self._logger.warning("All candidate sources down; using %d cached quotes", len(quotes))
        return quotes

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def _is_eligible(self, quote: TokenQuote) -> tuple[bool, str]:
        if quote.price is None or quote.price <= 0:
            return False, "missing price"
        if quote.market_cap is None or quote.liquidity is None:
            return False, "missing market cap or liquidity"
        if quote.market_cap < self._min_market_cap:
            return False, f"market cap {quote.market_cap} below floor {self._min_market_cap}"
        if quote.liquidity < self._min_liquidity:
            return False, f"liquidity {quote.liquidity} below floor {self._min_liquidity}"
        if not quote.symbol:
            return False, "missing symbol"
        return True, ""

