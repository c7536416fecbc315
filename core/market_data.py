"""
Market-data sources for BSC Alpha Engine.

Every source implements one interface (``MarketDataSource``) so the signal
aggregator and the position monitor can poll them interchangeably:

    get_candidates()   -> list[TokenQuote]   tokens worth scoring this cycle
    get_quote(asset)   -> TokenQuote | None  fresh snapshot for one token
    get_price(asset)   -> Decimal | None     convenience over get_quote

Implementations:
    - DexScreenerSource: boosted + watchlist tokens, best-liquidity pair per token
    - GeckoTerminalSource: trending pools on the network
    - CandidateCache: last good scan, persisted to JSON (fallback only; it
      never answers price lookups, cached prices are not live data)
    - ChainlinkOracleSource (core/oracle_source.py): on-chain prices only

HTTP sources never raise from ``_get_json``; failures come back as None.
``get_candidates`` turns an unusable response into ``MarketDataError`` so the
aggregator can tell "source down" apart from "nothing interesting".

Usage:
    session = aiohttp.ClientSession()
    sources = build_sources(session, w3)
    quotes = await sources[0].get_candidates()
"""

from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiohttp
from web3 import Web3

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.constants import DEXSCREENER_BASE, GECKOTERMINAL_BASE
from shared.serialization_utils import DecimalEncoder, quote_from_dict
from shared.types import TokenQuote

if TYPE_CHECKING:
    from web3 import AsyncWeb3

# ---------------------------------------------------------------------------
# TTL constants (seconds)
# ---------------------------------------------------------------------------

_TTL_QUOTE = 5

# DexScreener accepts up to 30 comma-separated addresses per tokens call
_DEXSCREENER_BATCH = 30


class MarketDataError(Exception):
    """Raised when a source cannot produce a candidate list this cycle."""


# ---------------------------------------------------------------------------
# Cache entry
# ---------------------------------------------------------------------------


class _CacheEntry:
    """In-memory cache entry with TTL."""

    __slots__ = ("data", "expires_at")

    def __init__(self, data: Any, ttl_seconds: float) -> None:
        self.data = data
        self.expires_at = time.monotonic() + ttl_seconds

    @property
    def is_valid(self) -> bool:
        return time.monotonic() < self.expires_at


def _to_decimal(value: Any) -> Decimal | None:
    """Parse an API number; None, empty or garbage stays None."""
    if value is None or value == "":
        return None
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def _checksum(address: str) -> str | None:
    try:
        return Web3.to_checksum_address(address)
    except (ValueError, TypeError):
        return None


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class MarketDataSource(ABC):
    """Common interface for every market-data provider."""

    provides_candidates = True

    def __init__(self, name: str, priority: int = 100, refresh_interval: float = 30) -> None:
        self.name = name
        self.priority = priority
        self.refresh_interval = refresh_interval

    @abstractmethod
    async def get_candidates(self) -> list[TokenQuote]:
        """Tokens surfaced by this source. Raises MarketDataError when unavailable."""

    @abstractmethod
    async def get_quote(self, asset_id: str) -> TokenQuote | None:
        """Current snapshot for one token, or None."""

    async def get_price(self, asset_id: str) -> Decimal | None:
        quote = await self.get_quote(asset_id)
        if quote is None:
            return None
        return quote.price

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# HTTP base
# ---------------------------------------------------------------------------


class _HttpSource(MarketDataSource):
    """Shared session handling, TTL cache and per-minute rate limiting."""

    def __init__(
        self,
        name: str,
        base_url: str,
        session: aiohttp.ClientSession | None = None,
        priority: int = 100,
        refresh_interval: float = 30,
        requests_per_minute: int = 60,
        timeout_seconds: float = 10,
    ) -> None:
        super().__init__(name, priority, refresh_interval)
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = timeout_seconds
        self._max_rpm = requests_per_minute

        self._cache: dict[str, _CacheEntry] = {}
        self._requests_this_minute: int = 0
        self._minute_start: float = time.monotonic()

        self._logger = setup_module_logger(
            "market_data", "market_data.log", module_folder="Market_Data_Logs"
        )

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def _get_cached(self, key: str) -> Any | None:
        entry = self._cache.get(key)
        if entry and entry.is_valid:
            return entry.data
        return None

    def _set_cached(self, key: str, data: Any, ttl: float) -> None:
        self._cache[key] = _CacheEntry(data, ttl)

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    def _check_rate_limit(self) -> bool:
        now = time.monotonic()
        if now - self._minute_start > 60:
            self._requests_this_minute = 0
            self._minute_start = now

        if self._requests_this_minute >= self._max_rpm:
            self._logger.warning("%s rate limit reached (%d/min)", self.name, self._max_rpm)
            return False
        self._requests_this_minute += 1
        return True

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _get_json(self, url: str, params: dict[str, str] | None = None) -> Any:
        """Fetch JSON from URL with error handling."""
        if not self._check_rate_limit():
            return None
        session = await self._get_session()
        try:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            async with session.get(url, params=params, timeout=timeout) as resp:
                if resp.status == 429:
                    self._logger.warning("Rate limited by %s", url)
                    return None
                if resp.status != 200:
                    self._logger.warning(
                        "HTTP %d from %s: %s",
                        resp.status,
                        url,
                        await resp.text(),
                    )
                    return None
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            self._logger.warning("Request failed for %s: %s", url, e)
            return None


# ---------------------------------------------------------------------------
# DexScreener
# ---------------------------------------------------------------------------


class DexScreenerSource(_HttpSource):
    """
    Aggregated DEX pair data from DexScreener.

    Candidates are the chain's top boosted tokens plus a configured watchlist.
    For each token the pair with the deepest USD liquidity wins, since thin
    pairs report misleading prices.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        source_cfg: dict[str, Any] | None = None,
    ) -> None:
        cfg = source_cfg or {}
        super().__init__(
            name=cfg.get("name", "dexscreener"),
            base_url=cfg.get("base_url", DEXSCREENER_BASE),
            session=session,
            priority=int(cfg.get("priority", 1)),
            refresh_interval=float(cfg.get("refresh_interval_seconds", 30)),
            requests_per_minute=int(cfg.get("requests_per_minute", 60)),
            timeout_seconds=float(cfg.get("timeout_seconds", 10)),
        )
        self._chain: str = cfg.get("chain", "bsc")
        self._use_boosted: bool = cfg.get("use_boosted", True)
        self._max_tokens: int = int(cfg.get("max_tokens", _DEXSCREENER_BATCH))
        self._watchlist: list[str] = [
            a for a in (_checksum(w) for w in cfg.get("watchlist", [])) if a is not None
        ]

    async def get_candidates(self) -> list[TokenQuote]:
        addresses = list(self._watchlist)
        if self._use_boosted:
            boosted = await self._get_json(f"{self._base_url}/token-boosts/top/v1")
            if isinstance(boosted, list):
                for entry in boosted:
                    if entry.get("chainId") != self._chain:
                        continue
                    address = _checksum(entry.get("tokenAddress", ""))
                    if address is not None and address not in addresses:
                        addresses.append(address)
            elif not addresses:
                raise MarketDataError(f"{self.name}: boosted token list unavailable")

        addresses = addresses[: self._max_tokens]
        if not addresses:
            return []

        quotes: list[TokenQuote] = []
        any_batch_ok = False
        for start in range(0, len(addresses), _DEXSCREENER_BATCH):
            batch = addresses[start : start + _DEXSCREENER_BATCH]
            pairs = await self._get_json(
                f"{self._base_url}/tokens/v1/{self._chain}/{','.join(batch)}"
            )
            if not isinstance(pairs, list):
                continue
            any_batch_ok = True
            quotes.extend(self._best_pairs(pairs, batch))

        if not any_batch_ok:
            raise MarketDataError(f"{self.name}: pair data unavailable")

        self._logger.info("%s: %d candidates from %d tokens", self.name, len(quotes), len(addresses))
        return quotes

    async def get_quote(self, asset_id: str) -> TokenQuote | None:
        address = _checksum(asset_id)
        if address is None:
            return None
        cache_key = f"quote:{address}"
        cached = self._get_cached(cache_key)
        if cached is not None:
            return cached

        pairs = await self._get_json(f"{self._base_url}/tokens/v1/{self._chain}/{address}")
        if not isinstance(pairs, list):
            return None
        best = self._best_pairs(pairs, [address])
        if not best:
            return None
        self._set_cached(cache_key, best[0], _TTL_QUOTE)
        return best[0]

    def _best_pairs(self, pairs: list[dict[str, Any]], wanted: list[str]) -> list[TokenQuote]:
        """Pick the deepest pair per base token and normalize it."""
        wanted_lower = {a.lower() for a in wanted}
        best: dict[str, tuple[Decimal, dict[str, Any]]] = {}
        for pair in pairs:
            base = pair.get("baseToken") or {}
            address = str(base.get("address", "")).lower()
            if address not in wanted_lower:
                continue
            liquidity = _to_decimal((pair.get("liquidity") or {}).get("usd")) or Decimal("0")
            if address not in best or liquidity > best[address][0]:
                best[address] = (liquidity, pair)

        quotes = []
        for _, pair in best.values():
            quote = self._normalize(pair)
            if quote is not None:
                quotes.append(quote)
        return quotes

    def _normalize(self, pair: dict[str, Any]) -> TokenQuote | None:
        base = pair.get("baseToken") or {}
        address = _checksum(base.get("address", ""))
        if address is None:
            return None
        market_cap = _to_decimal(pair.get("marketCap"))
        if market_cap is None:
            market_cap = _to_decimal(pair.get("fdv"))
        return TokenQuote(
            symbol=str(base.get("symbol", "")).upper(),
            asset_id=address,
            source=self.name,
            price=_to_decimal(pair.get("priceUsd")),
            volume_24h=_to_decimal((pair.get("volume") or {}).get("h24")),
            market_cap=market_cap,
            price_change_24h=_to_decimal((pair.get("priceChange") or {}).get("h24")),
            holders=None,
            liquidity=_to_decimal((pair.get("liquidity") or {}).get("usd")),
            name=str(base.get("name", "")),
        )


# ---------------------------------------------------------------------------
# GeckoTerminal
# ---------------------------------------------------------------------------


class GeckoTerminalSource(_HttpSource):
    """Trending pools and token snapshots from the GeckoTerminal public API."""

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        source_cfg: dict[str, Any] | None = None,
    ) -> None:
        cfg = source_cfg or {}
        super().__init__(
            name=cfg.get("name", "geckoterminal"),
            base_url=cfg.get("base_url", GECKOTERMINAL_BASE),
            session=session,
            priority=int(cfg.get("priority", 2)),
            refresh_interval=float(cfg.get("refresh_interval_seconds", 60)),
            requests_per_minute=int(cfg.get("requests_per_minute", 30)),
            timeout_seconds=float(cfg.get("timeout_seconds", 10)),
        )
        self._network: str = cfg.get("network", "bsc")

    async def get_candidates(self) -> list[TokenQuote]:
        data = await self._get_json(f"{self._base_url}/networks/{self._network}/trending_pools")
        if not isinstance(data, dict) or not isinstance(data.get("data"), list):
            raise MarketDataError(f"{self.name}: trending pools unavailable")

        quotes: list[TokenQuote] = []
        seen: set[str] = set()
        for pool in data["data"]:
            quote = self._normalize_pool(pool)
            if quote is None or quote.asset_id in seen:
                continue
            seen.add(quote.asset_id)
            quotes.append(quote)

        self._logger.info("%s: %d candidates", self.name, len(quotes))
        return quotes

    async def get_quote(self, asset_id: str) -> TokenQuote | None:
        address = _checksum(asset_id)
        if address is None:
            return None
        cache_key = f"quote:{address}"
        cached = self._get_cached(cache_key)
        if cached is not None:
            return cached

        data = await self._get_json(
            f"{self._base_url}/networks/{self._network}/tokens/{address.lower()}"
        )
        if not isinstance(data, dict):
            return None
        attrs = (data.get("data") or {}).get("attributes") or {}
        price = _to_decimal(attrs.get("price_usd"))
        if price is None:
            return None
        market_cap = _to_decimal(attrs.get("market_cap_usd"))
        if market_cap is None:
            market_cap = _to_decimal(attrs.get("fdv_usd"))
        quote = TokenQuote(
            symbol=str(attrs.get("symbol", "")).upper(),
            asset_id=address,
            source=self.name,
            price=price,
            volume_24h=_to_decimal((attrs.get("volume_usd") or {}).get("h24")),
            market_cap=market_cap,
            price_change_24h=None,
            holders=None,
            liquidity=_to_decimal(attrs.get("total_reserve_in_usd")),
            name=str(attrs.get("name", "")),
        )
        self._set_cached(cache_key, quote, _TTL_QUOTE)
        return quote

    def _normalize_pool(self, pool: dict[str, Any]) -> TokenQuote | None:
        attrs = pool.get("attributes") or {}
        token_ref = ((pool.get("relationships") or {}).get("base_token") or {}).get("data") or {}
        # Token ids look like "bsc_0xabc..."
        raw_id = str(token_ref.get("id", ""))
        address = _checksum(raw_id.split("_", 1)[-1])
        if address is None:
            return None
        pool_name = str(attrs.get("name", ""))
        symbol = pool_name.split(" / ")[0].strip().upper()
        market_cap = _to_decimal(attrs.get("market_cap_usd"))
        if market_cap is None:
            market_cap = _to_decimal(attrs.get("fdv_usd"))
        return TokenQuote(
            symbol=symbol,
            asset_id=address,
            source=self.name,
            price=_to_decimal(attrs.get("base_token_price_usd")),
            volume_24h=_to_decimal((attrs.get("volume_usd") or {}).get("h24")),
            market_cap=market_cap,
            price_change_24h=_to_decimal((attrs.get("price_change_percentage") or {}).get("h24")),
            holders=None,
            liquidity=_to_decimal(attrs.get("reserve_in_usd")),
            name=pool_name,
        )


# ---------------------------------------------------------------------------
# Fallback cache
# ---------------------------------------------------------------------------


class CandidateCache(MarketDataSource):
    """
    Last good candidate set, kept in memory and mirrored to a JSON file.

    Serves candidates only while younger than ``max_age_seconds``. Never
    answers price lookups.
    """

    provides_candidates = False

    def __init__(self, path: Path | None = None, max_age_seconds: float = 900) -> None:
        super().__init__(name="cache", priority=1000, refresh_interval=0)
        self._path = path
        self._max_age = max_age_seconds
        self._quotes: list[TokenQuote] = []
        self._stored_at: float | None = None
        self._logger = setup_module_logger(
            "market_data", "market_data.log", module_folder="Market_Data_Logs"
        )
        self._load()

    @property
    def stored_at(self) -> float | None:
        return self._stored_at

    def is_fresh(self, now: float | None = None) -> bool:
        if self._stored_at is None:
            return False
        if now is None:
            now = time.time()
        return now - self._stored_at <= self._max_age

    def store(self, quotes: list[TokenQuote]) -> None:
        if not quotes:
            return
        self._quotes = list(quotes)
        self._stored_at = time.time()
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            payload = {"stored_at": self._stored_at, "quotes": self._quotes}
            self._path.write_text(json.dumps(payload, cls=DecimalEncoder))
        except OSError as exc:
            self._logger.warning("Could not persist candidate cache to %s: %s", self._path, exc)

    async def get_candidates(self) -> list[TokenQuote]:
        if not self.is_fresh():
            raise MarketDataError("candidate cache empty or expired")
        return list(self._quotes)

    async def get_quote(self, asset_id: str) -> TokenQuote | None:
        return None

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            payload = json.loads(self._path.read_text())
            self._quotes = [quote_from_dict(q) for q in payload.get("quotes", [])]
            self._stored_at = float(payload["stored_at"])
            self._logger.info(
                "Loaded %d cached candidates from %s", len(self._quotes), self._path
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            self._logger.warning("Ignoring unreadable candidate cache %s: %s", self._path, exc)
            self._quotes = []
            self._stored_at = None


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_sources(
    session: aiohttp.ClientSession | None,
    w3: AsyncWeb3 | None = None,
) -> list[MarketDataSource]:
    """Instantiate enabled sources from config/signals.json, ordered by priority."""
    from core.oracle_source import ChainlinkOracleSource

    cfg = get_config()
    signals_cfg = cfg.get_signals_config()
    fetch_timeout = cfg.get_timing_config().get("sources", {}).get("fetch_timeout_seconds", 10)

    sources: list[MarketDataSource] = []
    for source_cfg in signals_cfg.get("sources", []):
        if not source_cfg.get("enabled", False):
            continue
        source_cfg = {"timeout_seconds": fetch_timeout, **source_cfg}
        kind = source_cfg.get("type", source_cfg.get("name"))
        if kind == "dexscreener":
            sources.append(DexScreenerSource(session, source_cfg))
        elif kind == "geckoterminal":
            sources.append(GeckoTerminalSource(session, source_cfg))
        elif kind == "chainlink":
            if w3 is None:
                continue
            sources.append(ChainlinkOracleSource(w3, source_cfg))
        else:
            raise ValueError(f"Unknown market data source type: {kind}")

    sources.sort(key=lambda s: s.priority)
    return sources


def build_candidate_cache() -> CandidateCache:
    cfg = get_config()
    cache_path = cfg.get_app_config().get("candidate_cache", {}).get("path")
    max_age = float(cfg.get_signals_config().get("fallback_max_age_seconds", 900))
    path = cfg.resolve_path(cache_path) if cache_path else None
    return CandidateCache(path=path, max_age_seconds=max_age)
