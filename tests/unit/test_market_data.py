"""
Unit tests for core/market_data.py.

HTTP sources are exercised against aioresponses mocks (regex URLs); the
candidate cache is tested against a tmp_path file.
"""

from __future__ import annotations

import re
import time
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from aioresponses import aioresponses
from web3 import Web3

from core.market_data import MarketDataError
from tests.conftest import TOKEN_CAKE, make_loader, make_quote

CAKE = Web3.to_checksum_address(TOKEN_CAKE)

DEX_TOKENS_URL = re.compile(r"^https://api\.dexscreener\.com/tokens/v1/bsc/.*$")
DEX_BOOSTS_URL = re.compile(r"^https://api\.dexscreener\.com/token-boosts/top/v1$")
GT_TRENDING_URL = re.compile(r"^https://api\.geckoterminal\.com/api/v2/networks/bsc/trending_pools$")
GT_TOKEN_URL = re.compile(r"^https://api\.geckoterminal\.com/api/v2/networks/bsc/tokens/.*$")

SAMPLE_PAIRS = [
    {
        "baseToken": {"address": TOKEN_CAKE.lower(), "symbol": "cake", "name": "PancakeSwap Token"},
        "priceUsd": "2.9",
        "volume": {"h24": 10},
        "liquidity": {"usd": 1000},
    },
    {
        "baseToken": {"address": TOKEN_CAKE.lower(), "symbol": "cake", "name": "PancakeSwap Token"},
        "priceUsd": "2.41",
        "volume": {"h24": 1200000},
        "marketCap": 650000000,
        "priceChange": {"h24": 6.5},
        "liquidity": {"usd": 500000},
    },
]

SAMPLE_TRENDING = {
    "data": [
        {
            "attributes": {
                "name": "CAKE / WBNB",
                "base_token_price_usd": "2.40",
                "volume_usd": {"h24": "900000"},
                "fdv_usd": "700000000",
                "market_cap_usd": None,
                "price_change_percentage": {"h24": "4.2"},
                "reserve_in_usd": "3000000",
            },
            "relationships": {"base_token": {"data": {"id": f"bsc_{TOKEN_CAKE.lower()}"}}},
        },
        {
            "attributes": {"name": "BROKEN / WBNB"},
            "relationships": {"base_token": {"data": {"id": "bsc_not-an-address"}}},
        },
    ]
}


@pytest.fixture(autouse=True)
def quiet_logger():
    with patch("core.market_data.setup_module_logger") as mock_logger:
        mock_logger.return_value = MagicMock()
        yield


def _dexscreener(**cfg):
    from core.market_data import DexScreenerSource

    return DexScreenerSource(session=None, source_cfg={"use_boosted": False, "watchlist": [TOKEN_CAKE], **cfg})


def _gecko():
    from core.market_data import GeckoTerminalSource

    return GeckoTerminalSource(session=None, source_cfg={})


# ---------------------------------------------------------------------------
# DexScreener
# ---------------------------------------------------------------------------


class TestDexScreener:

    async def test_deepest_pair_wins(self):
        source = _dexscreener()
        with aioresponses() as mocked:
            mocked.get(DEX_TOKENS_URL, payload=SAMPLE_PAIRS)
            quotes = await source.get_candidates()
        await source.close()

        assert len(quotes) == 1
        quote = quotes[0]
        assert quote.symbol == "CAKE"
        assert quote.asset_id == CAKE
        assert quote.price == Decimal("2.41")
        assert quote.market_cap == Decimal("650000000")
        assert quote.price_change_24h == Decimal("6.5")
        assert quote.liquidity == Decimal("500000")
        assert quote.holders is None

    async def test_boosted_tokens_filtered_by_chain(self):
        source = _dexscreener(use_boosted=True, watchlist=[])
        boosts = [
            {"chainId": "bsc", "tokenAddress": TOKEN_CAKE.lower()},
            {"chainId": "solana", "tokenAddress": "So11111111111111111111111111111111111111112"},
        ]
        with aioresponses() as mocked:
            mocked.get(DEX_BOOSTS_URL, payload=boosts)
            mocked.get(DEX_TOKENS_URL, payload=SAMPLE_PAIRS)
            quotes = await source.get_candidates()
        await source.close()

        assert [q.asset_id for q in quotes] == [CAKE]

    async def test_unavailable_raises(self):
        source = _dexscreener(use_boosted=True, watchlist=[])
        with aioresponses() as mocked:
            mocked.get(DEX_BOOSTS_URL, status=500, body="oops")
            with pytest.raises(MarketDataError):
                await source.get_candidates()
        await source.close()

    async def test_pair_data_unavailable_raises(self):
        source = _dexscreener()
        with aioresponses() as mocked:
            mocked.get(DEX_TOKENS_URL, status=429)
            with pytest.raises(MarketDataError):
                await source.get_candidates()
        await source.close()

    async def test_get_quote_is_cached(self):
        source = _dexscreener()
        with aioresponses() as mocked:
            mocked.get(DEX_TOKENS_URL, payload=SAMPLE_PAIRS)
            first = await source.get_quote(TOKEN_CAKE)
            second = await source.get_quote(TOKEN_CAKE.lower())
        await source.close()

        assert first is second
        assert await source.get_price(TOKEN_CAKE) == Decimal("2.41")

    async def test_invalid_address_returns_none(self):
        source = _dexscreener()
        assert await source.get_quote("not-an-address") is None
        await source.close()

    async def test_rate_limit_blocks_requests(self):
        source = _dexscreener(requests_per_minute=0)
        assert await source.get_quote(TOKEN_CAKE) is None
        await source.close()


# ---------------------------------------------------------------------------
# GeckoTerminal
# ---------------------------------------------------------------------------


class TestGeckoTerminal:

    async def test_trending_pools_normalized(self):
        source = _gecko()
        with aioresponses() as mocked:
            mocked.get(GT_TRENDING_URL, payload=SAMPLE_TRENDING)
            quotes = await source.get_candidates()
        await source.close()

        assert len(quotes) == 1
        quote = quotes[0]
        assert quote.symbol == "CAKE"
        assert quote.source == "geckoterminal"
        assert quote.market_cap == Decimal("700000000")
        assert quote.price_change_24h == Decimal("4.2")

    async def test_bad_payload_raises(self):
        source = _gecko()
        with aioresponses() as mocked:
            mocked.get(GT_TRENDING_URL, payload={"errors": ["nope"]})
            with pytest.raises(MarketDataError):
                await source.get_candidates()
        await source.close()

    async def test_token_quote(self):
        source = _gecko()
        payload = {
            "data": {
                "attributes": {
                    "symbol": "cake",
                    "name": "PancakeSwap",
                    "price_usd": "2.39",
                    "market_cap_usd": "690000000",
                    "volume_usd": {"h24": "800000"},
                    "total_reserve_in_usd": "2500000",
                }
            }
        }
        with aioresponses() as mocked:
            mocked.get(GT_TOKEN_URL, payload=payload)
            quote = await source.get_quote(TOKEN_CAKE)
        await source.close()

        assert quote.price == Decimal("2.39")
        assert quote.liquidity == Decimal("2500000")
        assert quote.price_change_24h is None


# ---------------------------------------------------------------------------
# Candidate cache
# ---------------------------------------------------------------------------


class TestCandidateCache:

    async def test_store_and_serve(self):
        from core.market_data import CandidateCache

        cache = CandidateCache()
        quote = make_quote()
        cache.store([quote])

        assert await cache.get_candidates() == [quote]
        assert await cache.get_quote(TOKEN_CAKE) is None

    async def test_empty_cache_raises(self):
        from core.market_data import CandidateCache

        with pytest.raises(MarketDataError):
            await CandidateCache().get_candidates()

    async def test_expired_cache_raises(self):
        from core.market_data import CandidateCache

        cache = CandidateCache(max_age_seconds=60)
        cache.store([make_quote()])
        assert cache.is_fresh(now=time.time() + 120) is False

    async def test_persisted_and_reloaded(self, tmp_path):
        from core.market_data import CandidateCache

        path = tmp_path / "cache" / "candidates.json"
        CandidateCache(path=path).store([make_quote(holders=1234)])

        reloaded = CandidateCache(path=path)
        quotes = await reloaded.get_candidates()

        assert quotes[0].symbol == "CAKE"
        assert quotes[0].price == Decimal("2.5")
        assert quotes[0].holders == 1234

    def test_corrupt_file_ignored(self, tmp_path):
        from core.market_data import CandidateCache

        path = tmp_path / "candidates.json"
        path.write_text("{not json")
        assert CandidateCache(path=path).stored_at is None


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestBuildSources:

    def test_enabled_sources_sorted_and_oracle_skipped_without_w3(self):
        signals = {
            "sources": [
                {"name": "geckoterminal", "type": "geckoterminal", "enabled": True, "priority": 2},
                {"name": "dexscreener", "type": "dexscreener", "enabled": True, "priority": 1},
                {"name": "chainlink", "type": "chainlink", "enabled": True, "priority": 3},
                {"name": "off", "type": "dexscreener", "enabled": False},
            ]
        }
        with patch("core.market_data.get_config") as mock_cfg:
            mock_cfg.return_value = make_loader(get_signals_config=signals)
            from core.market_data import build_sources

            sources = build_sources(None, None)

        assert [s.name for s in sources] == ["dexscreener", "geckoterminal"]

    def test_unknown_type_raises(self):
        signals = {"sources": [{"name": "x", "type": "carrier-pigeon", "enabled": True}]}
        with patch("core.market_data.get_config") as mock_cfg:
            mock_cfg.return_value = make_loader(get_signals_config=signals)
            from core.market_data import build_sources

            with pytest.raises(ValueError):
                build_sources(None, None)
