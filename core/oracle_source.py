"""
Chainlink price-feed source for BSC Alpha Engine.

On-chain oracle prices for the majors configured under ``chainlink_feeds``
in config/chains/56.json. Prices only: no volume, market cap or candidate
discovery. Rounds older than ``max_staleness_seconds`` are treated as
missing rather than served.

Usage:
    from core.oracle_source import ChainlinkOracleSource

    oracle = ChainlinkOracleSource(w3)
    price = await oracle.get_price("0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c")
"""

from __future__ import annotations

import time
from decimal import Decimal
from typing import Any

from web3 import AsyncWeb3, Web3

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from core.market_data import MarketDataSource
from shared.types import TokenQuote


class ChainlinkOracleSource(MarketDataSource):
    """Reads ``latestRoundData`` from Chainlink aggregators via AsyncWeb3."""

    provides_candidates = False

    def __init__(self, w3: AsyncWeb3, source_cfg: dict[str, Any] | None = None) -> None:
        cfg = source_cfg or {}
        super().__init__(
            name=cfg.get("name", "chainlink"),
            priority=int(cfg.get("priority", 3)),
            refresh_interval=float(cfg.get("refresh_interval_seconds", 30)),
        )
        self._w3 = w3
        self._max_staleness = int(cfg.get("max_staleness_seconds", 3600))

        loader = get_config()
        abi = loader.get_abi("chainlink_aggregator")
        feeds_cfg = loader.get_chain_config(56).get("chainlink_feeds", {})

        # asset address (lowercase) -> (symbol, feed contract)
        self._feeds: dict[str, tuple[str, Any]] = {}
        for symbol, feed in feeds_cfg.items():
            asset = Web3.to_checksum_address(feed["asset"])
            contract = w3.eth.contract(address=Web3.to_checksum_address(feed["feed"]), abi=abi)
            self._feeds[asset.lower()] = (symbol, contract)

        self._decimals: dict[str, int] = {}

        self._logger = setup_module_logger(
            "market_data", "market_data.log", module_folder="Market_Data_Logs"
        )

    @property
    def supported_assets(self) -> list[str]:
        return list(self._feeds)

    async def get_candidates(self) -> list[TokenQuote]:
        # Oracles report prices; they do not surface tokens.
        return []

    async def get_quote(self, asset_id: str) -> TokenQuote | None:
        entry = self._feeds.get(asset_id.lower())
        if entry is None:
            return None
        symbol, contract = entry
        try:
            decimals = await self._feed_decimals(asset_id.lower(), contract)
            _, answer, _, updated_at, _ = await contract.functions.latestRoundData().call()
        except Exception as exc:
            self._logger.warning("Chainlink read failed for %s: %s", symbol, exc)
            return None

        age = int(time.time()) - int(updated_at)
        if answer <= 0 or age > self._max_staleness:
            self._logger.warning(
                "Chainlink %s unusable: answer=%s age=%ds (max %ds)",
                symbol,
                answer,
                age,
                self._max_staleness,
            )
            return None

        return TokenQuote(
            symbol=symbol,
            asset_id=Web3.to_checksum_address(asset_id),
            source=self.name,
            price=Decimal(answer) / Decimal(10**decimals),
        )

    async def _feed_decimals(self, key: str, contract: Any) -> int:
        if key not in self._decimals:
            self._decimals[key] = int(await contract.functions.decimals().call())
        return self._decimals[key]
