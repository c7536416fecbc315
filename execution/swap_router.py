"""
DEX aggregator swap routers for BSC Alpha Engine.

One SwapRouter per configured aggregator (OpenOcean, ParaSwap, 1inch). Each
router turns a human-unit amount into a ready-to-sign swap quote and can
execute that quote through the engine's wallet. The execution submitter
owns the fallback order: it asks routers one at a time, by priority, rather
than fanning out to all of them.

Every quote's router address is checked against the provider's approved
whitelist before it is returned; calldata aimed anywhere else is dropped.

Usage:
    routers = build_routers(erc20, wallet.address)
    quote = await routers[0].quote(TOKEN_USDT, token, Decimal("191.36"))
    tx_hash = await routers[0].execute(quote, wallet)
"""

from __future__ import annotations

import asyncio
import os
import time
from decimal import ROUND_DOWN, Decimal
from typing import TYPE_CHECKING, Any, cast

import aiohttp
from web3 import Web3

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.constants import DEFAULT_MAX_SLIPPAGE_BPS
from shared.types import SwapQuote

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from execution.erc20 import Erc20Client
    from execution.tx_submitter import TxSubmitter

_GAS_BUFFER = Decimal("1.2")


class SwapRouterError(Exception):
    """Raised when a quote cannot be executed."""


def _calldata(raw: str | None) -> bytes:
    return bytes.fromhex((raw or "0x").removeprefix("0x"))


class SwapRouter:
    """
    Single-provider quote/execute client.

    Providers are selected by ``provider_cfg["name"]``; the request and
    response shapes of each aggregator live in its ``_fetch_*`` method.
    """

    def __init__(
        self,
        provider_cfg: dict[str, Any],
        erc20: Erc20Client,
        wallet_address: str,
        max_slippage_bps: int | None = None,
    ) -> None:
        self.name: str = provider_cfg["name"]
        self.priority: int = int(provider_cfg.get("priority", 100))
        self._erc20 = erc20
        self._wallet_address = Web3.to_checksum_address(wallet_address)

        cfg = get_config()
        agg_cfg = cfg.get_aggregator_config()
        timing_cfg = cfg.get_timing_config()

        self._base_url: str = provider_cfg["base_url"].rstrip("/")
        self._timeout: float = float(provider_cfg.get("timeout_seconds", 8))
        self._approved_routers = {a.lower() for a in provider_cfg.get("approved_routers", [])}
        self._spender: str | None = provider_cfg.get("spender")

        if max_slippage_bps is None:
            max_slippage_bps = agg_cfg.get(
                "max_slippage_bps",
                cfg.get_positions_config().get("max_slippage_bps", DEFAULT_MAX_SLIPPAGE_BPS),
            )
        self._max_slippage_bps: int = int(max_slippage_bps)

        env_key = provider_cfg.get("api_key_env", "")
        self._api_key = os.environ.get(env_key, "") if env_key else ""

        rps = provider_cfg.get("rate_limit_rps", 1)
        self._min_interval = 1.0 / rps if rps > 0 else 1.0
        self._last_request = 0.0

        self._cache: dict[str, tuple[float, SwapQuote]] = {}
        self._cache_ttl: float = timing_cfg.get("aggregator", {}).get(
            "quote_cache_ttl_seconds", 10
        )

        fetchers: dict[str, Callable[[str, str, int, int, int], Awaitable[SwapQuote | None]]] = {
            "1inch": self._fetch_1inch,
            "openocean": self._fetch_openocean,
            "paraswap": self._fetch_paraswap,
        }
        if self.name not in fetchers:
            raise ValueError(f"Unsupported aggregator provider: {self.name}")
        self._fetch = fetchers[self.name]

        self._session: aiohttp.ClientSession | None = None

        self._logger = setup_module_logger(
            "swap_router", "swap_router.log", module_folder="Swap_Router_Logs"
        )

    def __repr__(self) -> str:
        return f"SwapRouter({self.name!r}, priority={self.priority})"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def quote(
        self, from_token: str, to_token: str, amount: Decimal
    ) -> SwapQuote | None:
        """
        Quote swapping ``amount`` (human units of ``from_token``).

        Returns None when the provider has no route, fails, or answers with
        a router outside its whitelist.
        """
        from_decimals = await self._erc20.get_decimals(from_token)
        to_decimals = await self._erc20.get_decimals(to_token)
        raw_amount = int(
            (amount * Decimal(10**from_decimals)).to_integral_value(rounding=ROUND_DOWN)
        )
        if raw_amount <= 0:
            return None

        key = f"{from_token.lower()}:{to_token.lower()}:{raw_amount}"
        cached = self._check_cache(key)
        if cached is not None:
            self._logger.debug("%s cache hit for %s", self.name, key)
            return cached

        quote = await self._fetch(from_token, to_token, raw_amount, from_decimals, to_decimals)
        if quote is None:
            return None
        if quote.to_amount <= 0:
            self._logger.warning("%s returned an empty route for %s", self.name, key)
            return None
        if not self._validate_router(quote.router_address):
            self._logger.warning(
                "%s returned unapproved router %s", self.name, quote.router_address
            )
            return None

        self._prune_cache()
        self._cache[key] = (time.monotonic(), quote)
        self._logger.info(
            "%s quote: %s -> %s in=%s out=%s min=%s",
            self.name,
            from_token,
            to_token,
            quote.from_human,
            quote.to_human,
            quote.to_amount_min,
        )
        return quote

    async def execute(
        self,
        quote: SwapQuote,
        wallet: TxSubmitter,
        on_broadcast: Callable[[str], None] | None = None,
    ) -> str:
        """
        Approve the spender if needed, then sign and send the swap. Returns
        the tx hash. ``on_broadcast`` gets the swap hash (never the
        approval's) just before it goes out.
        """
        if quote.provider != self.name:
            raise SwapRouterError(f"{self.name} cannot execute a {quote.provider} quote")
        if not self._validate_router(quote.router_address):
            raise SwapRouterError(f"Router {quote.router_address} is not approved for {self.name}")

        await self._erc20.ensure_allowance(
            quote.from_token, quote.spender, quote.from_amount, wallet
        )

        tx: dict[str, Any] = {
            "to": Web3.to_checksum_address(quote.router_address),
            "data": "0x" + quote.calldata.hex(),
            "value": quote.value,
        }
        if quote.gas_estimate > 0:
            tx["gas"] = int(Decimal(quote.gas_estimate) * _GAS_BUFFER)

        # Simulating the swap before the approval is mined would always revert.
        return await wallet.submit(tx, simulate=False, on_signed=on_broadcast)

    def invalidate(self, quote: SwapQuote) -> None:
        """Forget a cached quote whose execution failed or reverted."""
        for key, (_, cached) in list(self._cache.items()):
            if cached is quote:
                del self._cache[key]

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Provider-specific fetch methods
    # ------------------------------------------------------------------

    async def _fetch_1inch(
        self,
        from_token: str,
        to_token: str,
        from_amount: int,
        from_decimals: int,
        to_decimals: int,
    ) -> SwapQuote | None:
        """1inch v6.0 /swap."""
        try:
            params = {
                "src": from_token,
                "dst": to_token,
                "amount": str(from_amount),
                "from": self._wallet_address,
                "slippage": str(self._max_slippage_bps / 100),
                "disableEstimate": "true",
            }
            headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else None

            data = await self._rate_limited_get(f"{self._base_url}/swap", headers, params)

            to_amount = int(data["dstAmount"])
            tx = data.get("tx", {})
            router = tx.get("to", "")
            return SwapQuote(
                provider=self.name,
                from_token=from_token,
                to_token=to_token,
                from_amount=from_amount,
                to_amount=to_amount,
                to_amount_min=self._min_out(to_amount),
                calldata=_calldata(tx.get("data")),
                router_address=router,
                spender=self._spender or router,
                gas_estimate=int(tx.get("gas", 0)),
                from_decimals=from_decimals,
                to_decimals=to_decimals,
                value=int(tx.get("value", 0) or 0),
            )
        except Exception as exc:
            self._logger.warning("1inch fetch failed: %s", exc)
            return None

    async def _fetch_openocean(
        self,
        from_token: str,
        to_token: str,
        from_amount: int,
        from_decimals: int,
        to_decimals: int,
    ) -> SwapQuote | None:
        """OpenOcean v3 /swap_quote. Amounts are sent in human units."""
        try:
            human = Decimal(from_amount) / Decimal(10**from_decimals)
            params = {
                "inTokenAddress": from_token,
                "outTokenAddress": to_token,
                "amount": format(human.normalize(), "f"),
                "gasPrice": "3",
                "slippage": str(self._max_slippage_bps / 100),
                "account": self._wallet_address,
            }

            body = await self._rate_limited_get(f"{self._base_url}/swap_quote", None, params)
            data = body.get("data") or {}

            to_amount = int(data["outAmount"])
            to_amount_min = int(data.get("minOutAmount", 0) or 0)
            if to_amount_min <= 0:
                to_amount_min = self._min_out(to_amount)
            router = data.get("to", "")
            return SwapQuote(
                provider=self.name,
                from_token=from_token,
                to_token=to_token,
                from_amount=int(data.get("inAmount", from_amount)),
                to_amount=to_amount,
                to_amount_min=to_amount_min,
                calldata=_calldata(data.get("data")),
                router_address=router,
                spender=self._spender or router,
                gas_estimate=int(data.get("estimatedGas", 0)),
                from_decimals=from_decimals,
                to_decimals=to_decimals,
                value=int(data.get("value", 0) or 0),
            )
        except Exception as exc:
            self._logger.warning("OpenOcean fetch failed: %s", exc)
            return None

    async def _fetch_paraswap(
        self,
        from_token: str,
        to_token: str,
        from_amount: int,
        from_decimals: int,
        to_decimals: int,
    ) -> SwapQuote | None:
        """ParaSwap v5, two steps: /prices then /transactions/56."""
        try:
            price_params = {
                "srcToken": from_token,
                "destToken": to_token,
                "amount": str(from_amount),
                "srcDecimals": str(from_decimals),
                "destDecimals": str(to_decimals),
                "side": "SELL",
                "network": "56",
                "userAddress": self._wallet_address,
            }
            price_data = await self._rate_limited_get(
                f"{self._base_url}/prices", None, price_params
            )
            price_route = price_data.get("priceRoute", {})
            dest_amount = int(price_route.get("destAmount", 0))
            if dest_amount <= 0:
                return None

            tx_body = {
                "srcToken": from_token,
                "destToken": to_token,
                "srcAmount": str(from_amount),
                "srcDecimals": from_decimals,
                "destDecimals": to_decimals,
                "priceRoute": price_route,
                "userAddress": self._wallet_address,
                "slippage": self._max_slippage_bps,
            }
            tx_data = await self._rate_limited_post(
                f"{self._base_url}/transactions/56?ignoreChecks=true", tx_body
            )

            router = tx_data.get("to", "")
            return SwapQuote(
                provider=self.name,
                from_token=from_token,
                to_token=to_token,
                from_amount=from_amount,
                to_amount=dest_amount,
                to_amount_min=self._min_out(dest_amount),
                calldata=_calldata(tx_data.get("data")),
                router_address=router,
                spender=price_route.get("tokenTransferProxy") or self._spender or router,
                gas_estimate=int(tx_data.get("gas", price_route.get("gasCost", 0)) or 0),
                from_decimals=from_decimals,
                to_decimals=to_decimals,
                value=int(tx_data.get("value", 0) or 0),
            )
        except Exception as exc:
            self._logger.warning("ParaSwap fetch failed: %s", exc)
            return None

    # ------------------------------------------------------------------
    # HTTP helpers with rate limiting
    # ------------------------------------------------------------------

    async def _rate_limited_get(
        self,
        url: str,
        headers: dict[str, str] | None,
        params: dict[str, str],
    ) -> dict[str, Any]:
        await self._enforce_rate_limit()
        session = await self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        async with session.get(url, headers=headers, params=params, timeout=timeout) as resp:
            resp.raise_for_status()
            return cast(dict[str, Any], await resp.json(content_type=None))

    async def _rate_limited_post(self, url: str, json_data: dict[str, Any]) -> dict[str, Any]:
        await self._enforce_rate_limit()
        session = await self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        async with session.post(url, json=json_data, timeout=timeout) as resp:
            resp.raise_for_status()
            return cast(dict[str, Any], await resp.json(content_type=None))

    async def _enforce_rate_limit(self) -> None:
        elapsed = time.monotonic() - self._last_request
        if self._last_request > 0 and elapsed < self._min_interval:
            await asyncio.sleep(self._min_interval - elapsed)
        self._last_request = time.monotonic()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _min_out(self, to_amount: int) -> int:
        return to_amount * (10000 - self._max_slippage_bps) // 10000

    def _validate_router(self, router_address: str) -> bool:
        if not self._approved_routers:
            return True
        return router_address.lower() in self._approved_routers

    def _prune_cache(self) -> None:
        now = time.monotonic()
        expired = [
            key
            for key, (stored_at, _) in self._cache.items()
            if now - stored_at > self._cache_ttl
        ]
        for key in expired:
            del self._cache[key]

    def _check_cache(self, key: str) -> SwapQuote | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, quote = entry
        if time.monotonic() - stored_at > self._cache_ttl:
            del self._cache[key]
            return None
        return quote


def build_routers(erc20: Erc20Client, wallet_address: str) -> list[SwapRouter]:
    """Enabled routers from config/aggregator.json, best priority first."""
    providers = get_config().get_aggregator_config().get("providers", [])
    routers = [
        SwapRouter(p, erc20, wallet_address) for p in providers if p.get("enabled", True)
    ]
    routers.sort(key=lambda r: r.priority)
    return routers
