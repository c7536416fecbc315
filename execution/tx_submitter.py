"""
Wallet transaction layer for BSC Alpha Engine.

Signs swap and approval transactions with the engine's hot wallet, simulates
them (eth_call), gates them on gas price, and broadcasts via the
MEV-protected RPC. The execution submitter polls ``get_receipt`` from its
own loop; ``wait_for_receipt`` is for callers that need to block on one
transaction.

Usage:
    wallet = TxSubmitter(w3, safety, private_key, address)
    tx_hash = await wallet.submit({"to": router, "data": calldata, "value": 0})
    receipt = await wallet.get_receipt(tx_hash)
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, cast

from eth_typing import HexStr
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound
from web3.types import TxParams

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.constants import MEV_PROTECTED_RPC

if TYPE_CHECKING:
    from collections.abc import Callable

    from core.safety import SafetyState

# Error(string) function selector, first 4 bytes of keccak256("Error(string)")
_ERROR_SELECTOR = bytes.fromhex("08c379a0")


class TxSubmitterError(Exception):
    """Base error for transaction submission failures."""


class SimulationFailedError(TxSubmitterError):
    """Raised when eth_call simulation reverts."""


class GasGateError(TxSubmitterError):
    """Raised when the safety gate refuses the current gas price."""


class TxRevertedError(TxSubmitterError):
    """Raised when a mined transaction has status=0."""


class TxTimeoutError(TxSubmitterError):
    """Raised when a transaction is not mined within the timeout."""


class TxSubmitter:
    """
    Hot-wallet signer with local nonce tracking.

    Reads and simulation go through the normal RPC; signed transactions go
    out through a separate MEV-protected endpoint.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        safety: SafetyState,
        private_key: str,
        user_address: str,
    ) -> None:
        self._w3 = w3
        self._safety = safety
        self._private_key = private_key
        self._user_address = Web3.to_checksum_address(user_address)

        cfg = get_config()
        timing_cfg = cfg.get_timing_config()
        chain_cfg = cfg.get_chain_config(56)

        tx_timing = timing_cfg.get("transaction", {})
        self._confirmation_timeout: int = tx_timing.get("confirmation_timeout_seconds", 60)
        self._simulation_timeout: int = tx_timing.get("simulation_timeout_seconds", 15)
        self._receipt_timeout: float = timing_cfg.get("execution", {}).get(
            "receipt_timeout_seconds", 5
        )

        self._chain_id: int = chain_cfg.get("chain_id", 56)
        mev_url = chain_cfg.get("rpc", {}).get("mev_protected_url", MEV_PROTECTED_RPC)
        self._mev_w3 = AsyncWeb3(AsyncHTTPProvider(mev_url))

        self._gas_price_buffer: float = 1.1

        self._nonce: int | None = None
        self._nonce_lock = asyncio.Lock()

        self._logger = setup_module_logger(
            "tx_submitter", "tx_submitter.log", module_folder="TX_Submitter_Logs"
        )

    @property
    def address(self) -> str:
        return self._user_address

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def simulate(self, tx: dict[str, Any]) -> bytes:
        """
        eth_call the transaction. Raises ``SimulationFailedError`` on revert
        or timeout, with the decoded revert reason when there is one.
        """
        try:
            result = await asyncio.wait_for(
                self._w3.eth.call(cast(TxParams, tx)),
                timeout=self._simulation_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise SimulationFailedError(
                f"Simulation timed out after {self._simulation_timeout}s"
            ) from exc
        except Exception as exc:
            reason = self.decode_revert_reason(getattr(exc, "data", b""))
            raise SimulationFailedError(f"Simulation reverted: {reason}") from exc
        self._logger.debug("Simulation succeeded: %d bytes output", len(result))
        return result

    async def submit(
        self,
        tx: dict[str, Any],
        simulate: bool = True,
        on_signed: Callable[[str], None] | None = None,
    ) -> str:
        """
        Simulate, gas-gate, sign and broadcast. Returns the tx hash.

        Nonce, chain id and EIP-1559 fees are filled in here. A failed
        broadcast re-syncs the nonce from chain before re-raising.
        ``on_signed`` receives the hash after signing and before the
        broadcast, so a caller that times out still knows what may be live.
        """
        tx = {"from": self._user_address, **tx}
        if simulate:
            await self.simulate(tx)

        max_fee, priority_fee = await self.get_gas_price()
        check = self._safety.can_submit_tx(int(max_fee // 10**9))
        if not check.can_proceed:
            raise GasGateError(f"Safety gate blocked: {check.reason}")

        nonce = await self._get_next_nonce()
        tx = {
            **tx,
            "chainId": self._chain_id,
            "nonce": nonce,
            "maxFeePerGas": max_fee,
            "maxPriorityFeePerGas": priority_fee,
            "type": 2,
        }

        signed = self._w3.eth.account.sign_transaction(tx, self._private_key)
        if on_signed is not None:
            on_signed("0x" + bytes(signed.hash).hex())
        try:
            tx_hash = await self._mev_w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception:
            await self._recover_nonce()
            raise

        tx_hash_hex = tx_hash.hex()
        if not tx_hash_hex.startswith("0x"):
            tx_hash_hex = "0x" + tx_hash_hex
        self._logger.info(
            "TX submitted: hash=%s nonce=%d maxFee=%d priorityFee=%d",
            tx_hash_hex,
            nonce,
            max_fee,
            priority_fee,
            extra={"tx_hash": tx_hash_hex},
        )
        return tx_hash_hex

    async def get_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        """Receipt for ``tx_hash``, or None while it is still pending."""
        try:
            receipt = await asyncio.wait_for(
                self._w3.eth.get_transaction_receipt(cast(HexStr, tx_hash)),
                timeout=self._receipt_timeout,
            )
        except TransactionNotFound:
            return None
        except asyncio.TimeoutError:
            self._logger.debug("Receipt lookup for %s timed out", tx_hash)
            return None
        return dict(receipt) if receipt is not None else None

    async def wait_for_receipt(self, tx_hash: str, timeout: float | None = None) -> dict[str, Any]:
        """
        Block until ``tx_hash`` is mined. Raises ``TxRevertedError`` on
        status=0 and ``TxTimeoutError`` when nothing is mined in time.
        """
        if timeout is None:
            timeout = self._confirmation_timeout
        start = time.monotonic()
        while True:
            receipt = await self.get_receipt(tx_hash)
            if receipt is not None:
                if receipt.get("status") == 1:
                    self._logger.info(
                        "TX confirmed: hash=%s gasUsed=%s", tx_hash, receipt.get("gasUsed")
                    )
                    return receipt
                raise TxRevertedError(f"TX reverted on-chain: {tx_hash}")
            if time.monotonic() - start >= timeout:
                raise TxTimeoutError(f"TX {tx_hash} not confirmed after {timeout}s")
            await asyncio.sleep(1)

    async def get_gas_price(self) -> tuple[int, int]:
        """(maxFeePerGas, maxPriorityFeePerGas) in wei, with a 10% buffer."""
        base_price = await self._w3.eth.gas_price
        max_fee = int(base_price * self._gas_price_buffer)
        priority_fee = max(int(base_price * 0.1), 1)
        max_fee = max(max_fee, priority_fee)
        return max_fee, priority_fee

    # ------------------------------------------------------------------
    # Nonce management
    # ------------------------------------------------------------------

    async def _get_next_nonce(self) -> int:
        async with self._nonce_lock:
            if self._nonce is None:
                self._nonce = await self._w3.eth.get_transaction_count(
                    self._user_address, "pending"
                )
                self._logger.info("Nonce initialized from chain: %d", self._nonce)
            nonce = self._nonce
            self._nonce += 1
            return nonce

    async def _recover_nonce(self) -> None:
        """Re-sync the local nonce counter from the pending pool."""
        async with self._nonce_lock:
            pending = await self._w3.eth.get_transaction_count(self._user_address, "pending")
            old_nonce = self._nonce
            self._nonce = pending
            self._logger.warning("Nonce recovered: local=%s pending=%d", old_nonce, pending)

    # ------------------------------------------------------------------
    # Revert decoding
    # ------------------------------------------------------------------

    @staticmethod
    def decode_revert_reason(data: bytes | str) -> str:
        """
        Decode a Solidity ``Error(string)`` revert payload. Anything else is
        returned hex-encoded; empty data gives "Unknown revert".
        """
        if not data:
            return "Unknown revert"

        if isinstance(data, str):
            data = bytes.fromhex(data.removeprefix("0x"))

        if len(data) < 4:
            return data.hex()

        if data[:4] == _ERROR_SELECTOR and len(data) >= 68:
            str_len = int.from_bytes(data[36:68], "big")
            return data[68 : 68 + str_len].decode("utf-8", errors="replace")

        return data.hex()

    async def close(self) -> None:
        self._logger.debug("TxSubmitter closed")
