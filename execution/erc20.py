"""
ERC-20 helpers for BSC Alpha Engine.

Decimals lookup (cached per token), allowance management for aggregator
spenders, and fill extraction from swap receipts via Transfer logs.

Usage:
    erc20 = Erc20Client(w3)
    decimals = await erc20.get_decimals(TOKEN_USDT)
    await erc20.ensure_allowance(TOKEN_USDT, spender, amount, wallet)
    received = erc20.received_amount(receipt, token, wallet.address)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from eth_abi.abi import decode as abi_decode
from web3 import AsyncWeb3, Web3

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.constants import ERC20_TRANSFER_TOPIC, MAX_UINT256

if TYPE_CHECKING:
    from execution.tx_submitter import TxSubmitter


def _hex(value: Any) -> str:
    """Normalize HexBytes / bytes / str topics and data to 0x-prefixed lowercase hex."""
    if isinstance(value, (bytes, bytearray)):
        text = bytes(value).hex()
    else:
        text = str(value)
    text = text.lower()
    return text if text.startswith("0x") else "0x" + text


def _topic_address(topic: Any) -> str:
    return "0x" + _hex(topic)[-40:]


class Erc20Client:
    def __init__(self, w3: AsyncWeb3) -> None:
        self._w3 = w3
        self._abi = get_config().get_abi("erc20")
        self._decimals: dict[str, int] = {}
        self._logger = setup_module_logger(
            "swap_router", "swap_router.log", module_folder="Swap_Router_Logs"
        )

    def _contract(self, token: str) -> Any:
        return self._w3.eth.contract(address=Web3.to_checksum_address(token), abi=self._abi)

    async def get_decimals(self, token: str) -> int:
        key = token.lower()
        if key not in self._decimals:
            self._decimals[key] = int(await self._contract(token).functions.decimals().call())
        return self._decimals[key]

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        return int(
            await self._contract(token)
            .functions.allowance(
                Web3.to_checksum_address(owner), Web3.to_checksum_address(spender)
            )
            .call()
        )

    async def ensure_allowance(
        self, token: str, spender: str, amount: int, wallet: TxSubmitter
    ) -> str | None:
        """
        Approve ``spender`` for MAX_UINT256 when the current allowance is
        below ``amount``. Returns the approval tx hash, or None if no
        approval was needed.
        """
        current = await self.allowance(token, wallet.address, spender)
        if current >= amount:
            return None

        data = self._contract(token).encode_abi(
            "approve", args=[Web3.to_checksum_address(spender), MAX_UINT256]
        )
        tx_hash = await wallet.submit(
            {"to": Web3.to_checksum_address(token), "data": data, "value": 0}
        )
        self._logger.info(
            "Approval submitted: token=%s spender=%s tx=%s (allowance was %d, need %d)",
            token,
            spender,
            tx_hash,
            current,
            amount,
            extra={"tx_hash": tx_hash},
        )
        return tx_hash

    @staticmethod
    def received_amount(receipt: dict[str, Any], token: str, recipient: str) -> int:
        """Sum of ``token`` Transfer events to ``recipient`` in ``receipt`` (raw units)."""
        return _transfer_total(receipt, token, recipient, topic_index=2)

    @staticmethod
    def sent_amount(receipt: dict[str, Any], token: str, sender: str) -> int:
        """Sum of ``token`` Transfer events from ``sender`` in ``receipt`` (raw units)."""
        return _transfer_total(receipt, token, sender, topic_index=1)


def _transfer_total(receipt: dict[str, Any], token: str, party: str, topic_index: int) -> int:
    total = 0
    token_l = token.lower()
    party_l = party.lower()
    for log in receipt.get("logs", []):
        topics = log.get("topics", [])
        if len(topics) < 3 or _hex(topics[0]) != ERC20_TRANSFER_TOPIC:
            continue
        if str(log.get("address", "")).lower() != token_l:
            continue
        if _topic_address(topics[topic_index]) != party_l:
            continue
        raw = log.get("data", "0x")
        if isinstance(raw, (bytes, bytearray)):
            data = bytes(raw)
        else:
            data = bytes.fromhex(str(raw).removeprefix("0x"))
        if data:
            total += int(abi_decode(["uint256"], data)[0])
    return total
