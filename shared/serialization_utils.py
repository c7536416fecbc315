"""
Serialization utilities for BSC Alpha Engine.

JSON encoding for Decimal, HexBytes, enums, dataclasses and large integers,
plus the matching decoder used to restore cached token quotes.

Usage:
    from shared.serialization_utils import DecimalEncoder, quote_from_dict
    json.dumps(data, cls=DecimalEncoder)
"""

import dataclasses
from decimal import Decimal, InvalidOperation
from enum import Enum
from json import JSONEncoder
from typing import Any

from hexbytes import HexBytes

from shared.types import TokenQuote


class DecimalEncoder(JSONEncoder):
    """
    Custom JSON encoder handling Decimal, HexBytes, enums, dataclasses and
    large integers.

    Sources:
    - RFC 7159 section 6 (JSON number limits)
    - IEEE 754-2008 (double precision safe integer limit: 2^53 - 1)
    """

    # IEEE 754 double precision safe integer limit
    _MAX_SAFE_INTEGER = 2**53 - 1

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, (HexBytes, bytes)):
            return obj.hex()
        if isinstance(obj, Enum):
            return obj.value
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
        # web3.py AttributeDict (transaction/receipt responses)
        if hasattr(obj, "__iter__") and hasattr(obj, "keys"):
            return dict(obj)
        return super().default(obj)

    def encode(self, obj: Any) -> str:
        """Override encode to convert large integers to strings before JSON serialization."""
        return super().encode(self._convert_large_ints(obj))

    def _convert_large_ints(self, obj: Any) -> Any:
        """Recursively convert integers exceeding IEEE 754 safe limits to strings."""
        if isinstance(obj, dict):
            return {k: self._convert_large_ints(v) for k, v in obj.items()}
        elif isinstance(obj, (list, tuple)):
            return [self._convert_large_ints(item) for item in obj]
        elif isinstance(obj, int) and not isinstance(obj, bool) and (
            obj > self._MAX_SAFE_INTEGER or obj < -self._MAX_SAFE_INTEGER
        ):
            return str(obj)
        return obj


def _opt_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def quote_from_dict(data: dict[str, Any]) -> TokenQuote:
    """Rebuild a TokenQuote written by ``DecimalEncoder``."""
    holders = data.get("holders")
    return TokenQuote(
        symbol=str(data["symbol"]),
        asset_id=str(data["asset_id"]),
        source=str(data.get("source", "cache")),
        price=_opt_decimal(data.get("price")),
        volume_24h=_opt_decimal(data.get("volume_24h")),
        market_cap=_opt_decimal(data.get("market_cap")),
        price_change_24h=_opt_decimal(data.get("price_change_24h")),
        holders=int(holders) if holders is not None else None,
        liquidity=_opt_decimal(data.get("liquidity")),
        name=str(data.get("name", "")),
    )
