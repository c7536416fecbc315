"""
Shared constants for BSC Alpha Engine.

Token addresses, numeric constants, and default values used across all modules.
"""

from decimal import Decimal

# ---------------------------------------------------------------------------
# Numeric Constants
# ---------------------------------------------------------------------------

MAX_UINT256 = 2**256 - 1
HUNDRED = Decimal("100")

# keccak256("Transfer(address,address,uint256)")
ERC20_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

# ---------------------------------------------------------------------------
# Quote Token
# ---------------------------------------------------------------------------

TOKEN_USDT = "0x55d398326f99059fF775485246999027B3197955"

# ---------------------------------------------------------------------------
# BSC Infrastructure
# ---------------------------------------------------------------------------

DEFAULT_RPC_URL = "https://bsc-dataseed1.binance.org/"
MEV_PROTECTED_RPC = "https://rpc.48.club"

# ---------------------------------------------------------------------------
# Market Data APIs
# ---------------------------------------------------------------------------

DEXSCREENER_BASE = "https://api.dexscreener.com"
GECKOTERMINAL_BASE = "https://api.geckoterminal.com/api/v2"

# ---------------------------------------------------------------------------
# Default Safety Values
# ---------------------------------------------------------------------------

DEFAULT_DRY_RUN = True
DEFAULT_MAX_POSITION_USD = Decimal("10000")
DEFAULT_MAX_GAS_PRICE_GWEI = 10
DEFAULT_MAX_SLIPPAGE_BPS = 50
DEFAULT_COOLDOWN_SECONDS = 30
DEFAULT_MAX_TX_PER_24H = 50

# ---------------------------------------------------------------------------
# Default Sizing Values
# ---------------------------------------------------------------------------

DEFAULT_MAX_ALLOCATION_PERCENT = Decimal("30")
DEFAULT_MAX_CONFIDENCE_MULTIPLIER = Decimal("2.0")
DEFAULT_MIN_TRADE_AMOUNT = Decimal("10")
DEFAULT_MAX_OPEN_POSITIONS = 10
DEFAULT_STARTING_CAPITAL = Decimal("300")
