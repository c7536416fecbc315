from execution.erc20 import Erc20Client
from execution.swap_router import SwapRouter, SwapRouterError, build_routers
from execution.tx_submitter import TxSubmitter, TxSubmitterError

__all__ = [
    "Erc20Client",
    "SwapRouter",
    "SwapRouterError",
    "TxSubmitter",
    "TxSubmitterError",
    "build_routers",
]
