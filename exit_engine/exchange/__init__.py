"""Swap execution and price oracle integrations."""

from exit_engine.exchange.base import PriceOracle, SwapExecutionService, TransactionSender
from exit_engine.exchange.birdeye import BirdeyePriceOracle
from exit_engine.exchange.jupiter_client import JupiterSwapService
from exit_engine.exchange.paper import PaperSwapService

__all__ = [
    "PriceOracle",
    "SwapExecutionService",
    "TransactionSender",
    "BirdeyePriceOracle",
    "JupiterSwapService",
    "PaperSwapService",
]
