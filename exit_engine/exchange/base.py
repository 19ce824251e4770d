"""Boundaries to the external swap execution service and price oracle."""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

from exit_engine.core.models import PriceQuote, Quote, SwapResult


class SwapExecutionService(ABC):
    """
    Quotes and executes swaps of an asset into the base currency.

    Implementations raise NoRoute / NetworkError from get_quote(), and
    NetworkError / SlippageExceeded / InsufficientFunds from execute_swap().
    """

    @abstractmethod
    async def get_quote(
        self,
        in_asset: str,
        out_asset: str,
        amount: Decimal,
        slippage_bps: int,
    ) -> Quote:
        """Quote selling ``amount`` (UI units) of ``in_asset`` for ``out_asset``."""

    @abstractmethod
    async def execute_swap(
        self,
        quote: Quote,
        priority_options: Optional[Dict[str, Any]] = None,
    ) -> SwapResult:
        """Submit the quoted swap and wait for confirmation."""

    async def close(self) -> None:
        """Release network resources."""


class PriceOracle(ABC):
    """Current price lookup for an asset. Raises NoData when unknown."""

    @abstractmethod
    async def get_price(self, asset_id: str) -> PriceQuote:
        """Return the latest price (and liquidity when known)."""

    async def close(self) -> None:
        """Release network resources."""


class TransactionSender(ABC):
    """Signs and submits a serialized swap transaction.

    Custody lives outside the engine; implementations hold the wallet.
    ``send`` returns the confirmed signature and raises NetworkError,
    SlippageExceeded or InsufficientFunds on failure.
    """

    public_key: str

    @abstractmethod
    async def send(self, transaction: str) -> str:
        """Sign, submit and confirm a base64 transaction."""
