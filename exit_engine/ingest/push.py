"""Normalization of pushed notifications into canonical trigger events.

Two payload shapes are understood:

Categorized payloads::

    {"category": "balance", "mint": "...", "uiAmount": 12.5, "timestamp": 1700000000}
    {"category": "swap", "signature": "...", "timestamp": 1700000000,
     "input": {"mint": "...", "amount": 10}, "output": {"mint": "So11...", "amount": 0.5}}

Helius enhanced transactions (``type == "SWAP"`` with ``tokenTransfers``).

Only balance and swap categories are consumed; everything else is ignored.
A swap of a tracked asset against the base currency becomes a PriceUpdate
priced at base amount / asset amount. Payloads without a timestamp are
stamped with arrival time.
"""
from collections import OrderedDict
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from exit_engine.core.models import (
    BalanceUpdate,
    EventSource,
    PriceUpdate,
    TriggerEvent,
    utc_now,
)

logger = structlog.get_logger(__name__)

LAMPORTS_PER_SOL = Decimal("1000000000")

CONSUMED_CATEGORIES = ("balance", "swap")

PositionResolver = Callable[[str], Optional[str]]


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def _leg(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_timestamp(value: Any, arrival: datetime) -> datetime:
    """Unix seconds/milliseconds or ISO string; falls back to arrival time."""
    if value is None:
        return arrival
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return arrival
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return arrival
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return arrival


class SignatureCache:
    """Bounded memory of recently seen transaction signatures."""

    def __init__(self, maxsize: int = 10000):
        self.maxsize = maxsize
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def seen(self, signature: str) -> bool:
        """Record ``signature``; True if it was already recorded."""
        if signature in self._seen:
            self._seen.move_to_end(signature)
            return True
        self._seen[signature] = None
        if len(self._seen) > self.maxsize:
            self._seen.popitem(last=False)
        return False

    def __len__(self) -> int:
        return len(self._seen)


class PushNormalizer:
    """Turns pushed payloads into PriceUpdate / BalanceUpdate events."""

    def __init__(self, resolver: PositionResolver, base_asset: str, dedup_cache_size: int = 10000):
        self.resolver = resolver
        self.base_asset = base_asset
        self.signatures = SignatureCache(dedup_cache_size)

        self.ignored = 0
        self.duplicates = 0
        self.untracked = 0

    def normalize(self, payload: Dict[str, Any], arrival: Optional[datetime] = None) -> List[TriggerEvent]:
        """Normalize one payload; returns an empty list when nothing applies."""
        arrival = arrival or utc_now()

        if not isinstance(payload, dict):
            self.ignored += 1
            logger.warning("push.malformed_payload", payload_type=type(payload).__name__)
            return []

        signature = payload.get("signature")
        if signature and self.signatures.seen(signature):
            self.duplicates += 1
            logger.debug("push.duplicate_ignored", signature=signature)
            return []

        if "tokenTransfers" in payload:
            return self._from_enhanced_transaction(payload, arrival)

        category = str(payload.get("category") or payload.get("type") or "").lower()
        if category not in CONSUMED_CATEGORIES:
            self.ignored += 1
            logger.debug("push.category_ignored", category=category)
            return []

        ts = parse_timestamp(payload.get("timestamp"), arrival)
        if category == "balance":
            event = self._balance(payload, ts)
            return [event] if event else []
        return self._swap(
            _leg(payload.get("input")),
            _leg(payload.get("output")),
            ts,
            signature,
        )

    def _balance(self, payload: Dict[str, Any], ts: datetime) -> Optional[BalanceUpdate]:
        mint = payload.get("mint")
        amount = _decimal(payload.get("uiAmount", payload.get("amount")))
        if not mint or amount is None:
            self.ignored += 1
            logger.warning("push.balance_incomplete", mint=mint)
            return None
        position_id = self._resolve(mint)
        if position_id is None:
            return None
        return BalanceUpdate(
            position_id=position_id,
            amount=amount,
            ts=ts,
            source=EventSource.PUSH,
            signature=payload.get("signature"),
        )

    def _swap(
        self,
        input_leg: Dict[str, Any],
        output_leg: Dict[str, Any],
        ts: datetime,
        signature: Optional[str],
    ) -> List[TriggerEvent]:
        in_mint, out_mint = input_leg.get("mint"), output_leg.get("mint")
        in_amount, out_amount = _decimal(input_leg.get("amount")), _decimal(output_leg.get("amount"))

        if in_mint == self.base_asset:
            token, token_amount, base_amount = out_mint, out_amount, in_amount
        elif out_mint == self.base_asset:
            token, token_amount, base_amount = in_mint, in_amount, out_amount
        else:
            # Token-to-token swaps carry no base-currency price
            self.ignored += 1
            return []

        if not token or not token_amount or not base_amount or token_amount <= 0 or base_amount <= 0:
            self.ignored += 1
            return []

        position_id = self._resolve(token)
        if position_id is None:
            return []

        return [
            PriceUpdate(
                position_id=position_id,
                price=base_amount / token_amount,
                ts=ts,
                source=EventSource.PUSH,
                signature=signature,
            )
        ]

    def _from_enhanced_transaction(self, tx: Dict[str, Any], arrival: datetime) -> List[TriggerEvent]:
        if str(tx.get("type", "")).upper() != "SWAP":
            self.ignored += 1
            return []

        ts = parse_timestamp(tx.get("timestamp"), arrival)
        amounts: Dict[str, Decimal] = {}
        for transfer in tx.get("tokenTransfers") or []:
            transfer = _leg(transfer)
            amount = _decimal(transfer.get("tokenAmount"))
            mint = transfer.get("mint")
            if mint and amount:
                amounts[mint] = amounts.get(mint, Decimal("0")) + abs(amount)

        base_amount = amounts.pop(self.base_asset, None)
        if base_amount is None:
            base_amount = self._native_swap_amount(tx)

        events: List[TriggerEvent] = []
        for mint, token_amount in amounts.items():
            events.extend(
                self._swap(
                    {"mint": mint, "amount": token_amount},
                    {"mint": self.base_asset, "amount": base_amount},
                    ts,
                    tx.get("signature"),
                )
            )
        return events

    @staticmethod
    def _native_swap_amount(tx: Dict[str, Any]) -> Optional[Decimal]:
        swap = _leg(_leg(tx.get("events")).get("swap"))
        for leg in ("nativeInput", "nativeOutput"):
            lamports = _decimal(_leg(swap.get(leg)).get("amount"))
            if lamports:
                return lamports / LAMPORTS_PER_SOL
        return None

    def _resolve(self, token_id: str) -> Optional[str]:
        position_id = self.resolver(token_id)
        if position_id is None:
            self.untracked += 1
            logger.debug("push.untracked_asset", token_id=token_id)
        return position_id

    def get_stats(self) -> Dict[str, Union[int, float]]:
        return {
            "ignored": self.ignored,
            "duplicates": self.duplicates,
            "untracked": self.untracked,
            "signatures_cached": len(self.signatures),
        }
