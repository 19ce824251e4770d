"""Exception taxonomy for the exit engine.

Errors fall into three groups:
- Startup errors (ConfigurationError) halt the whole engine.
- Per-position errors (registry and dispatch failures) stay scoped to the
  position that raised them.
- Boundary errors raised by the external swap and price services, which the
  dispatcher retries with bounded backoff.
"""
from typing import Optional


class ExitEngineError(Exception):
    """Base class for all exit engine errors."""


class ConfigurationError(ExitEngineError):
    """Missing or invalid thresholds, credentials or collaborators at startup."""

    def __init__(self, issues):
        if isinstance(issues, str):
            issues = [issues]
        self.issues = list(issues)
        super().__init__("; ".join(self.issues))


# =============================================================================
# Registry errors
# =============================================================================

class PositionNotFound(ExitEngineError):
    """No position is registered under the given id."""

    def __init__(self, position_id: str):
        super().__init__(f"Unknown position: {position_id}")
        self.position_id = position_id


class DuplicateActivePosition(ExitEngineError):
    """An active position already exists for the asset."""

    def __init__(self, token_id: str, existing_id: str):
        super().__init__(
            f"Active position {existing_id} already exists for {token_id}"
        )
        self.token_id = token_id
        self.existing_id = existing_id


class DataInconsistency(ExitEngineError):
    """A mutation would break the remaining-amount invariant.

    Raised instead of clamping. The position is left untouched.
    """

    def __init__(self, position_id: str, message: str):
        super().__init__(f"{position_id}: {message}")
        self.position_id = position_id


class StaleEventDiscarded(ExitEngineError):
    """An event carried a timestamp at or before the last applied one."""


class DuplicateTriggerIgnored(ExitEngineError):
    """A trigger that already fired was requested again."""


# =============================================================================
# External service errors
# =============================================================================

class SwapServiceError(ExitEngineError):
    """Base class for swap execution service failures."""

    retryable = True


class NoRoute(SwapServiceError):
    """The aggregator found no route for the requested pair and amount."""


class NetworkError(SwapServiceError):
    """Transport failure or timeout talking to an external service."""


class SlippageExceeded(SwapServiceError):
    """The swap moved beyond the accepted slippage before landing."""


class InsufficientFunds(SwapServiceError):
    """The wallet does not hold the amount being sold."""

    retryable = False


class PriceOracleError(ExitEngineError):
    """Base class for price oracle failures."""


class NoData(PriceOracleError):
    """The oracle has no price for the asset."""


# =============================================================================
# Dispatch outcomes
# =============================================================================

class QuoteUnavailable(ExitEngineError):
    """Quote retries were exhausted."""

    def __init__(self, message: str, original: Optional[Exception] = None):
        super().__init__(message)
        self.original = original


class ExecutionFailed(ExitEngineError):
    """Swap retries were exhausted or the failure was not retryable."""

    def __init__(self, message: str, original: Optional[Exception] = None):
        super().__init__(message)
        self.original = original
