"""Automated back-then-hedge trading."""

from edgeline.services.trading.engine import TradeLifecycleEngine, evaluate_trade
from edgeline.services.trading.errors import (
    BetAlreadySettled,
    ExchangeRejection,
    ExchangeUnavailable,
    TradeValidationError,
    TransitionConflict,
)
from edgeline.services.trading.states import TradeStatus

__all__ = [
    "BetAlreadySettled",
    "ExchangeRejection",
    "ExchangeUnavailable",
    "TradeLifecycleEngine",
    "TradeStatus",
    "TradeValidationError",
    "TransitionConflict",
    "evaluate_trade",
]
