"""Database models for Edgeline."""

from edgeline.models.base import Base, async_session_factory, engine, get_db
from edgeline.models.domain import (
    Bet,
    Candidate,
    Event,
    JobRun,
    Quote,
    StrategyTrade,
    StrategyTradeEvent,
)

__all__ = [
    # Base
    "Base",
    "engine",
    "async_session_factory",
    "get_db",
    # Domain models
    "Event",
    "Quote",
    "Candidate",
    "StrategyTrade",
    "StrategyTradeEvent",
    "Bet",
    "JobRun",
]
