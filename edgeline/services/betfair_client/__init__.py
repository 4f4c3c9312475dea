"""Betfair API client module."""

from edgeline.services.betfair_client.api import BetfairAPIError, BetfairClient
from edgeline.services.betfair_client.auth import BetfairAuth
from edgeline.services.betfair_client.gateway import BetfairGateway
from edgeline.services.betfair_client.rate_limiter import BetfairRateLimiter

__all__ = [
    "BetfairAPIError",
    "BetfairClient",
    "BetfairAuth",
    "BetfairGateway",
    "BetfairRateLimiter",
]
