"""Trading configuration.

Immutable parameter sets for the fair price model, the edge detector, the
automated strategy and the exchange retry policy. Components receive these
at construction; nothing reads global mutable state at evaluation time.

Values come from defaults.yaml (see Settings.config_path); tests build their
own instances directly.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from typing import Any

from edgeline.config.settings import get_settings


@dataclass(frozen=True)
class FairPriceConfig:
    """Parameters for de-vigged consensus pricing."""
    max_quote_age_seconds: int = 1800
    min_sources: int = 2
    epsilon: float = 1e-6
    exchange_stability_min: float = 0.98
    exchange_stability_max: float = 1.02


@dataclass(frozen=True)
class TierThreshold:
    """Edge tier: candidates with edge_pp >= min_edge_pp get this name."""
    name: str
    min_edge_pp: float


DEFAULT_TIERS = (
    TierThreshold("high", 5.0),
    TierThreshold("medium", 3.0),
    TierThreshold("low", 0.0),
)


@dataclass(frozen=True)
class EdgeConfig:
    """Edge detector thresholds.

    Tiers are evaluated high-to-low and the first match wins, so they are
    stored sorted by descending threshold regardless of input order.
    """
    min_edge_pp: float = 1.0
    exchange_commission: float = 0.02
    # Compare each bookmaker against a consensus that excludes its own market
    exclude_own_book: bool = False
    tiers: tuple[TierThreshold, ...] = DEFAULT_TIERS

    def __post_init__(self) -> None:
        if not self.tiers:
            raise ValueError("At least one edge tier is required")
        ordered = tuple(sorted(self.tiers, key=lambda t: t.min_edge_pp, reverse=True))
        object.__setattr__(self, "tiers", ordered)


@dataclass(frozen=True)
class IngestionConfig:
    """What the odds poller asks the provider for."""
    sports: tuple[str, ...] = ("soccer_epl",)
    regions: tuple[str, ...] = ("uk", "eu")
    markets: tuple[str, ...] = ("h2h", "totals")
    # Bookmaker keys that are exchanges (commission-adjusted, stability-checked)
    exchanges: tuple[str, ...] = ("betfair_ex_uk", "betfair_ex_eu", "matchbook", "smarkets")
    # Detection only considers quotes observed this recently
    fresh_quote_seconds: int = 600


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for outbound exchange calls."""
    max_attempts: int = 4
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 8.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (0-based)."""
        return min(self.max_delay_seconds, self.base_delay_seconds * 2**attempt)

    def worst_case_seconds(self, request_timeout: float) -> float:
        """Longest one call can take when every attempt times out."""
        backoff = sum(self.delay_for(attempt) for attempt in range(self.max_attempts - 1))
        return self.max_attempts * request_timeout + backoff


@dataclass(frozen=True)
class StrategyConfig:
    """Parameters of the automated back-then-hedge strategy.

    Timing is expressed relative to kickoff:
    - back_lead_minutes: earliest point the back order may be placed
    - hedge_cutoff_minutes: unconditional lay regardless of margin
    - missed_window_minutes: scheduled trades this far past kickoff are cancelled
    """
    key: str = "epl_under25"
    enabled: bool = True
    market_type: str = "OVER_UNDER_25"
    runner_name: str = "Under 2.5 Goals"
    competition_ids: tuple[str, ...] = ("10932509",)
    default_stake: Decimal = Decimal("10.00")
    min_back_price: Decimal = Decimal("2.0")
    min_margin: Decimal = Decimal("0.50")
    commission_rate: Decimal = Decimal("0.02")
    back_lead_minutes: int = 60
    hedge_cutoff_minutes: int = 30
    missed_window_minutes: int = 10
    fixture_lookahead_days: int = 7
    max_concurrent_trades: int = 8

    def __post_init__(self) -> None:
        if self.hedge_cutoff_minutes >= self.back_lead_minutes:
            raise ValueError(
                "hedge_cutoff_minutes must be smaller than back_lead_minutes"
            )
        if self.default_stake <= 0:
            raise ValueError("default_stake must be positive")


@dataclass(frozen=True)
class TradingConfig:
    """Complete configuration passed into pricing, detection and trading."""
    fair_price: FairPriceConfig = field(default_factory=FairPriceConfig)
    edge: EdgeConfig = field(default_factory=EdgeConfig)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)


def _decimals(section: dict[str, Any], keys: tuple[str, ...]) -> dict[str, Any]:
    converted = dict(section)
    for key in keys:
        if key in converted:
            converted[key] = Decimal(str(converted[key]))
    return converted


def build_trading_config(raw: dict[str, Any]) -> TradingConfig:
    """Build a TradingConfig from the parsed defaults.yaml mapping."""
    edge_raw = dict(raw.get("edge", {}))
    tiers_raw = edge_raw.pop("tiers", None)
    if tiers_raw:
        edge_raw["tiers"] = tuple(
            TierThreshold(name=t["name"], min_edge_pp=float(t["min_edge_pp"]))
            for t in tiers_raw
        )

    strategy_raw = _decimals(
        raw.get("strategy", {}),
        ("default_stake", "min_back_price", "min_margin", "commission_rate"),
    )
    if "competition_ids" in strategy_raw:
        strategy_raw["competition_ids"] = tuple(
            str(c) for c in strategy_raw["competition_ids"]
        )

    return TradingConfig(
        fair_price=FairPriceConfig(**raw.get("fair_price", {})),
        edge=EdgeConfig(**edge_raw),
        strategy=StrategyConfig(**strategy_raw),
        retry=RetryPolicy(**raw.get("retry", {})),
        ingestion=IngestionConfig(
            **{
                key: tuple(value) if isinstance(value, list) else value
                for key, value in raw.get("ingestion", {}).items()
            }
        ),
    )


@lru_cache
def get_trading_config() -> TradingConfig:
    """Get the trading configuration loaded from defaults.yaml."""
    return build_trading_config(get_settings().load_defaults_config())
