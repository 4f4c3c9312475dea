"""Quote normalization.

Providers deliver loosely shaped records. Everything entering the quote store
passes through NormalizedQuote first; records that fail validation are
quarantined (logged and counted) instead of reaching the fair price model.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

logger = structlog.get_logger(__name__)


class QuoteValidationError(ValueError):
    """A raw quote record could not be normalized."""

    def __init__(self, message: str, record: Any = None):
        super().__init__(message)
        self.record = record


class NormalizedQuote(BaseModel):
    """Strict quote shape shared by every provider adapter."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    event_external_id: str = Field(
        min_length=1, validation_alias=AliasChoices("event_external_id", "event_id")
    )
    market: str = Field(min_length=1, validation_alias=AliasChoices("market", "market_key"))
    selection: str = Field(min_length=1, validation_alias=AliasChoices("selection", "name"))
    bookmaker: str = Field(min_length=1, validation_alias=AliasChoices("bookmaker", "source"))
    price: float = Field(
        gt=1.0,
        allow_inf_nan=False,
        validation_alias=AliasChoices("price", "decimal_odds"),
    )
    point: float | None = None
    observed_at: datetime = Field(
        validation_alias=AliasChoices("observed_at", "taken_at", "last_update")
    )
    is_exchange: bool = False
    raw: dict[str, Any] | None = None

    @field_validator("observed_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @model_validator(mode="before")
    @classmethod
    def _qualify_market(cls, data: Any) -> Any:
        # Each line of a totals/spreads market is its own set of selections
        if not isinstance(data, dict):
            return data
        point = data.get("point")
        market = data.get("market", data.get("market_key"))
        if point is None or not isinstance(market, str) or "@" in market:
            return data
        try:
            qualified = f"{market}@{float(point):g}"
        except (TypeError, ValueError):
            return data
        data = dict(data)
        data.pop("market_key", None)
        data["market"] = qualified
        return data


@dataclass
class QuarantinedRecord:
    """A raw record that was rejected, with the reason."""

    record: Any
    reason: str


@dataclass
class NormalizationResult:
    """Output of normalizing one provider batch."""

    quotes: list[NormalizedQuote] = field(default_factory=list)
    quarantined: list[QuarantinedRecord] = field(default_factory=list)


def normalize_quote(record: Any) -> NormalizedQuote:
    """Normalize a single raw record, raising QuoteValidationError if malformed."""
    if not isinstance(record, dict):
        raise QuoteValidationError(
            f"Expected a mapping, got {type(record).__name__}", record
        )
    try:
        return NormalizedQuote.model_validate(record)
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(loc) for loc in err["loc"]) or "record" for err in e.errors()
        )
        raise QuoteValidationError(f"Invalid quote fields: {fields}", record) from e


def normalize_quotes(records: list[Any]) -> NormalizationResult:
    """Normalize a provider batch, quarantining malformed records."""
    result = NormalizationResult()
    for record in records:
        try:
            result.quotes.append(normalize_quote(record))
        except QuoteValidationError as e:
            result.quarantined.append(QuarantinedRecord(record=record, reason=str(e)))
            logger.warning("quote_quarantined", reason=str(e))
    return result
