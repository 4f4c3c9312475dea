"""Quote normalization and storage."""

from edgeline.services.quotes.normalize import (
    NormalizedQuote,
    QuoteValidationError,
    normalize_quote,
    normalize_quotes,
)

__all__ = [
    "NormalizedQuote",
    "QuoteValidationError",
    "normalize_quote",
    "normalize_quotes",
]
