"""Trading error taxonomy.

- TradeValidationError: malformed trade parameters. Surfaced, never retried.
  RecordNotFound narrows it to an unknown id.
- ExchangeRejection: the exchange refused the instruction (invalid odds,
  insufficient funds). Terminal for the trade.
- ExchangeUnavailable: no usable answer after bounded retries. The outcome
  of the call is unknown and must be reconciled before deciding anything.
- TransitionConflict: the stored status/version did not match the expected
  pre-state. The caller must re-read before trying again.
- BetAlreadySettled: settlement attempted on a terminal manual bet.
"""


class TradingError(Exception):
    """Base class for trading errors."""

    pass


class TradeValidationError(TradingError):
    """Trade parameters are missing or invalid."""

    pass


class RecordNotFound(TradeValidationError):
    """The referenced trade, bet or event does not exist."""

    pass


class ExchangeError(TradingError):
    """Base class for errors reported by the exchange gateway."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class ExchangeRejection(ExchangeError):
    """The exchange rejected the instruction. Not retryable."""

    pass


class ExchangeUnavailable(ExchangeError):
    """Transient failure persisted past the retry budget. Outcome unknown."""

    pass


class TransitionConflict(TradingError):
    """Compare-and-swap on a trade's status/version failed."""

    def __init__(
        self,
        trade_id: int,
        expected_status: str,
        actual_status: str | None = None,
        message: str | None = None,
    ):
        super().__init__(
            message
            or f"Trade {trade_id} is not in status '{expected_status}'"
            + (f" (found '{actual_status}')" if actual_status else "")
        )
        self.trade_id = trade_id
        self.expected_status = expected_status
        self.actual_status = actual_status


class BetAlreadySettled(TradingError):
    """A manual bet has already reached a terminal status."""

    def __init__(self, bet_id: int, status: str):
        super().__init__(f"Bet {bet_id} is already settled as '{status}'")
        self.bet_id = bet_id
        self.status = status
