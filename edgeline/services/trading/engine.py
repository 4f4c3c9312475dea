"""Trade lifecycle engine.

Drives StrategyTrade rows from scheduling through hedging to settlement.

Each monitoring cycle, for every open trade:
1. Observe: read the back order's fill and the top of book (exchange reads).
2. Decide: `evaluate_trade` is a pure function of (trade, observation, now,
   config) returning one action.
3. Act: perform the exchange call, then persist the resulting transition with
   a compare-and-swap. The exchange confirmation is always known before the
   database is told about it.

CRITICAL: nothing here ever marks a trade cancelled while the exchange
reports matched stake on the back leg, and nothing marks it hedged until the
lay leg is fully matched. A resting lay keeps the trade active and is polled
every cycle like the back order.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from edgeline.config.trading import StrategyConfig
from edgeline.models import StrategyTrade
from edgeline.models.base import ensure_utc
from edgeline.services.pricing.odds import round_to_tick
from edgeline.services.quotes.store import dialect_insert
from edgeline.services.trading import repository
from edgeline.services.trading.errors import (
    ExchangeError,
    ExchangeRejection,
    ExchangeUnavailable,
    RecordNotFound,
    TradeValidationError,
    TransitionConflict,
)
from edgeline.services.trading.gateway import (
    CancelResult,
    ExchangeGateway,
    FixtureFeed,
    OrderRequest,
    OrderSide,
    OrderState,
    RunnerOutcome,
    SettlementFeed,
    TopOfBook,
)
from edgeline.services.trading.hedging import (
    ZERO,
    HedgeQuote,
    HedgeReason,
    hedge_trigger,
    quote_hedge,
    unhedged_pnl,
)
from edgeline.services.trading.states import MONITORED_STATUSES, TradeStatus, can_cancel

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# PURE EVALUATION
# ============================================================================


@dataclass(frozen=True)
class TradeSnapshot:
    """Immutable view of the fields evaluation depends on."""

    id: int
    status: TradeStatus
    version: int
    kickoff_at: datetime
    back_price: Decimal | None = None
    back_size: Decimal | None = None
    back_matched_size: Decimal | None = None
    lay_order_ref: str | None = None
    lay_size: Decimal | None = None
    lay_matched_size: Decimal | None = None

    @classmethod
    def from_trade(cls, trade: StrategyTrade) -> "TradeSnapshot":
        return cls(
            id=trade.id,
            status=TradeStatus(trade.status),
            version=trade.version,
            kickoff_at=ensure_utc(trade.kickoff_at),
            back_price=trade.back_price,
            back_size=trade.back_size,
            back_matched_size=trade.back_matched_size,
            lay_order_ref=trade.lay_order_ref,
            lay_size=trade.lay_size,
            lay_matched_size=trade.lay_matched_size,
        )


@dataclass(frozen=True)
class Observation:
    """Exchange state gathered for one trade in one cycle."""

    book: TopOfBook | None = None
    back_order: OrderState | None = None
    lay_order: OrderState | None = None


@dataclass(frozen=True)
class Wait:
    reason: str


@dataclass(frozen=True)
class PlaceBack:
    price: Decimal
    size: Decimal


@dataclass(frozen=True)
class PlaceLay:
    quote: HedgeQuote
    reason: HedgeReason
    back_stake: Decimal


@dataclass(frozen=True)
class ConfirmHedge:
    """The resting lay order is now fully matched."""

    lay_matched: Decimal


@dataclass(frozen=True)
class AbandonLay:
    """The resting lay can no longer complete; close it and record the exposure."""

    reason: str


@dataclass(frozen=True)
class CancelTrade:
    """Cancel a scheduled trade that never placed an order."""

    reason: str


@dataclass(frozen=True)
class CancelBackOrder:
    """Cancel an active trade's back order; applies only on a confirmed zero fill."""

    reason: str


Action = Wait | PlaceBack | PlaceLay | ConfirmHedge | AbandonLay | CancelTrade | CancelBackOrder


def minutes_until(kickoff_at: datetime, now: datetime) -> float:
    return (kickoff_at - now).total_seconds() / 60.0


def evaluate_lay(trade: TradeSnapshot, observation: Observation, minutes: float) -> Action:
    """Decide what to do with an active trade whose lay order is resting."""
    lay_order = observation.lay_order
    lay_matched = trade.lay_matched_size or ZERO
    if lay_order is not None:
        lay_matched = lay_order.size_matched

    if trade.lay_size is not None and lay_matched >= trade.lay_size:
        return ConfirmHedge(lay_matched)
    if minutes <= 0:
        return AbandonLay("Lay not fully matched at kickoff")
    if lay_order is not None and lay_order.is_complete:
        return AbandonLay("Lay order closed before it fully matched")
    return Wait(f"awaiting lay fill ({lay_matched} of {trade.lay_size})")


def evaluate_trade(
    trade: TradeSnapshot,
    observation: Observation,
    now: datetime,
    config: StrategyConfig,
) -> Action:
    """
    Decide the next action for one trade. No I/O.

    scheduled:
        more than missed_window_minutes past kickoff -> cancel
        inside (hedge_cutoff, back_lead] with a back price >= min_back_price
            -> back default_stake at the best price, rounded to a tick
    active:
        lay resting -> confirm the hedge once it is fully matched; abandon it
            at kickoff or when the order closes short
        nothing matched and kickoff reached -> cancel the back order
        something matched -> price the hedge on the matched stake and lay
            when margin >= min_margin or the hedge cutoff is reached
    """
    minutes = minutes_until(trade.kickoff_at, now)
    book = observation.book

    if trade.status == TradeStatus.SCHEDULED:
        if minutes < -config.missed_window_minutes:
            return CancelTrade("Missed pre-match window")
        if minutes > config.back_lead_minutes:
            return Wait("before back window")
        if minutes <= config.hedge_cutoff_minutes:
            return Wait("back window closed")
        if book is None or not book.is_open or book.in_play or book.best_back is None:
            return Wait("no back price available")
        if book.best_back < config.min_back_price:
            return Wait("back price below minimum")
        return PlaceBack(price=round_to_tick(book.best_back), size=config.default_stake)

    if trade.status == TradeStatus.ACTIVE:
        if trade.lay_order_ref is not None:
            return evaluate_lay(trade, observation, minutes)

        matched = trade.back_matched_size or ZERO
        if observation.back_order is not None:
            matched = observation.back_order.size_matched

        if matched <= 0:
            if minutes <= 0:
                return CancelBackOrder("Back order unmatched at kickoff")
            return Wait("awaiting back fill")

        if book is None or not book.is_open or book.best_lay is None:
            return Wait("no lay price available")

        back_price = trade.back_price
        if observation.back_order and observation.back_order.average_price_matched:
            back_price = observation.back_order.average_price_matched
        if back_price is None:
            raise TradeValidationError(f"Trade {trade.id} is active without a back price")

        quote = quote_hedge(matched, back_price, book.best_lay, config.commission_rate)
        reason = hedge_trigger(quote, minutes, config)
        if reason is None:
            return Wait(f"margin {quote.margin} below minimum {config.min_margin}")
        return PlaceLay(quote=quote, reason=reason, back_stake=matched)

    return Wait(f"not monitored in status {trade.status.value}")


# ============================================================================
# ENGINE
# ============================================================================


@dataclass
class CancelOutcome:
    """Result of a manual cancel request."""

    trade_id: int
    applied: bool
    status: str
    reason: str


@dataclass
class CycleStats:
    trades_checked: int = 0
    backs_placed: int = 0
    lays_placed: int = 0
    hedged: int = 0
    cancelled: int = 0
    failed: int = 0
    waiting: int = 0
    conflicts: int = 0
    errors: int = 0
    outcomes: dict[int, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, int]:
        return {
            "trades_checked": self.trades_checked,
            "backs_placed": self.backs_placed,
            "lays_placed": self.lays_placed,
            "hedged": self.hedged,
            "cancelled": self.cancelled,
            "failed": self.failed,
            "waiting": self.waiting,
            "conflicts": self.conflicts,
            "errors": self.errors,
        }


class TradeLifecycleEngine:
    """
    Owns every StrategyTrade mutation for one strategy.

    Each trade is processed in its own session and transaction so a failure
    or conflict on one trade never rolls back another.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: ExchangeGateway,
        config: StrategyConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.config = config
        self.clock = clock

    def _customer_ref(self, trade_id: int, side: OrderSide) -> str:
        # Betfair limits customer refs to 32 characters
        return f"{self.config.key[:20]}-{trade_id}-{side.value[0]}"

    # ------------------------------------------------------------------
    # Fixtures
    # ------------------------------------------------------------------

    async def sync_fixtures(self, feed: FixtureFeed, now: datetime | None = None) -> dict[str, int]:
        """Create a scheduled trade for each upcoming fixture; refresh kickoffs."""
        now = now or self.clock()
        end = now + timedelta(days=self.config.fixture_lookahead_days)
        fixtures = await feed.list_fixtures(list(self.config.competition_ids), now, end)
        stats = {"fixtures": len(fixtures), "created": 0, "updated": 0, "errors": 0}

        async with self.session_factory() as db:
            result = await db.execute(
                select(StrategyTrade).where(
                    StrategyTrade.strategy_key == self.config.key,
                    StrategyTrade.runner_name == self.config.runner_name,
                    StrategyTrade.betfair_event_id.in_([f.event_id for f in fixtures]),
                )
            )
            existing = {t.betfair_event_id: t for t in result.scalars().all()}

            for fixture in fixtures:
                try:
                    trade = existing.get(fixture.event_id)
                    if trade is None:
                        stmt = (
                            dialect_insert(db, StrategyTrade)
                            .values(
                                strategy_key=self.config.key,
                                betfair_event_id=fixture.event_id,
                                runner_name=self.config.runner_name,
                                event_name=fixture.name,
                                competition_name=fixture.competition_name,
                                kickoff_at=fixture.kickoff_at,
                                status=TradeStatus.SCHEDULED.value,
                                version=0,
                            )
                            .on_conflict_do_nothing(
                                index_elements=["strategy_key", "betfair_event_id", "runner_name"]
                            )
                            .returning(StrategyTrade.id)
                        )
                        trade_id = (await db.execute(stmt)).scalar_one_or_none()
                        if trade_id is not None:
                            await repository.record_event(
                                db, trade_id, "TRADE_CREATED", {"fixture": fixture.name}
                            )
                            stats["created"] += 1
                    elif (
                        trade.status == TradeStatus.SCHEDULED.value
                        and ensure_utc(trade.kickoff_at) != fixture.kickoff_at
                    ):
                        await repository.update_fields(db, trade, kickoff_at=fixture.kickoff_at)
                        stats["updated"] += 1
                except TransitionConflict as e:
                    logger.warning("fixture_sync_conflict", event_id=fixture.event_id, error=str(e))
                    stats["errors"] += 1
            await db.commit()

        logger.info("fixtures_synced", strategy=self.config.key, **stats)
        return stats

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def run_cycle(self, now: datetime | None = None) -> dict[str, int]:
        """Evaluate every open trade once. Trades proceed concurrently."""
        now = now or self.clock()
        async with self.session_factory() as db:
            trades = await repository.trades_in_status(
                db, sorted(MONITORED_STATUSES), strategy_key=self.config.key
            )
            trade_ids = [t.id for t in trades]

        stats = CycleStats()
        semaphore = asyncio.Semaphore(self.config.max_concurrent_trades)

        async def guarded(trade_id: int) -> None:
            async with semaphore:
                outcome = await self.process_trade(trade_id, now)
            stats.outcomes[trade_id] = outcome

        await asyncio.gather(*(guarded(trade_id) for trade_id in trade_ids))

        stats.trades_checked = len(trade_ids)
        for outcome in stats.outcomes.values():
            if outcome == "back_placed":
                stats.backs_placed += 1
            elif outcome == "lay_placed":
                stats.lays_placed += 1
            elif outcome in ("hedged", "cancelled", "failed", "conflicts", "errors"):
                setattr(stats, outcome, getattr(stats, outcome) + 1)
            else:
                stats.waiting += 1

        logger.info("trade_cycle_complete", strategy=self.config.key, **stats.to_dict())
        return stats.to_dict()

    async def process_trade(self, trade_id: int, now: datetime) -> str:
        """
        Observe, evaluate and act on one trade.

        Returns a short outcome label. Errors are contained per trade.
        """
        async with self.session_factory() as db:
            try:
                outcome = await self._process(db, trade_id, now)
                await db.commit()
                return outcome
            except TransitionConflict as e:
                await db.rollback()
                logger.warning("trade_transition_conflict", trade_id=trade_id, error=str(e))
                await self._record_conflict(trade_id, str(e))
                return "conflicts"
            except Exception as e:
                await db.rollback()
                logger.error("trade_processing_failed", trade_id=trade_id, error=str(e))
                return "errors"

    async def _process(self, db: AsyncSession, trade_id: int, now: datetime) -> str:
        trade = await repository.get_trade(db, trade_id)
        if trade is None or TradeStatus(trade.status) not in MONITORED_STATUSES:
            return "skipped"

        try:
            trade, observation = await self._observe(db, trade, now)
        except ExchangeError as e:
            return await self._observe_failed(db, trade_id, now, e)

        action = evaluate_trade(TradeSnapshot.from_trade(trade), observation, now, self.config)

        if isinstance(action, Wait):
            logger.debug("trade_waiting", trade_id=trade.id, reason=action.reason)
            return "waiting"
        if isinstance(action, CancelTrade):
            await repository.transition(
                db, trade, TradeStatus.CANCELLED, last_error=action.reason
            )
            await repository.record_event(db, trade.id, "CANCELLED", {"reason": action.reason})
            logger.info("trade_cancelled", trade_id=trade.id, reason=action.reason)
            return "cancelled"
        if isinstance(action, PlaceBack):
            return await self._place_back(db, trade, action)
        if isinstance(action, CancelBackOrder):
            outcome = await self._cancel_active(db, trade, action.reason)
            return "cancelled" if outcome.applied else "waiting"
        if isinstance(action, PlaceLay):
            return await self._place_lay(db, trade, action, observation, now)
        if isinstance(action, ConfirmHedge):
            lay_order = observation.lay_order
            lay_price = lay_order.average_price_matched if lay_order else None
            return await self._confirm_hedge(db, trade, action.lay_matched, lay_price)
        if isinstance(action, AbandonLay):
            return await self._abandon_lay(db, trade, observation, action.reason)
        raise TradeValidationError(f"Unhandled action {action!r}")

    async def _observe(
        self, db: AsyncSession, trade: StrategyTrade, now: datetime
    ) -> tuple[StrategyTrade, Observation]:
        """Gather exchange state; bind the market and sync leg fills as needed."""
        minutes = minutes_until(ensure_utc(trade.kickoff_at), now)

        if trade.status == TradeStatus.SCHEDULED.value:
            in_window = self.config.hedge_cutoff_minutes < minutes <= self.config.back_lead_minutes
            if not in_window:
                return trade, Observation()
            if trade.betfair_market_id is None or trade.selection_id is None:
                ref = await self.gateway.resolve_market(
                    trade.betfair_event_id, self.config.market_type, self.config.runner_name
                )
                if ref is None:
                    return trade, Observation()
                trade = await repository.update_fields(
                    db, trade, betfair_market_id=ref.market_id, selection_id=ref.selection_id
                )
            book = await self.gateway.query_best_prices(trade.betfair_market_id, trade.selection_id)
            return trade, Observation(book=book)

        # active
        back_order = await self.gateway.get_order(trade.back_order_ref)
        if back_order is not None and back_order.size_matched != (trade.back_matched_size or ZERO):
            values: dict[str, Any] = {"back_matched_size": back_order.size_matched}
            if back_order.average_price_matched:
                values["back_price"] = back_order.average_price_matched
            trade = await repository.update_fields(db, trade, **values)
            await repository.record_event(
                db,
                trade.id,
                "BACK_FILL_SYNCED",
                {"size_matched": back_order.size_matched, "status": back_order.status},
            )

        if trade.lay_order_ref is not None:
            lay_order = await self.gateway.get_order(trade.lay_order_ref)
            if lay_order is not None and lay_order.size_matched != (trade.lay_matched_size or ZERO):
                trade = await repository.update_fields(
                    db, trade, lay_matched_size=lay_order.size_matched
                )
                await repository.record_event(
                    db,
                    trade.id,
                    "LAY_FILL_SYNCED",
                    {"size_matched": lay_order.size_matched, "status": lay_order.status},
                )
            return trade, Observation(back_order=back_order, lay_order=lay_order)

        matched = back_order.size_matched if back_order else (trade.back_matched_size or ZERO)
        book = None
        if matched > 0:
            book = await self.gateway.query_best_prices(trade.betfair_market_id, trade.selection_id)
        return trade, Observation(book=book, back_order=back_order)

    async def _observe_failed(
        self, db: AsyncSession, trade_id: int, now: datetime, error: ExchangeError
    ) -> str:
        """
        An exchange read gave no usable answer.

        Rejections fail the trade, as does an exhausted retry budget on a
        scheduled trade. An active trade keeps monitoring until kickoff so
        its back position can still be laid off; the error is recorded on
        the row each time.
        """
        trade = await repository.get_trade(db, trade_id)
        if trade is None:
            raise RecordNotFound(f"Trade {trade_id} not found")
        message = f"Exchange read failed: {error}"

        before_kickoff = minutes_until(ensure_utc(trade.kickoff_at), now) > 0
        if (
            isinstance(error, ExchangeUnavailable)
            and trade.status == TradeStatus.ACTIVE.value
            and before_kickoff
        ):
            await repository.update_fields(db, trade, last_error=message)
            await repository.record_event(
                db, trade.id, "EXCHANGE_UNAVAILABLE", {"error": str(error), "code": error.code}
            )
            logger.warning("trade_exchange_unavailable", trade_id=trade.id, error=str(error))
            return "errors"

        return await self._fail(db, trade, message, error)

    async def _place_back(self, db: AsyncSession, trade: StrategyTrade, action: PlaceBack) -> str:
        ref = self._customer_ref(trade.id, OrderSide.BACK)
        request = OrderRequest(
            market_id=trade.betfair_market_id,
            selection_id=trade.selection_id,
            side=OrderSide.BACK,
            price=action.price,
            size=action.size,
            customer_ref=ref,
        )

        try:
            order = await self._place_or_reconcile(request)
        except ExchangeError as e:
            return await self._fail(db, trade, f"Back order failed: {e}", e)

        await self._persist(
            db,
            trade,
            TradeStatus.ACTIVE,
            back_order_ref=order.order_id,
            back_customer_ref=ref,
            back_price=order.average_price_matched or action.price,
            back_size=action.size,
            back_matched_size=order.size_matched,
            last_error=None,
        )
        await repository.record_event(
            db,
            trade.id,
            "BACK_PLACED",
            {"price": action.price, "size": action.size, "order_id": order.order_id,
             "size_matched": order.size_matched},
        )
        logger.info("trade_back_placed", trade_id=trade.id, price=str(action.price))
        return "back_placed"

    async def _place_lay(
        self,
        db: AsyncSession,
        trade: StrategyTrade,
        action: PlaceLay,
        observation: Observation,
        now: datetime,
    ) -> str:
        quote = action.quote
        back_stake = action.back_stake
        state_data = dict(trade.state_data or {})

        # Any unmatched remainder of the back order is cancelled before laying off
        back_order = observation.back_order
        if back_order is not None and back_order.size_remaining > 0:
            confirmed: Decimal | None = None
            try:
                result = await self.gateway.cancel_order(trade.betfair_market_id, trade.back_order_ref)
                confirmed = result.size_matched
            except ExchangeError as e:
                minutes = minutes_until(ensure_utc(trade.kickoff_at), now)
                if minutes > self.config.hedge_cutoff_minutes:
                    message = f"Back remainder cancel failed, hedge deferred: {e}"
                    await repository.update_fields(db, trade, last_error=message)
                    await repository.record_event(
                        db, trade.id, "BACK_REMAINDER_CANCEL_FAILED", {"error": str(e)}
                    )
                    logger.warning("back_remainder_cancel_failed", trade_id=trade.id, error=str(e))
                    return "waiting"
                # Past the cutoff the hedge cannot wait; size it on a fresh read
                confirmed = await self._read_back_fill(trade)
                state_data["back_remainder_uncancelled"] = True
                logger.warning("back_remainder_left_open", trade_id=trade.id, error=str(e))

            if confirmed is not None and confirmed > 0 and confirmed != back_stake:
                back_stake = confirmed
                quote = quote_hedge(
                    back_stake,
                    trade.back_price,
                    quote.lay_price,
                    self.config.commission_rate,
                )

        ref = self._customer_ref(trade.id, OrderSide.LAY)
        request = OrderRequest(
            market_id=trade.betfair_market_id,
            selection_id=trade.selection_id,
            side=OrderSide.LAY,
            price=quote.lay_price,
            size=quote.lay_stake,
            customer_ref=ref,
        )

        try:
            order = await self._place_or_reconcile(request)
        except ExchangeError as e:
            return await self._fail(
                db, trade, f"Lay order failed, back position unhedged: {e}", e
            )

        if order.size_matched >= quote.lay_stake:
            if order.average_price_matched and order.average_price_matched != quote.lay_price:
                quote = quote_hedge(
                    back_stake,
                    trade.back_price,
                    order.average_price_matched,
                    self.config.commission_rate,
                    lay_stake=quote.lay_stake,
                )
            return await self._mark_hedged(
                db,
                trade,
                quote,
                action.reason,
                lay_matched=order.size_matched,
                back_matched_size=back_stake,
                lay_order_ref=order.order_id,
                lay_customer_ref=ref,
                state_data=repository.jsonable(state_data) or None,
            )

        # Resting or partly matched: the trade stays active until the lay fills
        state_data["hedge_back_stake"] = str(back_stake)
        await self._persist(
            db,
            trade,
            None,
            back_matched_size=back_stake,
            lay_order_ref=order.order_id,
            lay_customer_ref=ref,
            lay_price=quote.lay_price,
            lay_size=quote.lay_stake,
            lay_matched_size=order.size_matched,
            hedge_reason=action.reason.value,
            state_data=repository.jsonable(state_data),
            last_error=None,
        )
        await repository.record_event(
            db,
            trade.id,
            "LAY_PLACED",
            {
                "reason": action.reason,
                "lay_price": quote.lay_price,
                "lay_stake": quote.lay_stake,
                "size_matched": order.size_matched,
                "order_id": order.order_id,
            },
        )
        logger.info(
            "trade_lay_resting",
            trade_id=trade.id,
            lay_stake=str(quote.lay_stake),
            size_matched=str(order.size_matched),
        )
        return "lay_placed"

    async def _read_back_fill(self, trade: StrategyTrade) -> Decimal | None:
        try:
            order = await self.gateway.get_order(trade.back_order_ref)
        except ExchangeError as e:
            logger.warning("back_fill_read_failed", trade_id=trade.id, error=str(e))
            return None
        return order.size_matched if order is not None else None

    async def _confirm_hedge(
        self,
        db: AsyncSession,
        trade: StrategyTrade,
        lay_matched: Decimal,
        lay_price: Decimal | None,
    ) -> str:
        """The resting lay is fully matched: lock the margin on what was hedged."""
        back_stake = trade.back_matched_size
        if trade.state_data and trade.state_data.get("hedge_back_stake"):
            back_stake = Decimal(trade.state_data["hedge_back_stake"])
        quote = quote_hedge(
            back_stake,
            trade.back_price,
            lay_price or trade.lay_price,
            self.config.commission_rate,
            lay_stake=trade.lay_size,
        )
        return await self._mark_hedged(
            db, trade, quote, HedgeReason(trade.hedge_reason), lay_matched=lay_matched
        )

    async def _mark_hedged(
        self,
        db: AsyncSession,
        trade: StrategyTrade,
        quote: HedgeQuote,
        reason: HedgeReason,
        lay_matched: Decimal,
        **values: Any,
    ) -> str:
        trade = await self._persist(
            db,
            trade,
            TradeStatus.HEDGED,
            lay_price=quote.lay_price,
            lay_size=quote.lay_stake,
            lay_matched_size=lay_matched,
            hedge_reason=reason.value,
            margin=quote.margin,
            commission_paid=quote.commission,
            last_error=None,
            **values,
        )
        await repository.record_event(
            db,
            trade.id,
            "HEDGED",
            {
                "reason": reason,
                "lay_price": quote.lay_price,
                "lay_stake": quote.lay_stake,
                "margin": quote.margin,
                "commission": quote.commission,
                "order_id": trade.lay_order_ref,
            },
        )
        logger.info(
            "trade_hedged",
            trade_id=trade.id,
            reason=reason.value,
            margin=str(quote.margin),
        )
        return "hedged"

    async def _abandon_lay(
        self,
        db: AsyncSession,
        trade: StrategyTrade,
        observation: Observation,
        reason: str,
    ) -> str:
        """
        Close a lay that will not complete.

        The unmatched remainder is cancelled first. A confirmed result fails
        the trade with whatever lay stake matched recorded, so settlement
        books the real exposure. An unconfirmed cancel keeps it active.
        """
        lay_order = observation.lay_order
        lay_matched = trade.lay_matched_size or ZERO
        if lay_order is not None:
            lay_matched = lay_order.size_matched

        if lay_order is None or not lay_order.is_complete:
            try:
                result = await self.gateway.cancel_order(trade.betfair_market_id, trade.lay_order_ref)
            except ExchangeError as e:
                return await self._lay_cancel_unconfirmed(db, trade, f"Lay cancel could not be confirmed: {e}")
            if result.size_matched is None:
                return await self._lay_cancel_unconfirmed(
                    db, trade, "Lay cancel sent but the lay fill could not be confirmed"
                )
            lay_matched = result.size_matched

        if trade.lay_size is not None and lay_matched >= trade.lay_size:
            return await self._confirm_hedge(db, trade, lay_matched, None)

        exposure = "unhedged" if lay_matched == 0 else "partly hedged"
        message = f"{reason}: lay matched {lay_matched} of {trade.lay_size}, back position {exposure}"
        return await self._fail(db, trade, message, lay_matched_size=lay_matched)

    async def _lay_cancel_unconfirmed(
        self, db: AsyncSession, trade: StrategyTrade, message: str
    ) -> str:
        await repository.update_fields(db, trade, last_error=message)
        await repository.record_event(db, trade.id, "LAY_CANCEL_UNCONFIRMED", {"error": message})
        logger.warning("trade_lay_cancel_unconfirmed", trade_id=trade.id, error=message)
        return "waiting"

    async def _place_or_reconcile(self, request: OrderRequest) -> OrderState:
        """
        Place an order. If the outcome is unknown, look the order up by its
        customer ref before giving up.
        """
        try:
            return await self.gateway.place_order(request)
        except ExchangeUnavailable as e:
            logger.warning(
                "order_outcome_unknown_reconciling",
                customer_ref=request.customer_ref,
                error=str(e),
            )
            found = await self.gateway.find_order(request.market_id, request.customer_ref)
            if found is None:
                raise ExchangeUnavailable(
                    f"{e}; no order found for {request.customer_ref}", e.code
                ) from e
            logger.info("order_reconciled", customer_ref=request.customer_ref, order_id=found.order_id)
            return found

    async def _fail(
        self,
        db: AsyncSession,
        trade: StrategyTrade,
        message: str,
        error: Exception | None = None,
        **values: Any,
    ) -> str:
        await repository.transition(db, trade, TradeStatus.FAILED, last_error=message, **values)
        await repository.record_event(
            db,
            trade.id,
            "FAILED",
            {
                "error": message,
                "rejected": isinstance(error, ExchangeRejection),
                "code": getattr(error, "code", None),
            },
        )
        logger.error("trade_failed", trade_id=trade.id, error=message)
        return "failed"

    async def _persist(
        self,
        db: AsyncSession,
        trade: StrategyTrade,
        target: TradeStatus | None,
        **values: Any,
    ) -> StrategyTrade:
        """
        Persist an exchange-confirmed change; `target` None keeps the status.

        If the CAS loses only on version (the status is unchanged, e.g. a
        cancel request recorded a fill meanwhile) the confirmed exchange
        fact is re-applied on the fresh row. A changed status is a real
        conflict and is raised.
        """

        async def write(current: StrategyTrade) -> StrategyTrade:
            if target is None:
                return await repository.update_fields(db, current, **values)
            return await repository.transition(db, current, target, **values)

        expected_status = trade.status
        try:
            return await write(trade)
        except TransitionConflict:
            current = await repository.get_trade(db, trade.id)
            if current is None or current.status != expected_status:
                raise
            logger.info("trade_version_moved_reapplying", trade_id=trade.id)
            return await write(current)

    async def _record_conflict(self, trade_id: int, message: str) -> None:
        async with self.session_factory() as db:
            await repository.record_event(db, trade_id, "TRANSITION_CONFLICT", {"error": message})
            await db.commit()

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_trade(self, trade_id: int, reason: str = "Cancelled manually") -> CancelOutcome:
        """
        Manual cancel.

        Raises:
            TradeValidationError: unknown trade
            TransitionConflict: the trade is hedged, settled or already terminal
        """
        async with self.session_factory() as db:
            trade = await repository.get_trade(db, trade_id)
            if trade is None:
                raise RecordNotFound(f"Trade {trade_id} not found")

            if not can_cancel(trade.status):
                await repository.record_event(
                    db, trade.id, "CANCEL_REJECTED", {"status": trade.status, "reason": reason}
                )
                await db.commit()
                raise TransitionConflict(
                    trade.id,
                    "scheduled or active",
                    actual_status=trade.status,
                    message=f"Trade {trade.id} is {trade.status} and can no longer be cancelled",
                )

            if trade.status == TradeStatus.SCHEDULED.value:
                await repository.transition(db, trade, TradeStatus.CANCELLED, last_error=reason)
                await repository.record_event(db, trade.id, "CANCELLED", {"reason": reason})
                await db.commit()
                return CancelOutcome(trade.id, True, TradeStatus.CANCELLED.value, reason)

            outcome = await self._cancel_active(db, trade, reason)
            await db.commit()
            return outcome

    async def _cancel_active(
        self, db: AsyncSession, trade: StrategyTrade, reason: str
    ) -> CancelOutcome:
        """
        Cancel the back order of an active trade.

        Only a confirmed zero fill cancels the trade. A reported fill keeps
        the trade active with the fill recorded; an unknown result keeps it
        active with the error recorded.
        """
        try:
            result = await self.gateway.cancel_order(trade.betfair_market_id, trade.back_order_ref)
        except ExchangeError as e:
            message = f"Cancel could not be confirmed: {e}"
            await repository.update_fields(db, trade, last_error=message)
            await repository.record_event(db, trade.id, "CANCEL_UNCONFIRMED", {"error": str(e)})
            logger.warning("trade_cancel_unconfirmed", trade_id=trade.id, error=str(e))
            return CancelOutcome(trade.id, False, trade.status, message)

        if self._confirmed_unmatched(trade, result):
            await self._persist(
                db, trade, TradeStatus.CANCELLED, back_matched_size=ZERO, last_error=reason
            )
            await repository.record_event(
                db, trade.id, "CANCELLED", {"reason": reason, "size_cancelled": result.size_cancelled}
            )
            logger.info("trade_cancelled", trade_id=trade.id, reason=reason)
            return CancelOutcome(trade.id, True, TradeStatus.CANCELLED.value, reason)

        if result.size_matched is not None and result.size_matched > 0:
            message = f"Cancel found {result.size_matched} matched on the back leg; trade remains active"
            await repository.update_fields(
                db, trade, back_matched_size=result.size_matched, last_error=message
            )
            await repository.record_event(
                db, trade.id, "CANCEL_FOUND_FILL", {"size_matched": result.size_matched}
            )
            logger.warning("trade_cancel_found_fill", trade_id=trade.id, size_matched=str(result.size_matched))
            return CancelOutcome(trade.id, False, trade.status, message)

        message = "Cancel sent but the back leg fill could not be confirmed"
        await repository.update_fields(db, trade, last_error=message)
        await repository.record_event(db, trade.id, "CANCEL_UNCONFIRMED", {"cancelled": result.cancelled})
        return CancelOutcome(trade.id, False, trade.status, message)

    @staticmethod
    def _confirmed_unmatched(trade: StrategyTrade, result: CancelResult) -> bool:
        if result.size_matched is not None:
            return result.size_matched == 0
        # Order gone from the book: zero fill only if the whole stake was cancelled
        return (
            result.cancelled
            and trade.back_size is not None
            and result.size_cancelled >= trade.back_size
        )

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def settle_trade(
        self, trade_id: int, outcome: RunnerOutcome, now: datetime | None = None
    ) -> StrategyTrade:
        """
        Record the realised result of a trade. Idempotent.

        hedged -> settled with realised P&L equal to the locked margin.
        A failed trade left holding matched back stake gets its result
        recorded once, without a status change, counting any lay stake
        that matched before the hedge was abandoned.
        """
        now = now or self.clock()
        async with self.session_factory() as db:
            trade = await repository.get_trade(db, trade_id)
            if trade is None:
                raise RecordNotFound(f"Trade {trade_id} not found")

            if trade.status == TradeStatus.SETTLED.value:
                return trade

            if trade.status == TradeStatus.HEDGED.value:
                try:
                    trade = await repository.transition(
                        db,
                        trade,
                        TradeStatus.SETTLED,
                        realised_pnl=trade.margin,
                        outcome=outcome.value,
                        settled_at=now,
                    )
                except TransitionConflict:
                    await db.rollback()
                    current = await repository.get_trade(db, trade_id)
                    if current is not None and current.status == TradeStatus.SETTLED.value:
                        return current
                    raise
                await repository.record_event(
                    db, trade.id, "SETTLED", {"outcome": outcome, "realised_pnl": trade.realised_pnl}
                )
                await db.commit()
                logger.info("trade_settled", trade_id=trade.id, pnl=str(trade.realised_pnl))
                return trade

            matched = trade.back_matched_size or ZERO
            if trade.status == TradeStatus.FAILED.value and matched > 0:
                if trade.realised_pnl is not None:
                    return trade
                pnl = unhedged_pnl(
                    matched,
                    trade.back_price,
                    outcome,
                    self.config.commission_rate,
                    lay_stake=trade.lay_matched_size or ZERO,
                    lay_price=trade.lay_price,
                )
                trade = await repository.update_fields(
                    db, trade, realised_pnl=pnl, outcome=outcome.value, settled_at=now
                )
                await repository.record_event(
                    db, trade.id, "UNHEDGED_SETTLED", {"outcome": outcome, "realised_pnl": pnl}
                )
                await db.commit()
                return trade

            raise TransitionConflict(
                trade.id,
                TradeStatus.HEDGED.value,
                actual_status=trade.status,
                message=f"Trade {trade.id} is {trade.status} and has nothing to settle",
            )

    async def settle_pending(
        self, feed: SettlementFeed, now: datetime | None = None
    ) -> dict[str, int]:
        """Settle every past-kickoff trade whose result the feed now knows."""
        now = now or self.clock()
        async with self.session_factory() as db:
            trades = await repository.trades_in_status(
                db,
                [TradeStatus.HEDGED, TradeStatus.FAILED],
                strategy_key=self.config.key,
                kickoff_before=now,
            )
            pending = [
                (t.id, t.betfair_market_id, t.selection_id)
                for t in trades
                if t.realised_pnl is None
                and t.betfair_market_id
                and t.selection_id
                and (t.status == TradeStatus.HEDGED.value or (t.back_matched_size or ZERO) > 0)
            ]

        stats = {"checked": len(pending), "settled": 0, "awaiting_result": 0, "errors": 0}
        for trade_id, market_id, selection_id in pending:
            try:
                outcome = await feed.runner_outcome(market_id, selection_id)
                if outcome is None:
                    stats["awaiting_result"] += 1
                    continue
                await self.settle_trade(trade_id, outcome, now)
                stats["settled"] += 1
            except (ExchangeError, TransitionConflict) as e:
                logger.warning("trade_settlement_failed", trade_id=trade_id, error=str(e))
                stats["errors"] += 1

        logger.info("trade_settlement_complete", strategy=self.config.key, **stats)
        return stats
