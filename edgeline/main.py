"""Edgeline FastAPI application.

Read model over edge candidates, strategy trades and manual bets, plus the
manual cancel and settle operations.
"""

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from edgeline.api.routes import bets, candidates, health, trades
from edgeline.config import get_settings
from edgeline.services.quotes.normalize import QuoteValidationError
from edgeline.services.trading.errors import (
    BetAlreadySettled,
    RecordNotFound,
    TradeValidationError,
    TransitionConflict,
)

settings = get_settings()

logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(
        "starting_edgeline",
        version="0.1.0",
        trading_enabled=settings.trading_enabled,
        betfair_configured=settings.betfair_configured,
    )
    yield
    logger.info("shutting_down_edgeline")


# Create FastAPI application
app = FastAPI(
    title="Edgeline",
    description="Odds edge detection and automated exchange hedging",
    version="0.1.0",
    lifespan=lifespan,
)

# Include API routers
app.include_router(health.router)
app.include_router(candidates.router)
app.include_router(trades.router)
app.include_router(bets.router)


# Error handlers
@app.exception_handler(RecordNotFound)
async def not_found_handler(request: Request, exc: RecordNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(TradeValidationError)
async def validation_handler(request: Request, exc: TradeValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(QuoteValidationError)
async def quote_validation_handler(request: Request, exc: QuoteValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(TransitionConflict)
async def conflict_handler(request: Request, exc: TransitionConflict):
    """A concurrent writer or the trade's status won; the client should re-read."""
    logger.info("trade_request_conflict", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=409,
        content={
            "detail": str(exc),
            "trade_id": exc.trade_id,
            "status": exc.actual_status,
        },
    )


@app.exception_handler(BetAlreadySettled)
async def bet_settled_handler(request: Request, exc: BetAlreadySettled):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "bet_id": exc.bet_id, "status": exc.status},
    )


@app.exception_handler(500)
async def server_error_handler(request: Request, exc):
    """Custom 500 handler."""
    logger.error("server_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})
