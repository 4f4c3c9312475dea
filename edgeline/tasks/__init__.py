"""Celery tasks for Edgeline.

This module configures Celery and registers all periodic tasks.
"""

from celery import Celery

from edgeline.config import get_settings

settings = get_settings()

# Create Celery application
celery_app = Celery(
    "edgeline",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "edgeline.tasks.odds",
        "edgeline.tasks.trading",
    ],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Task behavior
    task_track_started=True,
    task_time_limit=600,  # 10 minute hard limit
    task_soft_time_limit=540,  # 9 minute soft limit
    # Result expiration
    result_expires=3600,  # 1 hour
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Odds ingestion + edge detection
    "poll-odds": {
        "task": "edgeline.tasks.odds.poll_odds",
        "schedule": settings.odds_poll_seconds,
        "options": {"expires": settings.odds_poll_seconds * 0.9},
    },
    # Trade lifecycle monitoring
    "monitor-trades": {
        "task": "edgeline.tasks.trading.monitor_trades",
        "schedule": settings.trade_monitor_seconds,
        "options": {"expires": settings.trade_monitor_seconds * 0.9},
    },
    # Fixture discovery for the strategy - every 6 hours by default
    "sync-fixtures": {
        "task": "edgeline.tasks.trading.sync_fixtures",
        "schedule": settings.fixture_sync_seconds,
        "options": {"expires": 3540},
    },
    # Settlement of hedged/failed trades - every 15 minutes
    "settle-trades": {
        "task": "edgeline.tasks.trading.settle_trades",
        "schedule": 900.0,
        "options": {"expires": 840},
    },
    # Keep the Betfair session alive - every 4 hours
    "betfair-keepalive": {
        "task": "edgeline.tasks.trading.betfair_keepalive",
        "schedule": 4 * 3600.0,
        "options": {"expires": 3540},
    },
}
