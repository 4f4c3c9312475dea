"""Configuration for Edgeline."""

from edgeline.config.settings import Settings, get_settings
from edgeline.config.trading import TradingConfig, get_trading_config

__all__ = ["Settings", "get_settings", "TradingConfig", "get_trading_config"]
