"""Odds arithmetic and fair price model."""

from edgeline.services.pricing.fair_price import FairPrice, FairPriceModel, InsufficientData

__all__ = ["FairPrice", "FairPriceModel", "InsufficientData"]
