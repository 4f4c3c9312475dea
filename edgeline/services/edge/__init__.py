"""Edge detection."""

from edgeline.services.edge.detector import EdgeDetector, EdgeSignal, classify_tier

__all__ = ["EdgeDetector", "EdgeSignal", "classify_tier"]
