"""Usage metering, tiered quota enforcement and overage billing engine."""

__version__ = "1.0.0"
