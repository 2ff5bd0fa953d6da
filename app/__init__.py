"""HTTP API for the usage metering engine."""
