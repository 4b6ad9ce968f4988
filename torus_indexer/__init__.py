"""TORUS dashboard indexer: event scans, protocol-day reconciliation, JSON cache."""

__version__ = "0.3.0"
