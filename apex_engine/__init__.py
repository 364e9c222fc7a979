"""Mempool-driven flash arbitrage execution engine."""

__version__ = "12.6.0"
