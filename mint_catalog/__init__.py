"""Solana mint discovery, metadata enrichment and market-data catalog."""

__version__ = "0.1.0"
