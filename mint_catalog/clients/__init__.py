"""External API clients."""

from .helius_das import DasAsset, HeliusDasClient, parse_das_asset

__all__ = ["DasAsset", "HeliusDasClient", "parse_das_asset"]
