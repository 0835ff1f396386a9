"""Exception hierarchy shared by the ingestion pipeline."""

from __future__ import annotations


class MintCatalogError(Exception):
    """Base class for all errors raised by :mod:`mint_catalog`."""


class ConfigError(MintCatalogError, ValueError):
    """Raised when strictly required configuration is missing or invalid."""


class ProviderError(MintCatalogError):
    """Transient failure talking to an external provider."""

    def __init__(self, provider: str, message: str = "", *, status: int | None = None) -> None:
        self.provider = provider
        self.status = status
        detail = message or "request failed"
        if status is not None:
            detail = f"{detail} (status={status})"
        super().__init__(f"{provider}: {detail}")


class MetadataParseError(MintCatalogError):
    """Raised when an on-chain metadata record cannot be decoded."""


class TransactionParseError(MintCatalogError):
    """Raised when a transaction does not contain a usable mint creation."""


class CatalogUnavailable(MintCatalogError):
    """The persistent store could not be reached after reconnect attempts."""


__all__ = [
    "MintCatalogError",
    "ConfigError",
    "ProviderError",
    "MetadataParseError",
    "TransactionParseError",
    "CatalogUnavailable",
]
