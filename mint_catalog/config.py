from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Tuple

from pydantic import AnyUrl, BaseModel, ConfigDict, ValidationError, field_validator

from .errors import ConfigError
from .util.env import api_key_from_url, resolve_env

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///mint_catalog.db"
DEFAULT_IPFS_GATEWAYS: Tuple[str, ...] = (
    "https://cloudflare-ipfs.com",
    "https://ipfs.io",
    "https://gateway.pinata.cloud",
)


class ConfigModel(BaseModel):
    """Schema for the ingestion runtime configuration."""

    model_config = ConfigDict(extra="allow")

    rpc_url: AnyUrl
    ws_url: AnyUrl
    database_url: str
    rate_limit_ms: float
    price_alert_threshold: float
    default_supply: float
    ipfs_gateways: Tuple[str, ...]

    @field_validator("database_url")
    @classmethod
    def _database_url_non_empty(cls, value: str) -> str:
        if not value or "://" not in value:
            raise ValueError("database_url must be a SQLAlchemy URL")
        return value

    @field_validator("rate_limit_ms", "default_supply")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("value must be >= 0")
        return value

    @field_validator("price_alert_threshold")
    @classmethod
    def _threshold_range(cls, value: float) -> float:
        if not 0 < value < 10:
            raise ValueError("price_alert_threshold must be a positive fraction")
        return value

    @field_validator("ipfs_gateways")
    @classmethod
    def _gateways_non_empty(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        if not value or not all(g.startswith(("http://", "https://")) for g in value):
            raise ValueError("ipfs_gateways must be a non-empty list of http(s) URLs")
        return value


def validate_config(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate ``data`` against :class:`ConfigModel`.

    Raises :class:`ConfigError` on validation errors.
    """
    try:
        return ConfigModel(**dict(data)).model_dump()
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc


def derive_ws_url(rpc_url: str) -> str:
    if rpc_url.startswith("https://"):
        return "wss://" + rpc_url[len("https://"):]
    if rpc_url.startswith("http://"):
        return "ws://" + rpc_url[len("http://"):]
    return rpc_url


@dataclass
class Config:
    """Runtime configuration values populated from the environment."""

    rpc_url: str
    ws_url: str = ""
    database_url: str = DEFAULT_DATABASE_URL
    birdeye_api_key: str = ""
    helius_api_key: str = ""
    birdeye_url: str = "https://public-api.birdeye.so/defi/token_overview"
    jupiter_url: str = "https://price.jup.ag/v4/price"
    helius_metadata_url: str = "https://api.helius.xyz/v0/token-metadata"
    das_url: str = "https://mainnet.helius-rpc.com"
    ipfs_gateways: Tuple[str, ...] = DEFAULT_IPFS_GATEWAYS
    rate_limit_ms: float = 100.0
    enrich_interval: float = 5.0
    social_interval: float = 5.0
    market_interval: float = 30.0
    lifecycle_interval: float = 30.0
    holder_interval: float = 30.0
    prune_interval: float = 3600.0
    snapshot_retention_days: float = 30.0
    enrich_batch_limit: int = 30
    social_batch_limit: int = 15
    enrich_concurrency: int = 6
    social_concurrency: int = 4
    market_batch_limit: int = 20
    market_concurrency: int = 5
    market_max_age: float = 300.0
    holder_batch_limit: int = 50
    price_alert_threshold: float = 0.05
    default_supply: float = 1_000_000_000.0
    shutdown_grace: float = 10.0
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.ws_url and self.rpc_url:
            self.ws_url = derive_ws_url(self.rpc_url)

    @classmethod
    def from_env(cls, cfg: Mapping[str, Any] | None = None) -> "Config":
        """Create a Config instance using environment variables and an optional dict.

        ``HELIUS_RPC_URL`` (or ``SOLANA_RPC_URL``) is mandatory. Provider keys
        are optional; a missing key only disables that provider.
        """
        cfg = dict(cfg or {})
        env = os.getenv

        rpc_url = resolve_env(("HELIUS_RPC_URL", "SOLANA_RPC_URL")) or str(cfg.get("rpc_url") or "")
        if not rpc_url:
            raise ConfigError("HELIUS_RPC_URL (or SOLANA_RPC_URL) must be set")

        helius_key = (
            resolve_env(("HELIUS_API_KEY", "HELIUS_KEY"))
            or str(cfg.get("helius_api_key") or "")
            or api_key_from_url(rpc_url)
        )
        birdeye_key = resolve_env(("BIRDEYE_API_KEY",)) or str(cfg.get("birdeye_api_key") or "")

        gateways_raw = env("IPFS_GATEWAYS")
        if gateways_raw:
            gateways = tuple(g.strip().rstrip("/") for g in gateways_raw.split(",") if g.strip())
        else:
            gateways = tuple(cfg.get("ipfs_gateways") or DEFAULT_IPFS_GATEWAYS)

        def _num(name: str, key: str, default: float, kind: type = float) -> Any:
            raw = env(name)
            if raw in {None, ""}:
                raw = cfg.get(key, default)
            try:
                return kind(raw)
            except (TypeError, ValueError):
                logger.warning("Invalid %s=%r; using default %s", name, raw, default)
                return kind(default)

        known = {f.name for f in fields(cls)}
        config = cls(
            rpc_url=rpc_url,
            ws_url=resolve_env(("HELIUS_WS_URL", "SOLANA_WS_URL")) or str(cfg.get("ws_url") or ""),
            database_url=env("DATABASE_URL") or str(cfg.get("database_url") or DEFAULT_DATABASE_URL),
            birdeye_api_key=birdeye_key,
            helius_api_key=helius_key,
            birdeye_url=env("BIRDEYE_OVERVIEW_URL") or cls.birdeye_url,
            jupiter_url=env("JUPITER_PRICE_URL") or cls.jupiter_url,
            helius_metadata_url=env("HELIUS_METADATA_URL") or cls.helius_metadata_url,
            das_url=env("DAS_BASE_URL") or cls.das_url,
            ipfs_gateways=gateways,
            rate_limit_ms=_num("RATE_LIMIT_MS", "rate_limit_ms", 100.0),
            enrich_interval=_num("ENRICH_INTERVAL", "enrich_interval", 5.0),
            social_interval=_num("SOCIAL_INTERVAL", "social_interval", 5.0),
            market_interval=_num("MARKET_INTERVAL", "market_interval", 30.0),
            lifecycle_interval=_num("LIFECYCLE_INTERVAL", "lifecycle_interval", 30.0),
            holder_interval=_num("HOLDER_INTERVAL", "holder_interval", 30.0),
            prune_interval=_num("PRUNE_INTERVAL", "prune_interval", 3600.0),
            snapshot_retention_days=_num("SNAPSHOT_RETENTION_DAYS", "snapshot_retention_days", 30.0),
            enrich_batch_limit=_num("ENRICH_BATCH_LIMIT", "enrich_batch_limit", 30, int),
            social_batch_limit=_num("SOCIAL_BATCH_LIMIT", "social_batch_limit", 15, int),
            enrich_concurrency=max(1, _num("ENRICH_CONCURRENCY", "enrich_concurrency", 6, int)),
            social_concurrency=max(1, _num("SOCIAL_CONCURRENCY", "social_concurrency", 4, int)),
            market_batch_limit=_num("MARKET_BATCH_LIMIT", "market_batch_limit", 20, int),
            market_concurrency=max(1, _num("MARKET_CONCURRENCY", "market_concurrency", 5, int)),
            market_max_age=_num("MARKET_MAX_AGE", "market_max_age", 300.0),
            holder_batch_limit=_num("HOLDER_BATCH_LIMIT", "holder_batch_limit", 50, int),
            price_alert_threshold=_num("PRICE_ALERT_THRESHOLD", "price_alert_threshold", 0.05),
            default_supply=_num("DEFAULT_SUPPLY", "default_supply", 1_000_000_000.0),
            shutdown_grace=_num("SHUTDOWN_GRACE", "shutdown_grace", 10.0),
            extra={k: v for k, v in cfg.items() if k not in known},
        )
        config.validate()

        if not config.birdeye_api_key:
            logger.warning("BIRDEYE_API_KEY not set; Birdeye market data disabled")
        if not config.helius_api_key:
            logger.warning("HELIUS_API_KEY not set; Helius fallbacks disabled")
        return config

    def validate(self) -> None:
        validate_config(
            {
                "rpc_url": self.rpc_url,
                "ws_url": self.ws_url,
                "database_url": self.database_url,
                "rate_limit_ms": self.rate_limit_ms,
                "price_alert_threshold": self.price_alert_threshold,
                "default_supply": self.default_supply,
                "ipfs_gateways": self.ipfs_gateways,
            }
        )


__all__ = ["Config", "ConfigModel", "validate_config", "derive_ws_url"]
