# Utility helpers shared across the pipeline.

from .env import api_key_from_url, env_flag, env_float, env_int, resolve_env
from .mints import is_valid_solana_mint
from .tasks import settle_in_chunks

__all__ = [
    "api_key_from_url",
    "env_flag",
    "env_float",
    "env_int",
    "resolve_env",
    "is_valid_solana_mint",
    "settle_in_chunks",
]
