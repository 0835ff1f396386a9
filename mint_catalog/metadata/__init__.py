"""On-chain and off-chain token metadata resolution."""

from .offchain import OffchainResolver, SocialLinks, extract_social_links, to_http
from .onchain import OnchainMetadata, bonding_curve_pda, fetch_onchain_metadata, metadata_pda

__all__ = [
    "OffchainResolver",
    "OnchainMetadata",
    "SocialLinks",
    "bonding_curve_pda",
    "extract_social_links",
    "fetch_onchain_metadata",
    "metadata_pda",
    "to_http",
]
