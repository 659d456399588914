"""Networks chainwright can import contracts from."""

from __future__ import annotations

from dataclasses import dataclass

from chainwright.core.errors import UnsupportedNetworkError


@dataclass(frozen=True)
class ChainConfig:
    """Configuration for a supported EVM network."""

    chain_id: int
    name: str
    explorer_url: str
    explorer_api_url: str
    api_key_setting: str  # attribute on Settings holding the explorer key
    is_testnet: bool = False


# ── Network Registry ─────────────────────────────────────────────────────────

CHAINS: dict[str, ChainConfig] = {
    "mainnet": ChainConfig(
        chain_id=1,
        name="Ethereum Mainnet",
        explorer_url="https://etherscan.io",
        explorer_api_url="https://api.etherscan.io/api",
        api_key_setting="etherscan_api_key",
    ),
    "sepolia": ChainConfig(
        chain_id=11155111,
        name="Sepolia",
        explorer_url="https://sepolia.etherscan.io",
        explorer_api_url="https://api-sepolia.etherscan.io/api",
        api_key_setting="etherscan_api_key",
        is_testnet=True,
    ),
    "polygon": ChainConfig(
        chain_id=137,
        name="Polygon Mainnet",
        explorer_url="https://polygonscan.com",
        explorer_api_url="https://api.polygonscan.com/api",
        api_key_setting="polygonscan_api_key",
    ),
    "arbitrum": ChainConfig(
        chain_id=42161,
        name="Arbitrum One",
        explorer_url="https://arbiscan.io",
        explorer_api_url="https://api.arbiscan.io/api",
        api_key_setting="arbiscan_api_key",
    ),
    "optimism": ChainConfig(
        chain_id=10,
        name="Optimism",
        explorer_url="https://optimistic.etherscan.io",
        explorer_api_url="https://api-optimistic.etherscan.io/api",
        api_key_setting="optimism_api_key",
    ),
    "base": ChainConfig(
        chain_id=8453,
        name="Base",
        explorer_url="https://basescan.org",
        explorer_api_url="https://api.basescan.org/api",
        api_key_setting="basescan_api_key",
    ),
}


def get_chain_config(network: str) -> ChainConfig | None:
    """Get network configuration by name."""
    return CHAINS.get(network.lower())


def require_chain_config(network: str) -> ChainConfig:
    config = get_chain_config(network)
    if config is None:
        raise UnsupportedNetworkError(
            f"No block explorer configured for network '{network}'",
            details={"network": network, "known": sorted(CHAINS)},
        )
    return config
