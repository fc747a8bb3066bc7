from typing import Dict, Optional


CHAIN_NAMES: Dict[int, str] = {
    1: "Ethereum Mainnet",
    5: "Goerli Testnet",
    11155111: "Sepolia Testnet",
    137: "Polygon Mainnet",
    80001: "Mumbai Testnet",
    1337: "Hardhat Local",
    31337: "Hardhat Local",
}


def network_name(chain_id: Optional[int], override: Optional[str] = None) -> str:
    """Human-readable network label for a chain id."""
    if override:
        return override
    if chain_id is None:
        return "Unknown network"
    return CHAIN_NAMES.get(chain_id, f"Chain {chain_id}")
