from __future__ import annotations

from typing import Optional

EXPLORERS = {
    "ethereum": "https://etherscan.io",
    "sepolia": "https://sepolia.etherscan.io",
    "base": "https://basescan.org",
    "arbitrum": "https://arbiscan.io",
    "polygon": "https://polygonscan.com",
    "optimism": "https://optimistic.etherscan.io",
}

OPENSEA_CHAINS = {
    "ethereum": "ethereum",
    "base": "base",
    "arbitrum": "arbitrum",
    "polygon": "matic",
    "optimism": "optimism",
    "sepolia": "sepolia",
}


def explorer_tx_link(chain: str, tx_hash: Optional[str]) -> str:
    if not tx_hash:
        return ""
    if chain == "solana":
        return f"https://solscan.io/tx/{tx_hash}"
    base = EXPLORERS.get(chain)
    return f"{base}/tx/{tx_hash}" if base else ""


def marketplace_item_link(chain: str, contract: str, token_id: Optional[str]) -> str:
    if chain == "solana":
        return f"https://magiceden.io/item-details/{contract}"
    if not token_id:
        return ""
    slug = OPENSEA_CHAINS.get(chain)
    if not slug:
        return ""
    host = "testnets.opensea.io" if chain == "sepolia" else "opensea.io"
    return f"https://{host}/assets/{slug}/{contract}/{token_id}"
