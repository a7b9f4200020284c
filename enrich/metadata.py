from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from core.models import CanonicalActivity

logger = logging.getLogger(__name__)

IPFS_GATEWAYS = [
    "https://nftstorage.link/ipfs/",
    "https://gateway.pinata.cloud/ipfs/",
    "https://cloudflare-ipfs.com/ipfs/",
    "https://ipfs.io/ipfs/",
    "https://dweb.link/ipfs/",
]

ALCHEMY_NETWORKS = {
    "ethereum": "eth-mainnet",
    "sepolia": "eth-sepolia",
    "base": "base-mainnet",
    "arbitrum": "arb-mainnet",
    "polygon": "polygon-mainnet",
    "optimism": "opt-mainnet",
}

USER_AGENT = "nft-activity-notifier/1.0"
MAX_IMAGE_BYTES = 15 * 1024 * 1024


def resolve_ipfs(url: str, gateway_index: int = 0) -> str:
    if url.startswith("ipfs://"):
        path = url[len("ipfs://"):]
        if path.startswith("ipfs/"):
            path = path[len("ipfs/"):]
        return IPFS_GATEWAYS[gateway_index % len(IPFS_GATEWAYS)] + path
    return url


class NFTMetadataClient:
    """
    Looks up the image URL of one NFT and downloads it.

    EVM: Alchemy NFT API v3 getNFTMetadata.
    Solana: Helius DAS getAsset keyed on the mint address.
    """

    def __init__(
        self,
        alchemy_api_key: str = "",
        helius_api_key: str = "",
        session: Optional[requests.Session] = None,
    ):
        self.alchemy_api_key = alchemy_api_key.strip()
        self.helius_api_key = helius_api_key.strip()
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})

    def image_url_for(self, activity: CanonicalActivity) -> Optional[str]:
        if activity.image_url:
            return activity.image_url
        if activity.chain == "solana":
            return self._helius_image_url(activity.contract_address)
        if activity.token_id and not activity.token_id_is_derived:
            return self._alchemy_image_url(activity.chain, activity.contract_address, activity.token_id)
        return None

    def _alchemy_image_url(self, chain: str, contract: str, token_id: str) -> Optional[str]:
        if not self.alchemy_api_key:
            return None
        network = ALCHEMY_NETWORKS.get(chain, "eth-mainnet")
        url = f"https://{network}.g.alchemy.com/nft/v3/{self.alchemy_api_key}/getNFTMetadata"
        r = self.session.get(
            url,
            params={"contractAddress": contract, "tokenId": token_id, "refreshCache": "false"},
            timeout=15,
        )
        r.raise_for_status()
        data: Dict[str, Any] = r.json() or {}
        image = data.get("image") or {}
        raw_meta = (data.get("raw") or {}).get("metadata") or {}
        return (
            image.get("cachedUrl")
            or image.get("pngUrl")
            or image.get("originalUrl")
            or raw_meta.get("image")
            or None
        )

    def _helius_image_url(self, mint: str) -> Optional[str]:
        if not self.helius_api_key:
            return None
        r = self.session.post(
            "https://mainnet.helius-rpc.com/",
            params={"api-key": self.helius_api_key},
            json={"jsonrpc": "2.0", "id": "image", "method": "getAsset", "params": {"id": mint}},
            timeout=15,
        )
        r.raise_for_status()
        content = ((r.json() or {}).get("result") or {}).get("content") or {}
        links = content.get("links") or {}
        if links.get("image"):
            return links["image"]
        files = content.get("files") or []
        if files and isinstance(files[0], dict):
            return files[0].get("cdn_uri") or files[0].get("uri")
        return None

    def download(self, url: str) -> bytes:
        """Fetch image bytes, rotating IPFS gateways for ipfs:// URLs."""
        tries = len(IPFS_GATEWAYS) if url.startswith("ipfs://") else 1
        last_error: Optional[Exception] = None
        for i in range(tries):
            resolved = resolve_ipfs(url, i)
            try:
                r = self.session.get(resolved, timeout=15, stream=True)
                r.raise_for_status()
                chunks = []
                size = 0
                for chunk in r.iter_content(chunk_size=64 * 1024):
                    size += len(chunk)
                    if size > MAX_IMAGE_BYTES:
                        raise ValueError(f"image larger than {MAX_IMAGE_BYTES} bytes")
                    chunks.append(chunk)
                return b"".join(chunks)
            except (requests.RequestException, ValueError) as e:
                logger.warning("Image download from %s failed: %s", resolved, e)
                last_error = e
        raise last_error if last_error else ValueError(f"no image at {url}")
