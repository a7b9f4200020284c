from __future__ import annotations

import hashlib
import hmac
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from core.errors import MalformedPayloadError
from core.models import ZERO_ADDRESSES, ActivityType, CanonicalActivity

logger = logging.getLogger(__name__)

SOURCE = "alchemy"
WEI_PER_ETH = Decimal(10) ** 18

# Exchange / settlement contracts of the major marketplaces.
MARKETPLACE_ADDRESSES = {
    # OpenSea Seaport 1.1 / 1.4 / 1.5
    "0x00000000006c3852cbef3e08e8df289169ede581",
    "0x00000000000001ad428e4906ae43d8f9852d0dd6",
    "0x00000000000006c7676171937c444f6bde3d6282",
    # Blur
    "0x000000000000ad05ccc4f10045630fb830b95127",
    "0x29469395eaf6f95920e59f858042f0e28d98a20b",
    # LooksRare
    "0x59728544b08ab483533076417fbbb2fd0b17ce3a",
    # X2Y2
    "0x2b2e8cda09bba9660dca5cb6233787738ad68329",
    # Rarible
    "0xcda72070e455bb31c7690a170224ce43623d0b6f",
    # Foundation
    "0x65b49f7aee40347f5a90b714be4ef086f3fe5e2c",
    # Sudoswap
    "0x9757f2d2b135150bbeb65308d4a91804107cd8d6",
}

MARKETPLACE_NAMES = {
    "0x00000000006c3852cbef3e08e8df289169ede581": "OpenSea",
    "0x59728544b08ab483533076417fbbb2fd0b17ce3a": "LooksRare",
    "0x2b2e8cda09bba9660dca5cb6233787738ad68329": "X2Y2",
}


def _lower(s: Optional[str]) -> str:
    return (s or "").lower()


def verify_signature(body: bytes, signature: Optional[str], signing_key: str) -> bool:
    """X-Alchemy-Signature is the hex HMAC-SHA256 of the raw request body."""
    if not signing_key or not signature:
        return False
    digest = hmac.new(signing_key.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, signature.strip().lower())


def parse_alchemy_webhook(payload: Dict[str, Any], default_network: str = "") -> List[CanonicalActivity]:
    """
    Expects payload like:
      { "type": "NFT_ACTIVITY", "event": { "network": "...", "activity": [ ... ] } }

    Raises MalformedPayloadError when the event/activity container is missing.
    Individual activities that fail to parse are logged and skipped.
    """
    if not isinstance(payload, dict):
        raise MalformedPayloadError("alchemy payload is not an object")

    event = payload.get("event")
    if not isinstance(event, dict) or event.get("activity") is None:
        raise MalformedPayloadError("alchemy payload has no event.activity")

    activity = event["activity"]
    items = activity if isinstance(activity, list) else [activity]
    network = event.get("network") or default_network

    out: List[CanonicalActivity] = []
    for item in items:
        try:
            out.append(parse_alchemy_activity(item, network=network))
        except MalformedPayloadError as e:
            logger.warning("Skipping malformed alchemy activity: %s", e)
    return out


def parse_alchemy_activity(activity: Dict[str, Any], network: str = "") -> CanonicalActivity:
    if not isinstance(activity, dict):
        raise MalformedPayloadError("activity entry is not an object")

    contract = _contract_address(activity)
    if not contract:
        raise MalformedPayloadError("activity entry has no contract address")

    tx_hash = activity.get("hash") or None
    token_id, derived = extract_token_id(activity)

    return CanonicalActivity(
        contract_address=contract,
        activity_type=determine_activity_type(activity),
        source=SOURCE,
        chain=chain_from_network(network),
        token_id=token_id,
        token_id_is_derived=derived,
        from_address=_lower(activity.get("fromAddress")) or None,
        to_address=_lower(activity.get("toAddress")) or None,
        transaction_hash=tx_hash,
        block_number=activity.get("blockNum") or None,
        price=extract_price(activity),
        marketplace=extract_marketplace(activity),
        currency_symbol="ETH",
        currency_decimals=18,
        meta={"network": network, "category": activity.get("category")},
    )


def chain_from_network(network: str) -> str:
    n = (network or "").upper()
    if "BASE" in n:
        return "base"
    if "ARB" in n:
        return "arbitrum"
    if "MATIC" in n or "POLYGON" in n:
        return "polygon"
    if "OPT" in n:
        return "optimism"
    if "SEPOLIA" in n:
        return "sepolia"
    return "ethereum"


def _contract_address(a: Dict[str, Any]) -> str:
    addr = a.get("contractAddress")
    if not addr:
        raw = a.get("rawContract") or {}
        addr = raw.get("address")
    return _lower(addr)


def extract_token_id(a: Dict[str, Any]) -> Tuple[Optional[str], bool]:
    """
    Returns (token_id, derived). `derived` is True when the id came from the
    transaction-hash fallback and is not a real token identifier.
    """
    token = a.get("token") or {}
    erc1155 = a.get("erc1155Metadata") or []
    topics = (a.get("log") or {}).get("topics") or []

    candidates = [
        a.get("tokenId"),
        token.get("tokenId") if isinstance(token, dict) else None,
        a.get("erc721TokenId"),
        erc1155[0].get("tokenId") if erc1155 and isinstance(erc1155[0], dict) else None,
        topics[3] if len(topics) > 3 else None,
    ]
    for c in candidates:
        if c not in (None, ""):
            return str(c), False

    fallback = token_id_from_tx_hash(a.get("hash"))
    if fallback is not None:
        logger.debug("No token id in activity %s, using hash-derived id %s", a.get("hash"), fallback)
        return fallback, True
    return None, False


def token_id_from_tx_hash(tx_hash: Optional[str]) -> Optional[str]:
    # Last 4 hex chars mod 1000. Collides across transactions.
    if not tx_hash:
        return None
    try:
        return str(int(tx_hash[-4:], 16) % 1000)
    except ValueError:
        return None


def is_zero_address(addr: Optional[str]) -> bool:
    return not addr or _lower(addr) in ZERO_ADDRESSES


def is_marketplace_address(addr: Optional[str]) -> bool:
    return bool(addr) and _lower(addr) in MARKETPLACE_ADDRESSES


def determine_activity_type(a: Dict[str, Any]) -> ActivityType:
    f = a.get("fromAddress")
    t = a.get("toAddress")

    if is_zero_address(f):
        return ActivityType.MINT
    if is_zero_address(t):
        return ActivityType.BURN
    if extract_marketplace(a):
        return ActivityType.BUY
    if is_marketplace_address(f) or is_marketplace_address(t):
        return ActivityType.BUY
    return ActivityType.TRANSFER


def extract_price(a: Dict[str, Any]) -> Optional[str]:
    """Alchemy reports `value` in ether; returned as an integer wei string."""
    for val in (a.get("value"), (a.get("metadata") or {}).get("value")):
        wei = _ether_to_wei(val)
        if wei:
            return wei
    return None


def _ether_to_wei(val: Any) -> Optional[str]:
    if val in (None, ""):
        return None
    try:
        wei = int(Decimal(str(val)) * WEI_PER_ETH)
    except (ArithmeticError, ValueError):
        return None
    return str(wei) if wei > 0 else None


def extract_marketplace(a: Dict[str, Any]) -> Optional[str]:
    return MARKETPLACE_NAMES.get(_lower(a.get("toAddress")))
