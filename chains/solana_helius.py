from __future__ import annotations

import hmac
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from core.errors import MalformedPayloadError
from core.models import ActivityType, CanonicalActivity

logger = logging.getLogger(__name__)

SOURCE = "helius"
SALE_TYPE = "NFT_SALE"
LAMPORTS_PER_SOL = 1_000_000_000


def normalize_auth_header(value: Optional[str]) -> str:
    v = (value or "").strip()
    if v.lower().startswith("bearer "):
        v = v[7:].strip()
    return v


def verify_auth_header(received: Optional[str], expected: str) -> bool:
    """Helius echoes the webhook's authHeader back in Authorization."""
    if not expected:
        return False
    got = normalize_auth_header(received)
    return hmac.compare_digest(got.encode(), normalize_auth_header(expected).encode())


def as_transaction_list(payload: Any) -> List[Dict[str, Any]]:
    """Helius POSTs a JSON array of transactions; a single object is tolerated."""
    if isinstance(payload, list):
        return [x for x in payload if isinstance(x, dict)]
    if isinstance(payload, dict):
        txs = payload.get("transactions")
        if isinstance(txs, list):
            return [x for x in txs if isinstance(x, dict)]
        return [payload]
    raise MalformedPayloadError("helius payload is neither a list nor an object")


def parse_helius_webhook(payload: Any) -> List[CanonicalActivity]:
    out: List[CanonicalActivity] = []
    for tx in as_transaction_list(payload):
        try:
            activity = parse_helius_sale(tx)
        except MalformedPayloadError as e:
            logger.warning("Skipping malformed helius transaction %s: %s", tx.get("signature"), e)
            continue
        if activity is not None:
            out.append(activity)
    return out


def parse_helius_sale(tx: Dict[str, Any]) -> Optional[CanonicalActivity]:
    """
    Map an enhanced NFT_SALE transaction to a `buy` activity keyed on the mint.
    Other transaction types return None.
    """
    typ = tx.get("type")
    if typ and typ != SALE_TYPE:
        return None

    nft_event = (tx.get("events") or {}).get("nft")
    if not isinstance(nft_event, dict):
        if typ == SALE_TYPE:
            raise MalformedPayloadError("NFT_SALE transaction has no events.nft")
        return None

    nfts = nft_event.get("nfts") or []
    mint = None
    if nfts and isinstance(nfts[0], dict):
        mint = nfts[0].get("mint")
    if not mint:
        raise MalformedPayloadError("NFT sale has no mint address")

    price = _lamports(nft_event.get("amount"))
    ts = tx.get("timestamp") or nft_event.get("timestamp")

    return CanonicalActivity(
        contract_address=mint,
        activity_type=ActivityType.BUY,
        source=SOURCE,
        chain="solana",
        token_id=None,
        from_address=nft_event.get("seller") or None,
        to_address=nft_event.get("buyer") or None,
        transaction_hash=tx.get("signature") or nft_event.get("signature") or None,
        block_number=str(tx["slot"]) if tx.get("slot") is not None else None,
        price=price,
        marketplace=_marketplace_label(nft_event.get("source")),
        currency_symbol="SOL",
        currency_decimals=9,
        event_timestamp=str(ts) if ts is not None else None,
        meta={"fee_payer": tx.get("feePayer"), "nft_count": len(nfts)},
    )


def _marketplace_label(source: Optional[str]) -> str:
    if not source:
        return "Magic Eden"
    return source.replace("_", " ").title()


def _lamports(val: Any) -> Optional[str]:
    if val in (None, ""):
        return None
    try:
        lamports = int(Decimal(str(val)))
    except (ArithmeticError, ValueError):
        logger.warning("Unparsable Helius sale amount: %r", val)
        return None
    return str(lamports) if lamports > 0 else None
