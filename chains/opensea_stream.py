from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from chains.evm_alchemy import is_zero_address
from core.errors import MalformedPayloadError
from core.models import ActivityType, CanonicalActivity

logger = logging.getLogger(__name__)

SOURCE = "opensea"
MARKETPLACE = "OpenSea"


class StreamEventType(str, Enum):
    LISTED = "listed"
    SOLD = "sold"
    TRANSFERRED = "transferred"
    METADATA_UPDATED = "metadata_updated"
    RECEIVED_BID = "received_bid"
    RECEIVED_OFFER = "received_offer"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["StreamEventType"]:
        """Accepts both "sold" and the wire form "item_sold"."""
        v = (value or "").lower()
        if v.startswith("item_"):
            v = v[len("item_"):]
        try:
            return cls(v)
        except ValueError:
            return None


class PriceField(str, Enum):
    SALE_PRICE = "sale_price"
    BASE_PRICE = "base_price"
    NONE = "none"


# Total over StreamEventType: (activity type or None to drop, price field)
EVENT_MAPPING: Dict[StreamEventType, Tuple[Optional[ActivityType], PriceField]] = {
    StreamEventType.SOLD: (ActivityType.SALE, PriceField.SALE_PRICE),
    StreamEventType.LISTED: (ActivityType.LISTING, PriceField.BASE_PRICE),
    StreamEventType.RECEIVED_BID: (ActivityType.BID, PriceField.BASE_PRICE),
    StreamEventType.RECEIVED_OFFER: (ActivityType.OFFER, PriceField.BASE_PRICE),
    StreamEventType.TRANSFERRED: (ActivityType.TRANSFER, PriceField.NONE),
    StreamEventType.METADATA_UPDATED: (None, PriceField.NONE),
    StreamEventType.CANCELLED: (None, PriceField.NONE),
}


def unwrap_payload(event: Dict[str, Any]) -> Dict[str, Any]:
    """The useful body may sit at event.payload.payload, event.payload or event."""
    if not isinstance(event, dict):
        raise MalformedPayloadError("stream event is not an object")
    outer = event.get("payload")
    if isinstance(outer, dict):
        inner = outer.get("payload")
        if isinstance(inner, dict):
            return inner
        return outer
    if "item" in event:
        return event
    raise MalformedPayloadError("stream event has no payload container")


def split_nft_id(nft_id: Optional[str]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    # "ethereum/0x495f.../74630152366364009569..."
    parts = (nft_id or "").split("/")
    if len(parts) < 3:
        return None, None, None
    return parts[0], parts[1].lower(), parts[2]


def select_price(payload: Dict[str, Any], field: PriceField) -> Optional[str]:
    if field is PriceField.NONE:
        return None
    val = payload.get(field.value)
    if val in (None, ""):
        return None
    return str(val)


def parse_stream_event(event_type: Any, event: Dict[str, Any]) -> Optional[CanonicalActivity]:
    kind = event_type if isinstance(event_type, StreamEventType) else StreamEventType.parse(event_type)
    if kind is None:
        logger.debug("Ignoring unknown stream event type %r", event_type)
        return None

    payload = unwrap_payload(event)
    activity_type, price_field = EVENT_MAPPING[kind]
    if activity_type is None:
        return None

    item = payload.get("item") or {}
    chain, contract, token_id = split_nft_id(item.get("nft_id"))
    if not contract:
        raise MalformedPayloadError("stream event item has no nft_id")

    from_addr = _address(payload.get("from_account")) or _address(payload.get("maker"))
    to_addr = _address(payload.get("to_account")) or _address(payload.get("taker"))

    if kind is StreamEventType.TRANSFERRED:
        if is_zero_address(from_addr):
            activity_type = ActivityType.MINT
        elif is_zero_address(to_addr):
            activity_type = ActivityType.BURN

    payment = payload.get("payment_token") or {}
    metadata = item.get("metadata") or {}
    tx = payload.get("transaction") or {}
    decimals = payment.get("decimals")

    return CanonicalActivity(
        contract_address=contract,
        activity_type=activity_type,
        source=SOURCE,
        chain=(item.get("chain") or {}).get("name") or chain or "ethereum",
        token_id=token_id,
        from_address=from_addr,
        to_address=to_addr,
        transaction_hash=tx.get("hash") or None,
        block_number=str(tx["block_number"]) if tx.get("block_number") is not None else None,
        price=select_price(payload, price_field),
        marketplace=MARKETPLACE,
        currency_symbol=payment.get("symbol") or "ETH",
        currency_decimals=int(decimals) if decimals is not None else 18,
        nft_name=metadata.get("name"),
        image_url=metadata.get("image_url"),
        collection_slug=(payload.get("collection") or {}).get("slug"),
        order_hash=payload.get("order_hash") or None,
        event_timestamp=event.get("sent_at") or payload.get("event_timestamp"),
        meta={
            "event_type": kind.value,
            "payment_token_address": payment.get("address"),
            "quantity": payload.get("quantity") or 1,
        },
    )


def _address(account: Any) -> Optional[str]:
    if isinstance(account, dict):
        addr = account.get("address")
        return addr.lower() if addr else None
    return None


def usd_value(amount_minor: Optional[str], decimals: int, quote: Optional[float]) -> Optional[float]:
    if not amount_minor or quote is None:
        return None
    try:
        amount = Decimal(amount_minor) / (Decimal(10) ** int(decimals))
        return float(amount * Decimal(str(quote)))
    except (InvalidOperation, ValueError):
        logger.warning("Cannot convert %r with %s decimals to USD", amount_minor, decimals)
        return None


def attach_usd_value(activity: CanonicalActivity, prices) -> CanonicalActivity:
    """
    Recompute price_usd from the minor-unit amount and an external quote.
    Whatever usd figure the stream payload carries is never used.
    """
    if not activity.price:
        return activity
    symbol = activity.currency_symbol or "ETH"
    # Address lookups are keyed on the Ethereum platform.
    address = activity.meta.get("payment_token_address") if activity.chain == "ethereum" else None
    quote = prices.get_usd_price(symbol, address)
    activity.price_usd = usd_value(activity.price, activity.currency_decimals or 18, quote)
    return activity
