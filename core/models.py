from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    """Naive UTC, the form timestamps are stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


ZERO_ADDRESSES = {
    "0x0000000000000000000000000000000000000000",
    "0x0",
}


class ActivityType(str, Enum):
    MINT = "mint"
    BURN = "burn"
    TRANSFER = "transfer"
    BUY = "buy"
    SALE = "sale"
    EXTERNAL_TRANSFER = "external_transfer"
    INTERNAL_TRANSFER = "internal_transfer"
    UNKNOWN = "unknown"
    # marketplace order events
    LISTING = "listing"
    BID = "bid"
    OFFER = "offer"

    @classmethod
    def from_category(cls, category: Optional[str]) -> "ActivityType":
        """Map a provider asset category ("erc721", "external", ...) to a type."""
        mapping = {
            "erc721": cls.TRANSFER,
            "erc1155": cls.TRANSFER,
            "token": cls.TRANSFER,
            "external": cls.EXTERNAL_TRANSFER,
            "internal": cls.INTERNAL_TRANSFER,
            "sale": cls.SALE,
            "mint": cls.MINT,
            "burn": cls.BURN,
        }
        return mapping.get((category or "").lower(), cls.UNKNOWN)


@dataclass
class CanonicalActivity:
    contract_address: str           # lower-cased EVM address, or Solana mint address
    activity_type: ActivityType
    source: str                     # "alchemy" | "opensea" | "helius"
    chain: str = "ethereum"         # "ethereum" | "base" | "solana" | ...
    token_id: Optional[str] = None
    token_id_is_derived: bool = False
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    transaction_hash: Optional[str] = None
    block_number: Optional[str] = None
    price: Optional[str] = None     # integer minor units (wei, lamports)
    marketplace: Optional[str] = None
    price_usd: Optional[float] = None
    currency_symbol: Optional[str] = None
    currency_decimals: Optional[int] = None
    nft_name: Optional[str] = None
    image_url: Optional[str] = None
    collection_slug: Optional[str] = None
    order_hash: Optional[str] = None
    event_timestamp: Optional[str] = None
    meta: Dict = field(default_factory=dict)

    @property
    def contract_key(self) -> str:
        return (self.contract_address or "").lower()


@dataclass(frozen=True)
class TrackedToken:
    id: int
    contract_address: str
    chain: str = "ethereum"
    token_name: Optional[str] = None
    collection_slug: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class Subscription:
    """One (user, token, chat context) row with its resolved delivery target."""
    user_id: int
    telegram_id: str
    token_id: int
    chat_context: str               # "private" or a group chat id
    notification_enabled: bool = True

    @property
    def chat_id(self) -> str:
        if not self.chat_context or self.chat_context == "private":
            return self.telegram_id
        return self.chat_context


@dataclass(frozen=True)
class Channel:
    telegram_chat_id: str
    title: Optional[str] = None
    show_trending: bool = True
    show_all_activities: bool = False
    is_active: bool = True


@dataclass
class ChannelEligibility:
    notify: bool
    channels: List[Channel]
    is_trending: bool
    reason: str


@dataclass
class DispatchReport:
    users_sent: int = 0
    users_failed: int = 0
    channels_sent: int = 0
    channels_failed: int = 0
    deactivated: List[str] = field(default_factory=list)

    @property
    def sent(self) -> int:
        return self.users_sent + self.channels_sent


@dataclass(frozen=True)
class TrendingPaymentRecord:
    contract_address: str
    is_active: bool
    end_time: datetime
    tier: str = "normal"
    payment_amount: Optional[str] = None

    def is_valid(self, now: datetime) -> bool:
        return bool(self.is_active) and self.end_time > now
