from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from core.models import ActivityType, CanonicalActivity, TrackedToken
from core.telegram_client import inline_keyboard
from links import explorer_tx_link, marketplace_item_link

TRENDING_PREFIX = "🔥 *TRENDING:*"

ACTIVITY_EMOJI = {
    ActivityType.TRANSFER: "🔄",
    ActivityType.BUY: "🛒",
    ActivityType.SALE: "💸",
    ActivityType.MINT: "✨",
    ActivityType.BURN: "🔥",
    ActivityType.EXTERNAL_TRANSFER: "📤",
    ActivityType.INTERNAL_TRANSFER: "📥",
    ActivityType.LISTING: "🏷️",
    ActivityType.BID: "🙋",
    ActivityType.OFFER: "🤝",
    ActivityType.UNKNOWN: "❓",
}

ACTIVITY_LABEL = {
    ActivityType.TRANSFER: "Transfer",
    ActivityType.BUY: "Buy",
    ActivityType.SALE: "Sale",
    ActivityType.MINT: "Mint",
    ActivityType.BURN: "Burn",
    ActivityType.EXTERNAL_TRANSFER: "External Transfer",
    ActivityType.INTERNAL_TRANSFER: "Internal Transfer",
    ActivityType.LISTING: "Listing",
    ActivityType.BID: "Bid",
    ActivityType.OFFER: "Offer",
    ActivityType.UNKNOWN: "Unknown Activity",
}


def md_escape(s: str) -> str:
    for ch in ("\\", "_", "*", "`", "["):
        s = s.replace(ch, "\\" + ch)
    return s


def truncate(s: Optional[str], n: int) -> str:
    if s is None:
        return ""
    s = str(s)
    return s if len(s) <= n else s[: n - 1] + "…"


def shorten_address(address: Optional[str]) -> str:
    if not address:
        return "N/A"
    if len(address) <= 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


def format_token_id(token_id: Optional[str]) -> str:
    if not token_id:
        return "?"
    if token_id.startswith("0x"):
        try:
            return str(int(token_id, 16))
        except ValueError:
            return token_id
    return token_id


def format_amount(price: Optional[str], decimals: int = 18, symbol: str = "ETH") -> Optional[str]:
    if not price:
        return None
    try:
        amount = Decimal(price) / (Decimal(10) ** decimals)
    except (InvalidOperation, ValueError):
        return None
    if amount <= 0:
        return None
    if amount >= 1:
        return f"{amount:.3f} {symbol}"
    if amount >= Decimal("0.001"):
        return f"{amount:.4f} {symbol}"
    return f"{amount * 1000:.2f} m{symbol}"


def format_activity_message(
    token: TrackedToken,
    activity: CanonicalActivity,
    trending: bool = False,
    max_chars: int = 1024,
) -> str:
    name = md_escape(token.token_name or activity.nft_name or "NFT Collection")
    kind = activity.activity_type
    lines = []

    if trending:
        lines.append(f"{TRENDING_PREFIX} {name}")
        lines.append("")

    title = f"{ACTIVITY_EMOJI.get(kind, '❓')} *{name}*"
    if activity.token_id and not activity.token_id_is_derived:
        title += f" #{md_escape(truncate(format_token_id(activity.token_id), 24))}"
    lines.append(f"{title} {ACTIVITY_LABEL.get(kind, 'Activity')}")
    lines.append("")
    lines.append(f"🔹 *Action:* {ACTIVITY_LABEL.get(kind, 'Unknown Activity')}")

    amount = format_amount(activity.price, activity.currency_decimals or 18, activity.currency_symbol or "ETH")
    if amount:
        usd = f" (${activity.price_usd:,.2f})" if activity.price_usd is not None else ""
        lines.append(f"💰 *Amount:* {amount}{usd}")
    if activity.marketplace:
        lines.append(f"🏪 *Marketplace:* {md_escape(activity.marketplace)}")
    if activity.from_address:
        lines.append(f"📤 *From:* `{shorten_address(activity.from_address)}`")
    if activity.to_address:
        lines.append(f"📥 *To:* `{shorten_address(activity.to_address)}`")
    lines.append(f"📮 *CA:* `{shorten_address(token.contract_address)}`")

    link = explorer_tx_link(activity.chain, activity.transaction_hash)
    if activity.transaction_hash:
        lines.append(f"🔗 *TX:* `{shorten_address(activity.transaction_hash)}`")
    if link:
        lines.append(f"[View transaction]({link})")

    return truncate("\n".join(lines), max_chars)


def build_reply_markup(activity: CanonicalActivity) -> Optional[Dict[str, Any]]:
    buttons = []
    tx = explorer_tx_link(activity.chain, activity.transaction_hash)
    if tx:
        buttons.append({"text": "🔗 Transaction", "url": tx})
    item = ""
    if not activity.token_id_is_derived:
        item = marketplace_item_link(activity.chain, activity.contract_address, activity.token_id)
    if item:
        buttons.append({"text": "🛍️ View item", "url": item})
    if not buttons:
        return None
    return inline_keyboard(buttons)
