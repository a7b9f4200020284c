from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Sequence

from core.models import ChannelEligibility, utcnow

logger = logging.getLogger(__name__)


class TrendingProvider:
    """Anything that can answer "is this contract paid-trending right now?"."""

    name = "trending"

    def is_trending(self, contract_address: str) -> bool:
        raise NotImplementedError


class SecureTrendingProvider(TrendingProvider):
    """Direct query against validated trending payments."""

    name = "secure"

    def __init__(self, store):
        self.store = store

    def is_trending(self, contract_address: str) -> bool:
        return self.store.has_active_trending_payment(contract_address)


class LegacyTrendingProvider(TrendingProvider):
    """Scans the trending payment list; kept for records written by the old flow."""

    name = "legacy"

    def __init__(self, store, clock: Callable = utcnow):
        self.store = store
        self.clock = clock

    def is_trending(self, contract_address: str) -> bool:
        now = self.clock()
        target = (contract_address or "").lower()
        return any(
            p.contract_address.lower() == target and p.is_valid(now)
            for p in self.store.list_trending_payments()
        )


class EntitlementGate:
    """
    Evaluates trending and image-fee entitlements fresh on every call.
    Any lookup error counts as "not entitled".
    """

    def __init__(self, store, providers: Optional[Sequence[TrendingProvider]] = None):
        self.store = store
        self.providers: List[TrendingProvider] = list(
            providers if providers is not None
            else [SecureTrendingProvider(store), LegacyTrendingProvider(store)]
        )

    async def is_trending(self, contract_address: str) -> bool:
        for provider in self.providers:
            try:
                if await asyncio.to_thread(provider.is_trending, contract_address):
                    return True
            except Exception:
                logger.exception(
                    "Trending lookup via %s provider failed for %s", provider.name, contract_address
                )
        return False

    async def verify_trending(self, contract_address: str) -> bool:
        """Second check made right before anything is sent to a channel."""
        ok = await self.is_trending(contract_address)
        if not ok:
            logger.warning("Trending re-check failed for %s; channel dispatch blocked", contract_address)
        return ok

    async def channel_eligibility(self, contract_address: str) -> ChannelEligibility:
        trending = await self.is_trending(contract_address)
        if not trending:
            return ChannelEligibility(False, [], False, "token is not trending")

        try:
            channels = await asyncio.to_thread(self.store.get_broadcast_channels)
        except Exception:
            logger.exception("Channel lookup failed for %s", contract_address)
            return ChannelEligibility(False, [], True, "error loading channels")

        eligible = [c for c in channels if c.is_active and (c.show_trending or c.show_all_activities)]
        if not eligible:
            return ChannelEligibility(False, [], True, "token is trending but no channels are eligible")
        return ChannelEligibility(True, eligible, True, f"token is trending ({len(eligible)} channels)")

    async def is_image_fee_active(self, contract_address: str) -> bool:
        try:
            return bool(await asyncio.to_thread(self.store.is_image_fee_active, contract_address))
        except Exception:
            logger.exception("Image fee lookup failed for %s", contract_address)
            return False
