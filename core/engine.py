from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, Optional

from chains.evm_alchemy import parse_alchemy_webhook
from chains.opensea_stream import attach_usd_value, parse_stream_event
from chains.solana_helius import parse_helius_webhook
from core.dedupe import DEFAULT_WINDOW_SECS, DedupCache
from core.dispatcher import FanoutDispatcher
from core.errors import ImageResolutionError, MalformedPayloadError
from core.models import CanonicalActivity

logger = logging.getLogger(__name__)

SOURCES = ("alchemy", "opensea", "helius")

DUPLICATE = "duplicate"
UNTRACKED = "untracked"
NOTIFIED = "notified"
FAILED = "failed"


def dedupe_key(ev: CanonicalActivity) -> str:
    """
    contract + token + type + tx/order hash. Stream events with neither hash
    fall back to their timestamp; transfers without a hash fall back to
    block + endpoints.
    """
    ident = ev.order_hash or ev.transaction_hash
    if not ident:
        if ev.event_timestamp:
            ident = f"ts={ev.event_timestamp}"
        else:
            ident = f"{ev.block_number}:{ev.from_address}:{ev.to_address}"
    return f"{ev.source}:{ev.contract_key}:{ev.token_id or '-'}:{ev.activity_type.value}:{ident}"


class ActivityPipeline:
    """
    Dedup -> tracked-token lookup -> persist -> fan-out, for every source.

    Each source gets its own DedupCache. Keys are marked before any side
    effect, so a redelivery that arrives while the first delivery is still
    in flight is dropped; a delivery that later fails is not retried here.
    """

    def __init__(
        self,
        store,
        dispatcher: FanoutDispatcher,
        prices=None,
        dedupe_window: float = DEFAULT_WINDOW_SECS,
        caches: Optional[Dict[str, DedupCache]] = None,
        alchemy_network: str = "",
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.prices = prices
        self.alchemy_network = alchemy_network
        self.caches = caches or {name: DedupCache(name, window=dedupe_window) for name in SOURCES}

        self.summary = {
            "received": 0,
            "sent": 0,
            "ignored": 0,
            "dedupe": 0,
            "malformed": 0,
            "exceptions": 0,
        }

    async def process(self, ev: CanonicalActivity) -> str:
        self.summary["received"] += 1
        cache = self.caches[ev.source]
        key = dedupe_key(ev)
        if not cache.check_and_mark(key):
            self.summary["dedupe"] += 1
            logger.debug("Duplicate %s event %s, skipping", ev.source, key)
            return DUPLICATE

        token = await asyncio.to_thread(self.store.get_tracked_token, ev.contract_address)
        if token is None or not token.is_active:
            self.summary["ignored"] += 1
            logger.debug("Contract %s not tracked or inactive, skipping", ev.contract_address)
            return UNTRACKED

        logger.info(
            "Processing %s %s for %s:%s", ev.source, ev.activity_type.value, ev.contract_address, ev.token_id
        )
        await asyncio.to_thread(self.store.log_activity, ev)

        try:
            report = await self.dispatcher.dispatch(token, ev)
        except ImageResolutionError as e:
            self.summary["exceptions"] += 1
            logger.error("Notification for %s aborted: %s", key, e)
            return FAILED

        self.summary["sent"] += report.sent
        return NOTIFIED

    async def process_batch(self, activities: Iterable[CanonicalActivity]) -> int:
        """Returns how many activities were handled without an error."""
        handled = 0
        for ev in activities:
            try:
                status = await self.process(ev)
            except Exception:
                self.summary["exceptions"] += 1
                logger.exception("Error processing %s activity %s", ev.source, ev.transaction_hash)
                continue
            if status != FAILED:
                handled += 1
        return handled

    async def ingest_alchemy(self, payload: Dict[str, Any]) -> int:
        try:
            activities = parse_alchemy_webhook(payload, default_network=self.alchemy_network)
        except MalformedPayloadError as e:
            self.summary["malformed"] += 1
            logger.warning("Invalid NFT activity payload: %s", e)
            return 0
        handled = await self.process_batch(activities)
        logger.info("Processed %d/%d alchemy activities", handled, len(activities))
        return handled

    async def ingest_helius(self, payload: Any) -> int:
        try:
            activities = parse_helius_webhook(payload)
        except MalformedPayloadError as e:
            self.summary["malformed"] += 1
            logger.warning("Invalid helius payload: %s", e)
            return 0
        handled = await self.process_batch(activities)
        logger.info("Processed %d/%d helius sales", handled, len(activities))
        return handled

    async def ingest_stream_event(self, event_type: str, event: Dict[str, Any]) -> Optional[str]:
        try:
            ev = parse_stream_event(event_type, event)
        except MalformedPayloadError as e:
            self.summary["malformed"] += 1
            logger.warning("Invalid %s stream event: %s", event_type, e)
            return None
        if ev is None:
            return None

        if self.prices is not None and ev.price:
            await asyncio.to_thread(attach_usd_value, ev, self.prices)

        try:
            return await self.process(ev)
        except Exception:
            self.summary["exceptions"] += 1
            logger.exception("Error processing %s stream event", event_type)
            return FAILED
