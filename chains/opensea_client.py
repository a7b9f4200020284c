from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import aiohttp

logger = logging.getLogger(__name__)

STREAM_URL = "wss://stream.openseabeta.com/socket/websocket"
HEARTBEAT_SECS = 30
MAX_RECONNECT_DELAY_SECS = 60

# Order cancellations are outside the activity taxonomy and not subscribed to.
SUBSCRIBED_EVENTS = {
    "item_listed",
    "item_sold",
    "item_transferred",
    "item_metadata_updated",
    "item_received_bid",
    "item_received_offer",
}

EventHandler = Callable[[str, Dict[str, Any]], Awaitable[Any]]


def join_message(slug: str, ref: int) -> Dict[str, Any]:
    return {"topic": f"collection:{slug}", "event": "phx_join", "payload": {}, "ref": ref}


def heartbeat_message(ref: int) -> Dict[str, Any]:
    return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": ref}


class OpenSeaStreamClient:
    """
    Phoenix-channel websocket client for the OpenSea Stream API.

    Joins one `collection:<slug>` topic per tracked collection and forwards
    every subscribed event to `handler(event_type, message_payload)` as its own
    task, so a slow notification never stalls the socket.
    """

    def __init__(
        self,
        api_key: str,
        collections: Callable[[], Iterable[str]],
        handler: EventHandler,
        url: str = STREAM_URL,
    ):
        self.api_key = api_key.strip()
        self.collections = collections
        self.handler = handler
        self.url = url
        self.stop_event = asyncio.Event()
        self._ref = 0
        self._tasks: set[asyncio.Task] = set()
        self.stats = {"connected": False, "events": 0, "reconnects": 0}

    def _next_ref(self) -> int:
        self._ref += 1
        return self._ref

    async def _read_collections(self) -> list[str]:
        return sorted(set(await asyncio.to_thread(lambda: list(self.collections()))))

    async def run(self) -> None:
        delay = 1.0
        while not self.stop_event.is_set():
            try:
                slugs = await self._read_collections()
                if not slugs:
                    await asyncio.sleep(30)
                    continue
                await self._session(slugs)
                delay = 1.0
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("OpenSea stream connection error: %s", e)
            except Exception:
                logger.exception("OpenSea stream failed")
            self.stats["connected"] = False
            if self.stop_event.is_set():
                break
            self.stats["reconnects"] += 1
            logger.info("Reconnecting to OpenSea stream in %.0fs", delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, MAX_RECONNECT_DELAY_SECS)

    async def _session(self, slugs: list[str]) -> None:
        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(self.url, params={"token": self.api_key}) as ws:
                self.stats["connected"] = True
                joined: set[str] = set()
                await self._join(ws, slugs, joined)
                logger.info("Subscribed to OpenSea stream for %d collections", len(joined))

                beat = asyncio.create_task(self._heartbeat(ws, joined))
                try:
                    while not self.stop_event.is_set():
                        try:
                            msg = await ws.receive(timeout=HEARTBEAT_SECS * 2)
                        except asyncio.TimeoutError:
                            continue
                        if msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                            break
                        if msg.type != aiohttp.WSMsgType.TEXT:
                            continue
                        self._on_text(msg.data)
                finally:
                    beat.cancel()

    def _on_text(self, data: str) -> Optional[asyncio.Task]:
        try:
            message = json.loads(data)
        except ValueError:
            logger.warning("Skipping non-JSON OpenSea frame: %.200s", data)
            return None
        if not isinstance(message, dict):
            return None
        return self._dispatch(message)

    async def _join(self, ws, slugs: Iterable[str], joined: set[str]) -> None:
        for slug in slugs:
            if slug in joined:
                continue
            await ws.send_json(join_message(slug, self._next_ref()))
            joined.add(slug)

    async def refresh_subscriptions(self, ws, joined: set[str]) -> None:
        """Joins collections tracked since the socket opened."""
        try:
            slugs = await self._read_collections()
        except Exception:
            logger.exception("Could not re-read tracked collections")
            return
        new = [s for s in slugs if s not in joined]
        if new:
            await self._join(ws, new, joined)
            logger.info("Joined %d newly tracked OpenSea collections", len(new))

    async def _heartbeat(self, ws: aiohttp.ClientWebSocketResponse, joined: set[str]) -> None:
        while True:
            await asyncio.sleep(HEARTBEAT_SECS)
            await ws.send_json(heartbeat_message(self._next_ref()))
            await self.refresh_subscriptions(ws, joined)

    def _dispatch(self, message: Dict[str, Any]) -> Optional[asyncio.Task]:
        event = message.get("event")
        if event not in SUBSCRIBED_EVENTS:
            if event == "phx_reply" and (message.get("payload") or {}).get("status") != "ok":
                logger.warning("OpenSea stream join rejected: %s", message.get("payload"))
            return None
        self.stats["events"] += 1
        task = asyncio.create_task(self._handle(event, message.get("payload") or {}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _handle(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            await self.handler(event, {"payload": payload, "sent_at": payload.get("sent_at")})
        except Exception:
            logger.exception("OpenSea %s handler failed", event)

    def stop(self) -> None:
        self.stop_event.set()
