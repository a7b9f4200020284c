# app.py
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chains.evm_alchemy import verify_signature
from chains.opensea_client import OpenSeaStreamClient
from chains.solana_helius import verify_auth_header
from config import Settings
from core.dispatcher import FanoutDispatcher
from core.engine import ActivityPipeline
from core.entitlements import EntitlementGate
from core.images import ImageResolver
from core.telegram_client import TelegramClient
from enrich.metadata import NFTMetadataClient
from enrich.prices import PriceQuoteClient
from storage.db import Store

logger = logging.getLogger(__name__)

NFT_ACTIVITY = "NFT_ACTIVITY"
ADDRESS_ACTIVITY = "ADDRESS_ACTIVITY"


# ============================================================
# HELPERS
# ============================================================

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _read_json(request: Request) -> Tuple[bytes, Any]:
    body = await request.body()
    return body, json.loads(body or b"null")


def _bad_json() -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": "Invalid JSON body"})


# ============================================================
# FASTAPI APP
# ============================================================

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    telegram=None,
    metadata=None,
    prices=None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    settings.validate()

    store = store or Store(settings.database_url)
    telegram = telegram or TelegramClient(settings.telegram_bot_token)
    metadata = metadata or NFTMetadataClient(settings.alchemy_api_key, settings.helius_api_key)
    prices = prices or PriceQuoteClient()

    shutdown = asyncio.Event()
    gate = EntitlementGate(store)
    images = ImageResolver(
        metadata,
        default_image_path=settings.default_image_path,
        temp_dir=settings.temp_image_dir,
        size=settings.image_size_px,
        max_attempts=settings.image_max_attempts,
        backoff_step=settings.image_backoff_step_secs,
        cleanup_delay=settings.image_cleanup_delay_secs,
        shutdown=shutdown,
    )
    dispatcher = FanoutDispatcher(
        store, telegram, gate, images,
        admin_chat_id=settings.admin_chat_id,
        max_caption_chars=settings.max_caption_chars,
    )
    pipeline = ActivityPipeline(
        store, dispatcher,
        prices=prices,
        dedupe_window=settings.dedup_window_secs,
        alchemy_network=settings.alchemy_network,
    )

    stream: Optional[OpenSeaStreamClient] = None
    if settings.opensea_api_key:
        stream = OpenSeaStreamClient(
            settings.opensea_api_key,
            collections=store.list_active_collection_slugs,
            handler=pipeline.ingest_stream_event,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await asyncio.to_thread(store.create_all)
        tasks: List[asyncio.Task] = [
            asyncio.create_task(cache.run_sweeper(settings.dedup_sweep_secs))
            for cache in pipeline.caches.values()
        ]
        if stream is not None:
            tasks.append(asyncio.create_task(stream.run()))
        else:
            logger.info("OPENSEA_API_KEY not set; marketplace stream disabled")
        logger.info("NFT activity notifier started")

        try:
            yield
        finally:
            shutdown.set()
            if stream is not None:
                stream.stop()
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("NFT activity notifier stopped: %s", pipeline.summary)

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.pipeline = pipeline
    app.state.dispatcher = dispatcher
    app.state.stream = stream

    @app.get("/health")
    async def health():
        status = {"status": "healthy", "timestamp": _now_iso(), "database": "unknown", "bot": "unknown"}

        try:
            await asyncio.to_thread(store.ping)
            status["database"] = "connected"
        except Exception as e:
            logger.error("Health check: database unreachable: %s", e)
            status["database"] = "disconnected"
            status["status"] = "unhealthy"

        try:
            await asyncio.to_thread(telegram.get_me)
            status["bot"] = "connected"
        except Exception as e:
            logger.error("Health check: Telegram unreachable: %s", e)
            status["bot"] = "disconnected"
            status["status"] = "unhealthy"

        return JSONResponse(status_code=200 if status["status"] == "healthy" else 503, content=status)

    @app.post("/webhook/alchemy")
    async def alchemy_webhook(request: Request):
        try:
            body, payload = await _read_json(request)
        except ValueError:
            return _bad_json()

        if settings.alchemy_signing_key:
            if not verify_signature(body, request.headers.get("X-Alchemy-Signature"), settings.alchemy_signing_key):
                logger.warning("Rejected alchemy webhook with a bad signature")
                return JSONResponse(status_code=401, content={"success": False, "error": "Invalid signature"})

        try:
            await asyncio.to_thread(store.log_webhook, "alchemy", payload, False)

            processed = False
            webhook_type = payload.get("type") if isinstance(payload, dict) else None
            if webhook_type == NFT_ACTIVITY:
                processed = await pipeline.ingest_alchemy(payload) > 0
            elif webhook_type == ADDRESS_ACTIVITY:
                logger.info("Address activity webhook received; not handled")
            else:
                logger.warning("Unknown webhook type: %s", webhook_type)

            await asyncio.to_thread(store.log_webhook, "alchemy", payload, processed)
        except Exception as e:
            logger.exception("Error handling alchemy webhook")
            try:
                await asyncio.to_thread(store.log_webhook, "alchemy", payload, False, str(e))
            except Exception:
                logger.exception("Could not record alchemy webhook failure")
            return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

        return {"success": True, "processed": processed, "message": "Webhook processed successfully"}

    @app.post("/webhook/helius")
    async def helius_webhook(request: Request):
        # Verify authHeader -> Authorization echo
        if not verify_auth_header(request.headers.get("Authorization"), settings.helius_auth_header):
            logger.warning("Rejected helius webhook with a bad Authorization header")
            return JSONResponse(status_code=401, content={"success": False, "error": "Unauthorized"})

        try:
            _, payload = await _read_json(request)
        except ValueError:
            return _bad_json()

        try:
            await asyncio.to_thread(store.log_webhook, "helius", payload, False)
            processed = await pipeline.ingest_helius(payload) > 0
            await asyncio.to_thread(store.log_webhook, "helius", payload, processed)
        except Exception as e:
            logger.exception("Error handling helius webhook")
            try:
                await asyncio.to_thread(store.log_webhook, "helius", payload, False, str(e))
            except Exception:
                logger.exception("Could not record helius webhook failure")
            return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

        return {"success": True, "processed": processed, "message": "Webhook processed successfully"}

    return app


if __name__ == "__main__":
    _settings = Settings.from_env()
    logging.basicConfig(
        level=_settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("app:create_app", factory=True, host="0.0.0.0", port=_settings.port)
