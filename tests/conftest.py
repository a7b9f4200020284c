"""Shared test fixtures: in-memory store, fake Telegram and metadata clients."""
from __future__ import annotations

import io
from typing import Dict, List, Optional

import pytest
from PIL import Image

from core.images import ImageResolver
from core.models import ActivityType, CanonicalActivity
from core.telegram_client import TelegramError
from storage.db import Store

CONTRACT = "0xabc0000000000000000000000000000000000abc"
ZERO = "0x0000000000000000000000000000000000000000"
HOLDER = "0x1111111111111111111111111111111111111111"
TX_HASH = "0xdef0000000000000000000000000000000000000000000000000000000000def"


def png_bytes(size=(32, 24), color=(200, 40, 40)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", size, color).save(out, format="PNG")
    return out.getvalue()


def mint_activity(**overrides) -> CanonicalActivity:
    fields = dict(
        contract_address=CONTRACT,
        activity_type=ActivityType.MINT,
        source="alchemy",
        token_id="7",
        from_address=ZERO,
        to_address=HOLDER,
        transaction_hash=TX_HASH,
        block_number="0x10",
    )
    fields.update(overrides)
    return CanonicalActivity(**fields)


class FakeTelegram:
    """Records every send; `failures` maps chat id -> exception to raise."""

    def __init__(self, failures: Optional[Dict[str, Exception]] = None):
        self.failures = failures or {}
        self.photos: List[dict] = []
        self.healthy = True

    def send_photo(self, chat_id, photo, caption, reply_markup=None, silent=False, filename="nft.jpg"):
        err = self.failures.get(str(chat_id))
        if err is not None:
            raise err
        self.photos.append({"chat_id": str(chat_id), "photo": photo, "caption": caption, "markup": reply_markup})
        return {"message_id": len(self.photos)}

    def get_me(self):
        if not self.healthy:
            raise TelegramError(401, "Unauthorized")
        return {"id": 1, "is_bot": True, "username": "test_bot"}

    def sent_to(self) -> List[str]:
        return [p["chat_id"] for p in self.photos]


class FakeMetadata:
    """Fails the first `fail_times` downloads with ConnectionError."""

    def __init__(self, data: Optional[bytes] = None, fail_times: int = 0, url: str = "https://img.test/7.png"):
        self.data = data if data is not None else png_bytes()
        self.fail_times = fail_times
        self.url = url
        self.lookups = 0
        self.downloads = 0

    def image_url_for(self, activity):
        self.lookups += 1
        return self.url

    def download(self, url):
        self.downloads += 1
        if self.downloads <= self.fail_times:
            raise ConnectionError(f"download {self.downloads} failed")
        return self.data


class FakePrices:
    def __init__(self, quotes: Optional[Dict[str, float]] = None):
        self.quotes = quotes or {"ETH": 2000.0}
        self.calls = []

    def get_usd_price(self, symbol, token_address=None):
        self.calls.append((symbol, token_address))
        return self.quotes.get(symbol.upper())


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def store():
    """In-memory SQLite store with schema applied."""
    s = Store("sqlite://")
    s.create_all()
    yield s
    s.engine.dispose()


@pytest.fixture
def telegram():
    return FakeTelegram()


@pytest.fixture
def metadata():
    return FakeMetadata()


@pytest.fixture
def default_image(tmp_path):
    path = tmp_path / "default_nft.png"
    path.write_bytes(png_bytes((60, 60), (18, 18, 24)))
    return path


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def resolver(metadata, default_image, tmp_path, sleeper):
    return ImageResolver(
        metadata,
        default_image_path=default_image,
        temp_dir=tmp_path / "temp_images",
        size=64,
        cleanup_delay=0,
        sleep=sleeper,
    )


@pytest.fixture
def tracked(store):
    """One tracked token with one private-chat subscriber."""
    token_id = store.add_tracked_token(CONTRACT, token_name="Candy", collection_slug="candy")
    user_id = store.add_user("1001", username="alice")
    store.subscribe(user_id, token_id)
    return store.get_tracked_token(CONTRACT)
