"""Tests for notification image resolution."""
import asyncio
import io
import logging

import pytest
from PIL import Image

from conftest import FakeMetadata, mint_activity
from core.errors import ImageResolutionError
from core.images import ImageResolver, assemble_default_image, normalize_square


@pytest.mark.asyncio
async def test_unpaid_uses_default_without_network(resolver, metadata, default_image, sleeper):
    image = await resolver.resolve(mint_activity(), paid=False)
    assert image.is_default
    assert not image.transient
    assert image.data == default_image.read_bytes()
    assert metadata.lookups == 0
    assert metadata.downloads == 0
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_unpaid_assembles_default_when_asset_missing(metadata, tmp_path):
    resolver = ImageResolver(metadata, tmp_path / "missing.png", tmp_path / "tmp", size=64)
    image = await resolver.resolve(mint_activity(), paid=False)
    assert image.is_default
    assert image.path is None
    with Image.open(io.BytesIO(image.data)) as img:
        assert img.size == (64, 64)
    assert metadata.downloads == 0


@pytest.mark.asyncio
async def test_unpaid_double_failure_raises(metadata, tmp_path, monkeypatch):
    def broken(*args, **kwargs):
        raise OSError("no fonts")

    monkeypatch.setattr("core.images.assemble_default_image", broken)
    resolver = ImageResolver(metadata, tmp_path / "missing.png", tmp_path / "tmp")
    with pytest.raises(ImageResolutionError) as exc:
        await resolver.resolve(mint_activity(), paid=False)
    assert exc.value.paid is False


@pytest.mark.asyncio
async def test_paid_succeeds_on_third_attempt(default_image, tmp_path, sleeper, caplog):
    metadata = FakeMetadata(fail_times=2)
    resolver = ImageResolver(
        metadata, default_image, tmp_path / "tmp", size=64, cleanup_delay=0, sleep=sleeper
    )
    with caplog.at_level(logging.WARNING, logger="core.images"):
        image = await resolver.resolve(mint_activity(), paid=True)

    assert not image.is_default
    assert image.transient
    assert image.path.exists()
    assert image.data != default_image.read_bytes()
    assert metadata.downloads == 3
    assert sleeper.delays == [2.0, 4.0]
    failures = [r for r in caplog.records if "attempt" in r.getMessage() and r.levelno == logging.WARNING]
    assert len(failures) == 2


@pytest.mark.asyncio
async def test_paid_exhaustion_never_falls_back(default_image, tmp_path, sleeper, caplog):
    metadata = FakeMetadata(fail_times=100)
    resolver = ImageResolver(metadata, default_image, tmp_path / "tmp", sleep=sleeper)

    with caplog.at_level(logging.WARNING, logger="core.images"):
        with pytest.raises(ImageResolutionError) as exc:
            await resolver.resolve(mint_activity(), paid=True)

    assert exc.value.paid is True
    assert exc.value.attempts == 10
    assert metadata.downloads == 10
    assert sleeper.delays == [2.0 * n for n in range(1, 10)]
    assert any(r.levelno == logging.CRITICAL for r in caplog.records)


@pytest.mark.asyncio
async def test_paid_stops_on_shutdown(default_image, tmp_path, sleeper):
    shutdown = asyncio.Event()
    shutdown.set()
    metadata = FakeMetadata(fail_times=100)
    resolver = ImageResolver(metadata, default_image, tmp_path / "tmp", sleep=sleeper, shutdown=shutdown)
    with pytest.raises(ImageResolutionError):
        await resolver.resolve(mint_activity(), paid=True)
    assert metadata.downloads == 0


@pytest.mark.asyncio
async def test_cleanup_removes_transient_only(resolver, default_image):
    paid = await resolver.resolve(mint_activity(), paid=True)
    task = resolver.schedule_cleanup(paid)
    await task
    assert not paid.path.exists()

    default = await resolver.resolve(mint_activity(), paid=False)
    assert resolver.schedule_cleanup(default) is None
    assert default_image.exists()


def test_normalize_square_letterboxes():
    src = io.BytesIO()
    Image.new("RGBA", (200, 100), (255, 0, 0, 128)).save(src, format="PNG")
    out = normalize_square(src.getvalue(), size=50)
    with Image.open(io.BytesIO(out)) as img:
        assert img.size == (50, 50)
        assert img.format == "JPEG"


def test_assembled_default_size():
    with Image.open(io.BytesIO(assemble_default_image(size=120))) as img:
        assert img.size == (120, 120)
