from __future__ import annotations

import asyncio
import io
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Set

import requests
from PIL import Image, ImageDraw, ImageOps

from core.errors import ImageResolutionError
from core.models import CanonicalActivity

logger = logging.getLogger(__name__)

DEFAULT_SIZE_PX = 600
DEFAULT_MAX_ATTEMPTS = 10
BACKOFF_STEP_SECS = 2.0
CLEANUP_DELAY_SECS = 60.0
JPEG_QUALITY = 85
BACKGROUND = (18, 18, 24)

FETCH_ERRORS = (
    requests.RequestException,
    OSError,
    ValueError,
    Image.DecompressionBombError,
)


@dataclass
class ResolvedImage:
    data: bytes
    path: Optional[Path] = None
    transient: bool = False
    is_default: bool = False


def normalize_square(data: bytes, size: int = DEFAULT_SIZE_PX) -> bytes:
    """Fit any image onto a size x size JPEG canvas, letterboxed, aspect kept."""
    with Image.open(io.BytesIO(data)) as src:
        src.seek(0)
        img = ImageOps.exif_transpose(src)
        if img.mode in ("RGBA", "LA", "P"):
            img = img.convert("RGBA")
            flat = Image.new("RGB", img.size, BACKGROUND)
            flat.paste(img, mask=img.split()[-1])
            img = flat
        else:
            img = img.convert("RGB")
        img.thumbnail((size, size), Image.LANCZOS)
        canvas = Image.new("RGB", (size, size), BACKGROUND)
        canvas.paste(img, ((size - img.width) // 2, (size - img.height) // 2))
    out = io.BytesIO()
    canvas.save(out, format="JPEG", quality=JPEG_QUALITY)
    return out.getvalue()


def assemble_default_image(size: int = DEFAULT_SIZE_PX, label: str = "NFT Activity") -> bytes:
    canvas = Image.new("RGB", (size, size), BACKGROUND)
    draw = ImageDraw.Draw(canvas)
    margin = size // 8
    draw.rectangle([margin, margin, size - margin, size - margin], outline=(120, 90, 220), width=6)
    draw.text((margin + 24, size // 2), label, fill=(230, 230, 240))
    out = io.BytesIO()
    canvas.save(out, format="JPEG", quality=JPEG_QUALITY)
    return out.getvalue()


class ImageResolver:
    """
    Produces the photo attached to a notification.

    Unpaid contracts get the static default image with no network access.
    Paid contracts get their real NFT image, retried with linear backoff, and
    never silently fall back to the default.
    """

    def __init__(
        self,
        metadata,
        default_image_path: Path,
        temp_dir: Path,
        size: int = DEFAULT_SIZE_PX,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_step: float = BACKOFF_STEP_SECS,
        cleanup_delay: float = CLEANUP_DELAY_SECS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        shutdown: Optional[asyncio.Event] = None,
    ):
        self.metadata = metadata
        self.default_image_path = Path(default_image_path)
        self.temp_dir = Path(temp_dir)
        self.size = size
        self.max_attempts = max_attempts
        self.backoff_step = backoff_step
        self.cleanup_delay = cleanup_delay
        self._sleep = sleep
        self.shutdown = shutdown
        self._cleanup_tasks: Set[asyncio.Task] = set()

    async def resolve(self, activity: CanonicalActivity, paid: bool) -> ResolvedImage:
        if paid:
            return await self._resolve_paid(activity)
        return await self._resolve_default()

    async def _resolve_default(self) -> ResolvedImage:
        try:
            data = await asyncio.to_thread(self.default_image_path.read_bytes)
            return ResolvedImage(data=data, path=self.default_image_path, is_default=True)
        except OSError as e:
            logger.warning("Default image %s unreadable (%s), assembling one", self.default_image_path, e)

        try:
            data = await asyncio.to_thread(assemble_default_image, self.size)
        except (OSError, ValueError) as e:
            logger.error("Default image assembly failed: %s", e)
            raise ImageResolutionError("default image unavailable", attempts=2, paid=False) from e
        return ResolvedImage(data=data, is_default=True)

    async def _resolve_paid(self, activity: CanonicalActivity) -> ResolvedImage:
        label = f"{activity.contract_address}:{activity.token_id}"
        for attempt in range(1, self.max_attempts + 1):
            if self.shutdown is not None and self.shutdown.is_set():
                raise ImageResolutionError(f"shutdown while resolving image for {label}", attempt - 1, True)
            try:
                data = await asyncio.to_thread(self._fetch_and_normalize, activity)
                path = await asyncio.to_thread(self._write_temp, activity, data)
                if attempt > 1:
                    logger.info("Image for %s resolved on attempt %d", label, attempt)
                return ResolvedImage(data=data, path=path, transient=True)
            except FETCH_ERRORS as e:
                logger.warning("Image attempt %d/%d for %s failed: %s", attempt, self.max_attempts, label, e)
                if attempt < self.max_attempts:
                    await self._sleep(attempt * self.backoff_step)

        logger.critical(
            "Paid image for %s could not be resolved after %d attempts", label, self.max_attempts
        )
        raise ImageResolutionError(
            f"paid image for {label} failed after {self.max_attempts} attempts",
            attempts=self.max_attempts,
            paid=True,
        )

    def _fetch_and_normalize(self, activity: CanonicalActivity) -> bytes:
        url = self.metadata.image_url_for(activity)
        if not url:
            raise ValueError(f"no image url for {activity.contract_address}:{activity.token_id}")
        raw = self.metadata.download(url)
        return normalize_square(raw, self.size)

    def _write_temp(self, activity: CanonicalActivity, data: bytes) -> Path:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        name = f"{activity.contract_key[:10]}_{activity.token_id or 'x'}_{uuid.uuid4().hex[:8]}.jpg"
        path = self.temp_dir / name
        path.write_bytes(data)
        return path

    def schedule_cleanup(self, image: ResolvedImage) -> Optional[asyncio.Task]:
        if not image.transient or image.path is None:
            return None
        task = asyncio.create_task(self._cleanup_later(image.path))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)
        return task

    async def _cleanup_later(self, path: Path) -> None:
        await asyncio.sleep(self.cleanup_delay)
        if path.resolve() == self.default_image_path.resolve():
            return
        try:
            path.unlink()
            logger.debug("Removed transient image %s", path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove transient image %s: %s", path, e)
