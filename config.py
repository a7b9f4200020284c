from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

BASE_DIR = Path(__file__).resolve().parent


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_int(name: str, default: int) -> int:
    return int(_env(name, str(default)) or default)


def _env_float(name: str, default: float) -> float:
    return float(_env(name, str(default)) or default)


@dataclass
class Settings:
    telegram_bot_token: str = ""
    database_url: str = "sqlite:///nft_notifier.db"

    # Webhook / stream credentials
    helius_auth_header: str = ""
    helius_api_key: str = ""
    alchemy_api_key: str = ""
    alchemy_signing_key: str = ""
    alchemy_network: str = "ETH_MAINNET"
    opensea_api_key: str = ""

    # Optional mirror of every user notification
    admin_chat_id: Optional[str] = None

    # Dedup
    dedup_window_secs: float = 600.0
    dedup_sweep_secs: float = 300.0

    # Images
    image_max_attempts: int = 10
    image_backoff_step_secs: float = 2.0
    image_size_px: int = 600
    image_cleanup_delay_secs: float = 60.0
    default_image_path: Path = field(default_factory=lambda: BASE_DIR / "assets" / "default_nft.png")
    temp_image_dir: Path = field(default_factory=lambda: BASE_DIR / "temp_images")

    # Telegram captions are capped at 1024 chars
    max_caption_chars: int = 1024

    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            telegram_bot_token=_env("TELEGRAM_BOT_TOKEN"),
            database_url=_env("DATABASE_URL", defaults.database_url),
            helius_auth_header=_env("HELIUS_AUTH_HEADER"),
            helius_api_key=_env("HELIUS_API_KEY"),
            alchemy_api_key=_env("ALCHEMY_API_KEY"),
            alchemy_signing_key=_env("ALCHEMY_SIGNING_KEY"),
            alchemy_network=_env("ALCHEMY_NETWORK", defaults.alchemy_network),
            opensea_api_key=_env("OPENSEA_API_KEY"),
            admin_chat_id=_env("ADMIN_CHAT_ID") or None,
            dedup_window_secs=_env_float("DEDUP_WINDOW_SECS", defaults.dedup_window_secs),
            dedup_sweep_secs=_env_float("DEDUP_SWEEP_SECS", defaults.dedup_sweep_secs),
            image_max_attempts=_env_int("IMAGE_MAX_ATTEMPTS", defaults.image_max_attempts),
            image_backoff_step_secs=_env_float("IMAGE_BACKOFF_STEP_SECS", defaults.image_backoff_step_secs),
            image_size_px=_env_int("IMAGE_SIZE_PX", defaults.image_size_px),
            image_cleanup_delay_secs=_env_float("IMAGE_CLEANUP_DELAY_SECS", defaults.image_cleanup_delay_secs),
            default_image_path=Path(_env("DEFAULT_IMAGE_PATH") or defaults.default_image_path),
            temp_image_dir=Path(_env("TEMP_IMAGE_DIR") or defaults.temp_image_dir),
            max_caption_chars=_env_int("MAX_CAPTION_CHARS", defaults.max_caption_chars),
            log_level=_env("LOG_LEVEL", defaults.log_level).upper() or "INFO",
            port=_env_int("PORT", defaults.port),
        )

    def validate(self) -> None:
        if not self.telegram_bot_token:
            raise RuntimeError("Missing TELEGRAM_BOT_TOKEN.")
        if self.image_max_attempts < 1:
            raise RuntimeError("IMAGE_MAX_ATTEMPTS must be at least 1.")
