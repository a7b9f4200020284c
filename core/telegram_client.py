from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import requests

# 400 descriptions that mean the bot can no longer reach the chat
PERMISSION_DESCRIPTIONS = (
    "chat not found",
    "bot was kicked",
    "bot was blocked",
    "not enough rights",
    "have no rights",
    "user is deactivated",
    "need administrator rights",
)


class TelegramError(RuntimeError):
    def __init__(self, error_code: int, description: str = ""):
        super().__init__(f"telegram error {error_code}: {description}")
        self.error_code = int(error_code)
        self.description = description or ""

    @property
    def is_permission_error(self) -> bool:
        if self.error_code == 403:
            return True
        if self.error_code == 400:
            d = self.description.lower()
            return any(p in d for p in PERMISSION_DESCRIPTIONS)
        return False


def inline_keyboard(buttons: List[Dict[str, str]]) -> Dict[str, Any]:
    """One button per row; each button is {"text": ..., "url": ...}."""
    return {"inline_keyboard": [[b] for b in buttons if b.get("url")]}


class TelegramClient:
    def __init__(self, bot_token: str, timeout: float = 20):
        self.bot_token = bot_token.strip()
        self.base = f"https://api.telegram.org/bot{self.bot_token}"
        self.timeout = timeout
        self.session = requests.Session()

    def _check(self, r: requests.Response) -> Any:
        try:
            data = r.json()
        except ValueError:
            r.raise_for_status()
            raise TelegramError(r.status_code, "non-JSON response")
        if not data.get("ok"):
            raise TelegramError(data.get("error_code") or r.status_code, data.get("description", ""))
        return data.get("result")

    def get_me(self) -> Dict[str, Any]:
        r = self.session.get(f"{self.base}/getMe", timeout=self.timeout)
        return self._check(r)

    def send_message(
        self,
        chat_id: str,
        text: str,
        reply_markup: Optional[Dict[str, Any]] = None,
        silent: bool = False,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "Markdown",
            "disable_notification": bool(silent),
            "disable_web_page_preview": True,
        }
        if reply_markup:
            body["reply_markup"] = reply_markup
        r = self.session.post(f"{self.base}/sendMessage", json=body, timeout=self.timeout)
        return self._check(r)

    def send_photo(
        self,
        chat_id: str,
        photo: bytes,
        caption: str,
        reply_markup: Optional[Dict[str, Any]] = None,
        silent: bool = False,
        filename: str = "nft.jpg",
    ) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "chat_id": chat_id,
            "caption": caption,
            "parse_mode": "Markdown",
            "disable_notification": "true" if silent else "false",
        }
        if reply_markup:
            data["reply_markup"] = json.dumps(reply_markup)
        r = self.session.post(
            f"{self.base}/sendPhoto",
            data=data,
            files={"photo": (filename, photo, "image/jpeg")},
            timeout=self.timeout,
        )
        return self._check(r)
