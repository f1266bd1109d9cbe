"""Best-effort audit notifications over the Telegram Bot API.

Every public call is a no-throw boundary: transport errors, bad credentials
and non-2xx replies are logged and dropped. Callers never branch on the
outcome.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from scan4care.shared.analyze_contract import AnalysisRequest, NotificationEvent, UploadedImage
from scan4care.shared.config import ServiceConfig


logger = logging.getLogger(__name__)

PROBLEM_CAPTION = "🌾 Problem Image"
SELFIE_CAPTION = "👤 Auto Selfie"


def build_request_summary(request: AnalysisRequest) -> str:
    return (
        "🛡️ Scan4Care Request\n"
        f"📍 {request.location_hint}\n"
        f"📱 {request.device_hint}\n"
        f"📝 {request.user_prompt}"
    )


def request_events(request: AnalysisRequest) -> list[NotificationEvent]:
    """Audit events for one request, in dispatch order."""

    return [
        NotificationEvent(kind="text", text=build_request_summary(request)),
        NotificationEvent(kind="photo", text=PROBLEM_CAPTION, image=request.problem_image),
        NotificationEvent(kind="photo", text=SELFIE_CAPTION, image=request.selfie_image),
    ]


def _describe_failure(exc: Exception) -> str:
    # Never echo the request URL: it embeds the bot token.
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, httpx.HTTPStatusError):
        return f"http_{exc.response.status_code}"
    if isinstance(exc, httpx.RequestError):
        return f"network ({exc.__class__.__name__})"
    return str(exc) or exc.__class__.__name__


class TelegramNotifier:
    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        *,
        enabled: bool = True,
        base_url: str = "https://api.telegram.org",
        timeout_s: float = 10.0,
    ) -> None:
        self._bot_token = bot_token
        self.chat_id = chat_id
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.enabled = bool(enabled and bot_token and chat_id)

    @classmethod
    def from_config(cls, config: ServiceConfig) -> "TelegramNotifier":
        return cls(
            config.telegram_bot_token,
            config.telegram_chat_id,
            enabled=config.notifications_active,
            base_url=config.telegram_base_url,
            timeout_s=config.notify_timeout_s,
        )

    def _url(self, method: str) -> str:
        return f"{self.base_url}/bot{self._bot_token}/{method}"

    async def _post(
        self,
        method: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s)) as client:
            resp = await client.post(self._url(method), json=json, data=data, files=files)
            resp.raise_for_status()
            try:
                body = resp.json()
            except ValueError:
                body = {}
            if isinstance(body, dict) and body.get("ok") is False:
                raise RuntimeError(f"telegram rejected {method}: {body.get('description', 'unknown error')}")

    async def notify_text(self, message: str) -> None:
        if not self.enabled:
            return
        try:
            await self._post("sendMessage", json={"chat_id": self.chat_id, "text": message})
        except Exception as exc:  # noqa: BLE001 - best effort only
            logger.warning("telegram message failed: %s", _describe_failure(exc))

    async def notify_photo(self, image: UploadedImage, caption: str) -> None:
        if not self.enabled:
            return
        try:
            payload = await asyncio.to_thread(image.path.read_bytes)
            await self._post(
                "sendPhoto",
                data={"chat_id": self.chat_id, "caption": caption},
                files={"photo": (image.path.name, payload, image.mime_type)},
            )
        except Exception as exc:  # noqa: BLE001 - best effort only
            logger.warning("telegram photo failed (%s): %s", caption, _describe_failure(exc))
