"""Gemini vision client for the advisory answer.

One `generateContent` call per request, no retries. Remote failures come back
as `AnalysisFailure` values; the orchestrator decides whether they degrade.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Dict, Optional

import httpx

from scan4care.shared.analyze_contract import (
    DEFAULT_PROMPT,
    AnalysisResult,
    UploadedImage,
    analysis_failure,
    analysis_success,
)
from scan4care.shared.config import DEFAULT_GEMINI_BASE_URL, DEFAULT_GEMINI_MODEL, ServiceConfig


logger = logging.getLogger(__name__)

ANSWER_TEMPLATE = (
    "Give the answer in this format:\n"
    "1. What is the problem\n"
    "2. Possible cause\n"
    "3. Immediate next steps\n"
    "4. What to avoid\n"
    "5. When to seek expert help\n"
    "\n"
    "Keep each point short, concrete and practical."
)


def build_prompt(user_prompt: Optional[str]) -> str:
    text = (user_prompt or "").strip() or DEFAULT_PROMPT
    return f"{text}\n\n{ANSWER_TEMPLATE}\n"


def _extract_candidate_text(resp_json: Dict[str, Any]) -> str:
    candidates = resp_json.get("candidates", [])
    if not isinstance(candidates, list) or not candidates:
        raise ValueError("Gemini response did not contain candidates")
    first = candidates[0] if isinstance(candidates[0], dict) else {}
    content = first.get("content", {})
    parts = content.get("parts", []) if isinstance(content, dict) else []
    texts: list[str] = []
    for part in parts or []:
        if isinstance(part, dict) and part.get("text"):
            texts.append(str(part["text"]))
    text = "".join(texts).strip()
    if not text:
        raise ValueError("Gemini response did not contain text")
    return text


def _extract_error_json(resp: httpx.Response) -> Dict[str, Any]:
    try:
        payload = resp.json()
    except Exception:  # noqa: BLE001 - best effort only
        return {}
    return payload if isinstance(payload, dict) else {}


def describe_inference_error(exc: Exception) -> str:
    """Compact, non-secret description of a failed Gemini call."""

    if isinstance(exc, (TimeoutError, httpx.TimeoutException)):
        return "timeout"
    if isinstance(exc, httpx.HTTPStatusError):
        status = int(exc.response.status_code)
        err = _extract_error_json(exc.response).get("error", {})
        message = str(err.get("message", "")).strip() if isinstance(err, dict) else ""
        if not message:
            snippet = (exc.response.text or "").strip().replace("\n", " ")
            message = snippet[:200] if snippet else "request failed"
        return f"http_{status}: {message[:200]}"
    if isinstance(exc, httpx.RequestError):
        return f"network: {exc.__class__.__name__}"
    if isinstance(exc, ValueError):
        return str(exc).strip()[:200] or "invalid response"
    return exc.__class__.__name__


class GeminiClient:
    """Inference client; build with `configured()` or `unconfigured()`."""

    def __init__(
        self,
        api_key: str = "",
        *,
        model: str = DEFAULT_GEMINI_MODEL,
        base_url: str = DEFAULT_GEMINI_BASE_URL,
        timeout_s: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    @classmethod
    def configured(cls, api_key: str, **kwargs: Any) -> "GeminiClient":
        if not api_key:
            raise ValueError("configured() needs a non-empty api key")
        return cls(api_key, **kwargs)

    @classmethod
    def unconfigured(cls) -> "GeminiClient":
        return cls("")

    @classmethod
    def from_config(cls, config: ServiceConfig) -> "GeminiClient":
        if not config.gemini_api_key:
            return cls.unconfigured()
        return cls.configured(
            config.gemini_api_key,
            model=config.gemini_model,
            base_url=config.gemini_base_url,
            timeout_s=config.inference_timeout_s,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _payload(self, image_bytes: bytes, mime_type: str, prompt: str) -> Dict[str, Any]:
        return {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {
                            "inline_data": {
                                "mime_type": mime_type,
                                "data": base64.b64encode(image_bytes).decode("ascii"),
                            }
                        },
                        {"text": prompt},
                    ],
                }
            ]
        }

    async def analyze(self, image: UploadedImage, user_prompt: Optional[str]) -> AnalysisResult:
        if not self.is_configured:
            return analysis_failure("configuration_error", "Missing GEMINI_API_KEY")

        try:
            image_bytes = await asyncio.to_thread(image.path.read_bytes)
        except OSError as exc:
            return analysis_failure("inference_error", f"image unreadable: {exc.strerror or exc}")

        url = f"{self.base_url}/models/{self.model}:generateContent"
        headers = {
            "x-goog-api-key": self._api_key,
            "Content-Type": "application/json",
        }
        payload = self._payload(image_bytes, image.mime_type, build_prompt(user_prompt))

        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s)) as client:
                resp = await client.post(url, headers=headers, json=payload)
                resp.raise_for_status()
                text = _extract_candidate_text(resp.json())
        except Exception as exc:  # noqa: BLE001 - network/parse failures
            message = describe_inference_error(exc)
            logger.warning("gemini call failed (model=%s): %s", self.model, message)
            return analysis_failure("inference_error", message)

        return analysis_success(text)
